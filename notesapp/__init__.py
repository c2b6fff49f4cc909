from flask import Flask, jsonify, request
from flask_sqlalchemy import SQLAlchemy
from flask_mail import Mail
from flask_migrate import Migrate
from dotenv import load_dotenv
import logging
import os
from flask_jwt_extended import JWTManager
from flask_cors import CORS

from notesapp.utils import utcnow, isoformat

load_dotenv()

db = SQLAlchemy()
mail = Mail()
migrate = Migrate()
jwt = JWTManager()


def _env_flag(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _configure_logging(app):
    level = app.config['LOG_LEVEL']
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s [%(name)s] %(message)s')
    app.logger.setLevel(level)
    if app.config.get('LOG_FILE'):
        file_handler = logging.FileHandler(app.config['LOG_FILE'])
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s'))
        app.logger.addHandler(file_handler)
        logging.getLogger('notesapp').addHandler(file_handler)


def create_app(test_config=None):
    from notesapp.services.tokens import parse_duration

    app = Flask(__name__)

    app_env = os.getenv('APP_ENV', 'development')
    mail_port = int(os.getenv('MAIL_PORT', '587'))
    email_user = os.getenv('EMAIL_USER')

    app.config['APP_NAME'] = os.getenv('APP_NAME', 'Note Taking App')
    app.config['APP_ENV'] = app_env
    app.config['SQLALCHEMY_DATABASE_URI'] = os.getenv('DATABASE_URL')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['MAIL_CHANNEL'] = os.getenv('MAIL_CHANNEL', 'smtp' if app_env == 'production' else 'console')
    app.config['MAIL_SERVER'] = os.getenv('MAIL_SERVER', 'smtp.gmail.com')
    app.config['MAIL_PORT'] = mail_port
    app.config['MAIL_USE_SSL'] = _env_flag('MAIL_USE_SSL', mail_port == 465)
    app.config['MAIL_USE_TLS'] = _env_flag('MAIL_USE_TLS', not app.config['MAIL_USE_SSL'])
    app.config['MAIL_USERNAME'] = email_user
    app.config['MAIL_PASSWORD'] = os.getenv('EMAIL_PASS')
    app.config['MAIL_DEFAULT_SENDER'] = (os.getenv('MAIL_SENDER_NAME', app.config['APP_NAME']), email_user)
    app.config['RESEND_API_KEY'] = os.getenv('RESEND_API_KEY')
    app.config['RESEND_FROM_EMAIL'] = os.getenv('RESEND_FROM_EMAIL')
    app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY')
    app.config['JWT_ACCESS_TOKEN_EXPIRES'] = os.getenv('JWT_EXPIRES_IN', '7d')
    app.config['IDENTITY_PROVIDER'] = os.getenv('IDENTITY_PROVIDER', 'google')
    app.config['GOOGLE_CLIENT_ID'] = os.getenv('GOOGLE_CLIENT_ID')
    app.config['FIREBASE_PROJECT_ID'] = os.getenv('FIREBASE_PROJECT_ID')
    app.config['FRONTEND_URL'] = os.getenv('FRONTEND_URL', 'http://localhost:3000,http://localhost:5173')
    app.config['RATELIMIT_ENABLED'] = _env_flag('RATELIMIT_ENABLED', True)
    app.config['LOG_LEVEL'] = os.getenv('LOG_LEVEL', 'INFO').upper()
    app.config['LOG_FILE'] = os.getenv('LOG_FILE')

    if test_config:
        app.config.update(test_config)

    if not app.config.get('SQLALCHEMY_DATABASE_URI'):
        raise RuntimeError('DATABASE_URL is not defined in environment variables')
    if not app.config.get('JWT_SECRET_KEY'):
        raise RuntimeError('JWT_SECRET_KEY is not defined in environment variables')

    app.config['IS_PRODUCTION'] = app.config['APP_ENV'] == 'production'
    app.config['JWT_ACCESS_TOKEN_EXPIRES'] = parse_duration(app.config['JWT_ACCESS_TOKEN_EXPIRES'])
    origins = [origin.strip() for origin in app.config['FRONTEND_URL'].split(',') if origin.strip()]
    app.config.setdefault('WELCOME_URL', origins[0] if origins else None)

    _configure_logging(app)

    from notesapp import ratelimit
    from notesapp.errors import register_error_handlers
    from notesapp.services import identity
    from notesapp.services.mailer import mailer

    db.init_app(app)
    mail.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    mailer.init_app(app)
    identity.init_app(app)
    ratelimit.init_app(app)
    register_error_handlers(app)

    from notesapp.routes import auth_bp, notes_bp
    app.register_blueprint(auth_bp, url_prefix='/api/auth')
    app.register_blueprint(notes_bp, url_prefix='/api/notes')

    CORS(app, resources={r'/api/*': {'origins': origins}}, supports_credentials=True)

    @app.route('/api/health')
    def health():
        return jsonify({
            'success': True,
            'message': 'Server is running',
            'timestamp': isoformat(utcnow()),
            'environment': app.config['APP_ENV'],
        }), 200

    if not app.config['IS_PRODUCTION']:
        @app.after_request
        def log_request(response):
            app.logger.info('%s %s %s', request.method, request.path, response.status_code)
            return response

    app.logger.info('Started in %s mode (mail channel: %s)', app.config['APP_ENV'], app.config['MAIL_CHANNEL'])
    return app
