from flask import current_app, g, jsonify, request
from sqlalchemy.exc import IntegrityError

from notesapp import db
from notesapp.errors import BadRequest, NotFound, Unauthorized, UpstreamUnavailable
from notesapp.models import User
from notesapp.models.user import AUTH_PROVIDER_GOOGLE, AUTH_PROVIDER_OTP
from notesapp.ratelimit import rate_limit
from notesapp.schemas import EmailSchema, GoogleAuthSchema, OTPSchema, RegisterSchema, load
from notesapp.services import otp as otp_service
from notesapp.services.identity import IdentityVerificationError
from notesapp.services.mailer import MailDeliveryError, send_otp_email, send_welcome_email
from notesapp.services.tokens import auth_required, generate_token

from . import auth_bp

AUTH_WINDOW = 15 * 60
auth_limit = rate_limit('auth', 10, AUTH_WINDOW, 'Too many authentication attempts, please try again later.')
otp_limit = rate_limit('otp', 3, 60, 'Too many OTP requests, please try again after a minute.')


def _find_user(email):
    return User.query.filter_by(email=email).first()


def _session_payload(user):
    return {'user': user.to_dict(), 'token': generate_token(user.id, user.email)}


def _send_welcome(user):
    try:
        send_welcome_email(user.email, user.name)
    except MailDeliveryError as e:
        current_app.logger.error('Failed to send welcome email to %s: %s', user.email, e)


def _discard_pending(user):
    email = user.email
    db.session.rollback()
    db.session.delete(user)
    db.session.commit()
    current_app.logger.info('Removed pending account %s after failed OTP dispatch', email)


@auth_bp.route('/register', methods=['POST'])
@auth_limit
def register():
    data = load(RegisterSchema, request.get_json(silent=True))

    if _find_user(data['email']):
        raise BadRequest('User already exists with this email')

    user = User(
        name=data['name'],
        email=data['email'],
        date_of_birth=data['date_of_birth'],
        auth_provider=AUTH_PROVIDER_OTP,
        is_verified=False,
    )
    code = otp_service.issue(user)
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        # lost a race with a concurrent registration of the same email
        db.session.rollback()
        raise BadRequest('User already exists with this email')

    try:
        send_otp_email(user.email, code)
    except MailDeliveryError as e:
        current_app.logger.error('Failed to send OTP email to %s: %s', user.email, e)
        _discard_pending(user)
        raise UpstreamUnavailable('Failed to send verification email. Please try again.')
    except Exception:
        _discard_pending(user)
        raise

    return jsonify({
        'success': True,
        'message': 'User registered successfully. Please check your email for OTP verification.',
        'data': {'userId': user.id, 'email': user.email, 'name': user.name},
    }), 201


@auth_bp.route('/verify-otp', methods=['POST'])
@auth_limit
def verify_otp():
    data = load(OTPSchema, request.get_json(silent=True))

    user = _find_user(data['email'])
    otp_service.verify(user, data['otp'], signup=True)
    user.is_verified = True
    db.session.commit()

    _send_welcome(user)

    return jsonify({
        'success': True,
        'message': 'Email verified successfully',
        'data': _session_payload(user),
    }), 200


@auth_bp.route('/resend-otp', methods=['POST'])
@otp_limit
def resend_otp():
    data = load(EmailSchema, request.get_json(silent=True))

    user = _find_user(data['email'])
    if not user:
        raise NotFound('User not found')

    # the cooldown takes precedence over the missing-challenge error
    wait = otp_service.seconds_until_resend(user)
    if wait == 0 and user.is_verified and user.otp is None:
        raise BadRequest('No active login session found. Please try logging in again.')

    code = otp_service.issue(user)
    db.session.commit()

    try:
        send_otp_email(user.email, code)
    except MailDeliveryError as e:
        current_app.logger.error('Failed to resend OTP email to %s: %s', user.email, e)
        raise UpstreamUnavailable('Failed to send OTP email. Please try again.')

    return jsonify({'success': True, 'message': 'OTP sent successfully'}), 200


@auth_bp.route('/login', methods=['POST'])
@auth_limit
def login():
    data = load(EmailSchema, request.get_json(silent=True))

    user = _find_user(data['email'])
    if not user:
        raise NotFound('User not found. Please register first.')
    if not user.is_verified:
        raise Unauthorized('Please verify your email first')

    code = otp_service.issue(user)
    db.session.commit()

    try:
        send_otp_email(user.email, code)
    except MailDeliveryError as e:
        current_app.logger.error('Failed to send login OTP email to %s: %s', user.email, e)
        if current_app.config['IS_PRODUCTION']:
            raise UpstreamUnavailable('Email service temporarily unavailable. Please try again later.')
        current_app.logger.warning('EMAIL FAILED - login OTP for %s: %s (valid for 10 minutes)', user.email, code)
        return jsonify({
            'success': True,
            'message': 'Login OTP generated. Check server logs for OTP (email service unavailable).',
            'data': {'otp': code},
        }), 200

    return jsonify({'success': True, 'message': 'Login OTP sent to your email successfully'}), 200


@auth_bp.route('/verify-login-otp', methods=['POST'])
@auth_limit
def verify_login_otp():
    data = load(OTPSchema, request.get_json(silent=True))

    user = _find_user(data['email'])
    if not user:
        raise NotFound('User not found')
    if not user.is_verified:
        raise Unauthorized('Please verify your email first')

    otp_service.verify(user, data['otp'])
    db.session.commit()

    return jsonify({
        'success': True,
        'message': 'Login successful',
        'data': _session_payload(user),
    }), 200


@auth_bp.route('/google', methods=['POST'])
@auth_limit
def google_auth():
    data = load(GoogleAuthSchema, request.get_json(silent=True))

    verifier = current_app.extensions['identity']
    try:
        claims = verifier.verify(data['id_token'])
    except IdentityVerificationError as e:
        current_app.logger.warning('Google token rejected: %s', e)
        raise Unauthorized('Invalid Google token')

    if not claims.email:
        raise BadRequest('Email is required for authentication')

    linked = User.query.filter_by(google_id=claims.uid).first()
    by_email = _find_user(claims.email)
    if linked and by_email and linked.id != by_email.id:
        raise BadRequest('This email is associated with a different Google account')
    user = linked or by_email
    created = False

    if user:
        if user.google_id and user.google_id != claims.uid:
            raise BadRequest('This email is associated with a different Google account')
        if user.google_id is None:
            user.google_id = claims.uid
            user.auth_provider = AUTH_PROVIDER_GOOGLE
            if claims.picture:
                user.avatar = claims.picture
            if not user.is_verified:
                user.is_verified = True
                otp_service.clear(user)
            current_app.logger.info('Linked Google account to %s', user.email)
    else:
        user = User(
            name=claims.name or 'User',
            email=claims.email,
            google_id=claims.uid,
            avatar=claims.picture,
            auth_provider=AUTH_PROVIDER_GOOGLE,
            is_verified=True,
        )
        db.session.add(user)
        created = True

    db.session.commit()

    if created:
        _send_welcome(user)

    return jsonify({
        'success': True,
        'message': 'Account created successfully' if created else 'Login successful',
        'data': _session_payload(user),
    }), 200


@auth_bp.route('/me', methods=['GET'])
@auth_required
def me():
    return jsonify({'success': True, 'data': {'user': g.current_user.to_dict()}}), 200


@auth_bp.route('/check-auth-method', methods=['POST'])
@auth_limit
def check_auth_method():
    data = load(EmailSchema, request.get_json(silent=True))

    user = _find_user(data['email'])
    if not user:
        raise NotFound('User not found', data={'authMethod': None, 'userExists': False})

    return jsonify({
        'success': True,
        'message': 'User found',
        'data': {
            'authMethod': user.auth_provider,
            'userExists': True,
            'isVerified': user.is_verified,
        },
    }), 200
