import re
from datetime import timedelta

import pytest
from sqlalchemy.orm import undefer

from notesapp import create_app, db
from notesapp.models import User
from notesapp.services.identity import IdentityVerificationError
from notesapp.services.mailer import MailDeliveryError
from notesapp.utils import utcnow

OTP_RE = re.compile(r'\b(\d{6})\b')


class RecordingChannel:
    name = 'recording'

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to, subject, html, text=None):
        if self.fail:
            raise MailDeliveryError('mail server down')
        self.sent.append({'to': to, 'subject': subject, 'html': html, 'text': text})

    def to(self, email):
        return [message for message in self.sent if message['to'] == email]

    def last_otp(self, email):
        for message in reversed(self.to(email)):
            match = OTP_RE.search(message['text'] or '')
            if match and 'OTP' in message['subject']:
                return match.group(1)
        raise AssertionError(f'no OTP mailed to {email}')


class FakeVerifier:
    def __init__(self):
        self.tokens = {}

    def verify(self, id_token):
        try:
            return self.tokens[id_token]
        except KeyError:
            raise IdentityVerificationError('unknown token')


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'APP_ENV': 'testing',
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'JWT_SECRET_KEY': 'test-secret',
        'MAIL_CHANNEL': 'console',
        'RATELIMIT_ENABLED': False,
    })
    app.extensions['mailer'] = RecordingChannel()
    app.extensions['identity'] = FakeVerifier()
    with app.app_context():
        db.create_all()
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def mailbox(app):
    return app.extensions['mailer']


@pytest.fixture
def verifier(app):
    return app.extensions['identity']


def get_user(app, email):
    with app.app_context():
        user = (
            User.query.options(undefer(User.otp), undefer(User.otp_expires), undefer(User.last_otp_sent))
            .filter_by(email=email)
            .first()
        )
        if user is not None:
            db.session.expunge(user)
        return user


def update_user(app, email, **fields):
    with app.app_context():
        user = User.query.filter_by(email=email).one()
        for key, value in fields.items():
            setattr(user, key, value)
        db.session.commit()


def backdate_otp(app, email, seconds=31):
    with app.app_context():
        user = User.query.filter_by(email=email).one()
        if user.last_otp_sent is not None:
            user.last_otp_sent = user.last_otp_sent - timedelta(seconds=seconds)
        db.session.commit()


def register(client, email='a@x.com', name='Alice', date_of_birth='2000-01-01'):
    return client.post('/api/auth/register', json={'name': name, 'email': email, 'dateOfBirth': date_of_birth})


def auth_headers(token):
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def signup(app, client, mailbox):
    """Register and verify an account, returning its session token."""
    def _signup(email='a@x.com', name='Alice'):
        assert register(client, email=email, name=name).status_code == 201
        response = client.post('/api/auth/verify-otp', json={'email': email, 'otp': mailbox.last_otp(email)})
        assert response.status_code == 200
        backdate_otp(app, email)
        return response.get_json()['data']['token']
    return _signup


@pytest.fixture
def token(signup):
    return signup()


def expire_otp(app, email):
    update_user(app, email, otp_expires=utcnow() - timedelta(seconds=1))
