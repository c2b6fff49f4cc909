import re

from notesapp.errors import UpstreamUnavailable
from notesapp.models.user import AUTH_PROVIDER_GOOGLE, AUTH_PROVIDER_OTP
from notesapp.services.identity import IdentityClaims

from conftest import auth_headers, backdate_otp, expire_otp, get_user, register, update_user


def wait_seconds(response):
    return int(re.search(r'wait (\d+) seconds', response.get_json()['message']).group(1))


class TestRegister:
    def test_creates_pending_user_and_mails_one_code(self, app, client, mailbox):
        response = register(client, email='A@X.com ')

        assert response.status_code == 201
        body = response.get_json()
        assert body['success'] is True
        assert set(body['data']) == {'userId', 'email', 'name'}
        assert body['data']['email'] == 'a@x.com'

        user = get_user(app, 'a@x.com')
        assert user.is_verified is False
        assert user.auth_provider == AUTH_PROVIDER_OTP
        assert user.otp is not None
        assert str(user.date_of_birth) == '2000-01-01'
        assert len(mailbox.to('a@x.com')) == 1

    def test_rejects_duplicate_email(self, client):
        register(client)
        response = register(client, name='Other')
        assert response.status_code == 400
        assert response.get_json()['message'] == 'User already exists with this email'

    def test_reports_field_errors(self, client, mailbox):
        response = register(client, email='not-an-email', name='A1')

        assert response.status_code == 400
        body = response.get_json()
        assert body['success'] is False
        assert body['message'] == 'Validation errors'
        assert {error['field'] for error in body['errors']} == {'email', 'name'}
        assert mailbox.sent == []

    def test_date_of_birth_is_optional(self, client):
        response = client.post('/api/auth/register', json={'name': 'Bob', 'email': 'b@x.com'})
        assert response.status_code == 201

    def test_mail_failure_removes_the_account(self, app, client, mailbox):
        mailbox.fail = True
        response = register(client)

        assert response.status_code == 500
        assert response.get_json()['message'] == 'Failed to send verification email. Please try again.'
        assert get_user(app, 'a@x.com') is None

    def test_unexpected_dispatch_error_removes_the_account(self, app, client, mailbox, monkeypatch):
        def broken_send(to, subject, html, text=None):
            raise RuntimeError('template exploded')
        monkeypatch.setattr(mailbox, 'send', broken_send)

        response = register(client)

        assert response.status_code == 500
        assert response.get_json()['message'] == 'Internal server error'
        assert get_user(app, 'a@x.com') is None

    def test_concurrent_duplicate_is_a_conflict(self, app, client, monkeypatch):
        register(client)
        # both requests pass the existence check before either commits
        monkeypatch.setattr('notesapp.routes.auth._find_user', lambda email: None)

        response = register(client, name='Other')

        assert response.status_code == 400
        assert response.get_json()['message'] == 'User already exists with this email'
        assert get_user(app, 'a@x.com').name == 'Alice'


class TestVerifyOTP:
    def test_verifies_account_and_issues_token(self, app, client, mailbox):
        register(client)
        code = mailbox.last_otp('a@x.com')

        response = client.post('/api/auth/verify-otp', json={'email': 'a@x.com', 'otp': code})

        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['user']['isVerified'] is True
        assert data['user']['email'] == 'a@x.com'
        assert 'otp' not in data['user']
        assert data['token']

        user = get_user(app, 'a@x.com')
        assert user.is_verified is True
        assert user.otp is None and user.otp_expires is None
        assert any('Welcome' in message['subject'] for message in mailbox.to('a@x.com'))

    def test_code_cannot_be_reused(self, client, mailbox):
        register(client)
        code = mailbox.last_otp('a@x.com')
        client.post('/api/auth/verify-otp', json={'email': 'a@x.com', 'otp': code})

        response = client.post('/api/auth/verify-otp', json={'email': 'a@x.com', 'otp': code})
        assert response.status_code == 400
        assert response.get_json()['message'] == 'Email already verified'

    def test_wrong_code(self, client, mailbox):
        register(client)
        code = mailbox.last_otp('a@x.com')
        wrong = '100000' if code != '100000' else '100001'

        response = client.post('/api/auth/verify-otp', json={'email': 'a@x.com', 'otp': wrong})
        assert response.status_code == 400
        assert response.get_json()['message'] == 'Invalid OTP'

    def test_expired_code(self, app, client, mailbox):
        register(client)
        code = mailbox.last_otp('a@x.com')
        expire_otp(app, 'a@x.com')

        response = client.post('/api/auth/verify-otp', json={'email': 'a@x.com', 'otp': code})
        assert response.status_code == 400
        assert response.get_json()['message'] == 'OTP expired. Please request a new one.'

    def test_unknown_email(self, client):
        response = client.post('/api/auth/verify-otp', json={'email': 'nobody@x.com', 'otp': '123456'})
        assert response.status_code == 404

    def test_malformed_code(self, client):
        register(client)
        response = client.post('/api/auth/verify-otp', json={'email': 'a@x.com', 'otp': '12ab'})
        assert response.status_code == 400
        assert response.get_json()['errors'][0]['field'] == 'otp'

    def test_welcome_mail_failure_is_not_fatal(self, client, mailbox):
        register(client)
        code = mailbox.last_otp('a@x.com')
        mailbox.fail = True

        response = client.post('/api/auth/verify-otp', json={'email': 'a@x.com', 'otp': code})
        assert response.status_code == 200


class TestResendOTP:
    def test_second_resend_within_cooldown_is_limited(self, app, client, mailbox):
        register(client)
        backdate_otp(app, 'a@x.com')

        first = client.post('/api/auth/resend-otp', json={'email': 'a@x.com'})
        second = client.post('/api/auth/resend-otp', json={'email': 'a@x.com'})

        assert first.status_code == 200
        assert second.status_code == 429
        assert 0 < wait_seconds(second) <= 30
        assert second.headers['Retry-After']
        assert len(mailbox.to('a@x.com')) == 2

    def test_resend_right_after_register_is_limited(self, client):
        register(client)
        response = client.post('/api/auth/resend-otp', json={'email': 'a@x.com'})
        assert response.status_code == 429

    def test_new_code_replaces_old_one(self, app, client, mailbox):
        register(client)
        old_code = mailbox.last_otp('a@x.com')
        backdate_otp(app, 'a@x.com')
        client.post('/api/auth/resend-otp', json={'email': 'a@x.com'})
        new_code = mailbox.last_otp('a@x.com')

        if old_code != new_code:
            response = client.post('/api/auth/verify-otp', json={'email': 'a@x.com', 'otp': old_code})
            assert response.status_code == 400
        response = client.post('/api/auth/verify-otp', json={'email': 'a@x.com', 'otp': new_code})
        assert response.status_code == 200

    def test_unknown_email(self, client):
        response = client.post('/api/auth/resend-otp', json={'email': 'nobody@x.com'})
        assert response.status_code == 404

    def test_verified_user_without_login_challenge(self, client, token):
        response = client.post('/api/auth/resend-otp', json={'email': 'a@x.com'})
        assert response.status_code == 400
        assert response.get_json()['message'] == 'No active login session found. Please try logging in again.'

    def test_verified_user_with_login_challenge(self, app, client, mailbox, token):
        client.post('/api/auth/login', json={'email': 'a@x.com'})
        backdate_otp(app, 'a@x.com')
        expire_otp(app, 'a@x.com')

        response = client.post('/api/auth/resend-otp', json={'email': 'a@x.com'})
        assert response.status_code == 200

        code = mailbox.last_otp('a@x.com')
        response = client.post('/api/auth/verify-login-otp', json={'email': 'a@x.com', 'otp': code})
        assert response.status_code == 200


class TestLogin:
    def test_login_round_trip(self, app, client, mailbox, token):
        response = client.post('/api/auth/login', json={'email': 'a@x.com'})
        assert response.status_code == 200
        assert 'data' not in response.get_json()

        code = mailbox.last_otp('a@x.com')
        welcome_count = sum('Welcome' in m['subject'] for m in mailbox.sent)
        response = client.post('/api/auth/verify-login-otp', json={'email': 'a@x.com', 'otp': code})

        assert response.status_code == 200
        body = response.get_json()
        assert body['message'] == 'Login successful'
        assert body['data']['token']
        assert sum('Welcome' in m['subject'] for m in mailbox.sent) == welcome_count
        assert get_user(app, 'a@x.com').otp is None

    def test_login_code_is_single_use(self, client, mailbox, token):
        client.post('/api/auth/login', json={'email': 'a@x.com'})
        code = mailbox.last_otp('a@x.com')
        client.post('/api/auth/verify-login-otp', json={'email': 'a@x.com', 'otp': code})

        response = client.post('/api/auth/verify-login-otp', json={'email': 'a@x.com', 'otp': code})
        assert response.status_code == 400
        assert response.get_json()['message'].startswith('No OTP found')

    def test_unknown_user(self, client):
        response = client.post('/api/auth/login', json={'email': 'nobody@x.com'})
        assert response.status_code == 404
        assert response.get_json()['message'] == 'User not found. Please register first.'

    def test_unverified_user(self, app, client):
        register(client)
        backdate_otp(app, 'a@x.com')
        response = client.post('/api/auth/login', json={'email': 'a@x.com'})
        assert response.status_code == 401
        response = client.post('/api/auth/verify-login-otp', json={'email': 'a@x.com', 'otp': '123456'})
        assert response.status_code == 401

    def test_login_cooldown(self, client, token):
        client.post('/api/auth/login', json={'email': 'a@x.com'})
        response = client.post('/api/auth/login', json={'email': 'a@x.com'})
        assert response.status_code == 429

    def test_mail_failure_outside_production_returns_code(self, app, client, mailbox, token):
        mailbox.fail = True
        response = client.post('/api/auth/login', json={'email': 'a@x.com'})

        assert response.status_code == 200
        code = response.get_json()['data']['otp']
        response = client.post('/api/auth/verify-login-otp', json={'email': 'a@x.com', 'otp': code})
        assert response.status_code == 200

    def test_mail_failure_in_production(self, app, client, mailbox, token):
        app.config['IS_PRODUCTION'] = True
        mailbox.fail = True
        response = client.post('/api/auth/login', json={'email': 'a@x.com'})

        assert response.status_code == 500
        body = response.get_json()
        assert body['message'] == 'Email service temporarily unavailable. Please try again later.'
        assert 'data' not in body


class TestMe:
    def test_returns_current_user(self, client, token):
        response = client.get('/api/auth/me', headers=auth_headers(token))
        assert response.status_code == 200
        assert response.get_json()['data']['user']['email'] == 'a@x.com'

    def test_requires_token(self, client):
        response = client.get('/api/auth/me')
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Access denied. No token provided.'

    def test_rejects_bad_token(self, client):
        response = client.get('/api/auth/me', headers=auth_headers('garbage'))
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Access denied. Invalid token.'

    def test_deleted_user_token_is_rejected(self, app, client, token):
        from notesapp import db
        from notesapp.models import User
        with app.app_context():
            db.session.delete(User.query.filter_by(email='a@x.com').one())
            db.session.commit()

        response = client.get('/api/auth/me', headers=auth_headers(token))
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Access denied. User not found.'

    def test_unverified_user_token_is_rejected(self, app, client, token):
        update_user(app, 'a@x.com', is_verified=False)

        response = client.get('/api/auth/me', headers=auth_headers(token))
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Access denied. Email not verified.'


class TestGoogle:
    def claims(self, verifier, token='tok', uid='g-1', email='g@x.com', **extra):
        verifier.tokens[token] = IdentityClaims(uid=uid, email=email, email_verified=True, **extra)

    def test_creates_verified_account(self, app, client, mailbox, verifier):
        self.claims(verifier, name='Gina', picture='https://img/g.png')

        response = client.post('/api/auth/google', json={'idToken': 'tok'})

        assert response.status_code == 200
        body = response.get_json()
        assert body['message'] == 'Account created successfully'
        assert body['data']['user']['authProvider'] == AUTH_PROVIDER_GOOGLE
        assert body['data']['user']['avatar'] == 'https://img/g.png'
        assert body['data']['token']
        user = get_user(app, 'g@x.com')
        assert user.is_verified is True
        assert user.google_id == 'g-1'
        assert len(mailbox.to('g@x.com')) == 1

    def test_second_sign_in_logs_in(self, client, verifier):
        self.claims(verifier)
        client.post('/api/auth/google', json={'idToken': 'tok'})

        response = client.post('/api/auth/google', json={'idToken': 'tok'})
        assert response.get_json()['message'] == 'Login successful'

    def test_links_existing_otp_account(self, app, client, verifier, token):
        self.claims(verifier, email='a@x.com', picture='https://img/a.png')

        response = client.post('/api/auth/google', json={'idToken': 'tok'})

        assert response.status_code == 200
        assert response.get_json()['message'] == 'Login successful'
        user = get_user(app, 'a@x.com')
        assert user.auth_provider == AUTH_PROVIDER_GOOGLE
        assert user.google_id == 'g-1'
        assert user.avatar == 'https://img/a.png'
        assert user.name == 'Alice'

    def test_linking_verifies_pending_account(self, app, client, verifier):
        register(client)
        self.claims(verifier, email='a@x.com')

        response = client.post('/api/auth/google', json={'idToken': 'tok'})

        assert response.status_code == 200
        user = get_user(app, 'a@x.com')
        assert user.is_verified is True
        assert user.otp is None

    def test_rejects_different_google_account(self, client, verifier):
        self.claims(verifier, token='first', uid='g-1')
        self.claims(verifier, token='second', uid='g-2')
        client.post('/api/auth/google', json={'idToken': 'first'})

        response = client.post('/api/auth/google', json={'idToken': 'second'})
        assert response.status_code == 400
        assert response.get_json()['message'] == 'This email is associated with a different Google account'

    def test_rejects_uid_held_by_another_account(self, app, client, verifier):
        register(client)
        self.claims(verifier, token='first', uid='g-1', email='b@x.com')
        self.claims(verifier, token='second', uid='g-1', email='a@x.com')
        assert client.post('/api/auth/google', json={'idToken': 'first'}).status_code == 200

        response = client.post('/api/auth/google', json={'idToken': 'second'})

        assert response.status_code == 400
        assert response.get_json()['message'] == 'This email is associated with a different Google account'
        assert get_user(app, 'a@x.com').google_id is None
        assert get_user(app, 'b@x.com').google_id == 'g-1'

    def test_signs_in_by_uid_after_email_change(self, app, client, verifier):
        self.claims(verifier, token='first', uid='g-1', email='old@x.com')
        self.claims(verifier, token='second', uid='g-1', email='new@x.com')
        client.post('/api/auth/google', json={'idToken': 'first'})

        response = client.post('/api/auth/google', json={'idToken': 'second'})

        assert response.status_code == 200
        assert response.get_json()['data']['user']['email'] == 'old@x.com'

    def test_key_endpoint_outage(self, client, verifier, monkeypatch):
        def unavailable(id_token):
            raise UpstreamUnavailable('Google authentication is temporarily unavailable')
        monkeypatch.setattr(verifier, 'verify', unavailable)

        response = client.post('/api/auth/google', json={'idToken': 'tok'})

        assert response.status_code == 500
        assert response.get_json()['message'] == 'Google authentication is temporarily unavailable'

    def test_rejects_invalid_token(self, client):
        response = client.post('/api/auth/google', json={'idToken': 'forged'})
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Invalid Google token'

    def test_requires_email_claim(self, client, verifier):
        self.claims(verifier, email=None)
        response = client.post('/api/auth/google', json={'idToken': 'tok'})
        assert response.status_code == 400

    def test_requires_token_field(self, client):
        response = client.post('/api/auth/google', json={})
        assert response.status_code == 400
        assert response.get_json()['errors'][0]['field'] == 'idToken'


class TestCheckAuthMethod:
    def test_known_user(self, client):
        register(client)
        response = client.post('/api/auth/check-auth-method', json={'email': 'a@x.com'})
        assert response.status_code == 200
        assert response.get_json()['data'] == {'authMethod': 'otp', 'userExists': True, 'isVerified': False}

    def test_unknown_user(self, client):
        response = client.post('/api/auth/check-auth-method', json={'email': 'nobody@x.com'})
        assert response.status_code == 404
        assert response.get_json()['data'] == {'authMethod': None, 'userExists': False}
