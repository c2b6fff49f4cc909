import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from jwt import PyJWKClient
from jwt.exceptions import InvalidTokenError, PyJWKClientConnectionError, PyJWKClientError

from notesapp.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

GOOGLE_CERTS_URL = 'https://www.googleapis.com/oauth2/v3/certs'
GOOGLE_ISSUERS = ['accounts.google.com', 'https://accounts.google.com']
FIREBASE_CERTS_URL = 'https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com'


class IdentityVerificationError(Exception):
    pass


@dataclass
class IdentityClaims:
    uid: str
    email: Optional[str]
    name: Optional[str] = None
    picture: Optional[str] = None
    email_verified: bool = False


class IdentityVerifier:
    """Checks RS256 ID tokens issued by Google or Firebase against their JWKS."""

    def __init__(self, jwks_url: str, audience: Optional[str], issuers: list[str], leeway: int = 60):
        self.jwks_url = jwks_url
        self.audience = audience
        self.issuers = issuers
        self.leeway = leeway
        self._jwk_client = None

    @property
    def jwk_client(self) -> PyJWKClient:
        if self._jwk_client is None:
            self._jwk_client = PyJWKClient(self.jwks_url)
        return self._jwk_client

    def verify(self, id_token: str) -> IdentityClaims:
        if not self.audience:
            raise UpstreamUnavailable('Google authentication is not configured')

        try:
            signing_key = self.jwk_client.get_signing_key_from_jwt(id_token).key
            payload = jwt.decode(
                id_token,
                signing_key,
                algorithms=['RS256'],
                audience=self.audience,
                issuer=self.issuers,
                leeway=self.leeway,
            )
        except PyJWKClientConnectionError as e:
            logger.error('Identity key endpoint unreachable: %s', e)
            raise UpstreamUnavailable('Google authentication is temporarily unavailable') from e
        except PyJWKClientError as e:
            # a token whose kid is unknown surfaces here as well
            logger.warning('Identity key lookup failed: %s', e)
            raise IdentityVerificationError(str(e)) from e
        except InvalidTokenError as e:
            raise IdentityVerificationError(str(e)) from e

        uid = payload.get('user_id') or payload.get('sub')
        if not uid:
            raise IdentityVerificationError('Token has no subject')

        email_verified = payload.get('email_verified') is True
        email = payload.get('email')
        if email and not email_verified:
            raise IdentityVerificationError('Email is not verified by the identity provider')

        return IdentityClaims(
            uid=uid,
            email=email.strip().lower() if isinstance(email, str) and email.strip() else None,
            name=payload.get('name'),
            picture=payload.get('picture'),
            email_verified=email_verified,
        )


def verifier_from_config(config) -> IdentityVerifier:
    provider = config.get('IDENTITY_PROVIDER', 'google')
    if provider == 'google':
        return IdentityVerifier(GOOGLE_CERTS_URL, config.get('GOOGLE_CLIENT_ID'), GOOGLE_ISSUERS)
    if provider == 'firebase':
        project_id = config.get('FIREBASE_PROJECT_ID')
        issuers = [f'https://securetoken.google.com/{project_id}'] if project_id else []
        return IdentityVerifier(FIREBASE_CERTS_URL, project_id, issuers)
    raise RuntimeError(f'Unknown IDENTITY_PROVIDER: {provider!r}')


def init_app(app):
    app.extensions['identity'] = verifier_from_config(app.config)
