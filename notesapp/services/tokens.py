import re
from datetime import timedelta
from functools import wraps

from flask import current_app, g, request
from flask_jwt_extended import create_access_token, decode_token
from jwt.exceptions import PyJWTError
from flask_jwt_extended.exceptions import JWTExtendedException

from notesapp import db
from notesapp.errors import Unauthorized
from notesapp.models import User

_DURATION_RE = re.compile(r'^\s*(\d+)\s*([smhd]?)\s*$')
_UNITS = {'': 'seconds', 's': 'seconds', 'm': 'minutes', 'h': 'hours', 'd': 'days'}


def parse_duration(value):
    """Parse ``7d``/``12h``/``30m``/``45s`` or bare seconds into a timedelta."""
    if isinstance(value, timedelta):
        return value
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f'Invalid duration: {value!r}')
    amount, unit = match.groups()
    return timedelta(**{_UNITS[unit]: int(amount)})


def generate_token(user_id, email):
    if not current_app.config.get('JWT_SECRET_KEY'):
        raise RuntimeError('JWT_SECRET_KEY is not defined in environment variables')
    return create_access_token(identity=str(user_id), additional_claims={'email': email})


def verify_token(token):
    try:
        claims = decode_token(token)
    except (PyJWTError, JWTExtendedException):
        raise Unauthorized('Invalid or expired token')
    return {'userId': claims['sub'], 'email': claims.get('email')}


def _bearer_token():
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    return header[len('Bearer '):].strip() or None


def auth_required(fn):
    """Resolve the bearer token to a verified user stored in ``g.current_user``.

    The user row is loaded on every request, so deleting or un-verifying an
    account revokes its outstanding tokens.
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        token = _bearer_token()
        if token is None:
            raise Unauthorized('Access denied. No token provided.')

        try:
            payload = verify_token(token)
        except Unauthorized:
            raise Unauthorized('Access denied. Invalid token.')

        try:
            user_id = int(payload['userId'])
        except (TypeError, ValueError):
            raise Unauthorized('Access denied. Invalid token.')

        user = db.session.get(User, user_id)
        if user is None:
            raise Unauthorized('Access denied. User not found.')
        if not user.is_verified:
            raise Unauthorized('Access denied. Email not verified.')

        g.current_user = user
        return fn(*args, **kwargs)
    return wrapper
