"""One-time password issuing and checking.

Codes are six digits, live for ten minutes and can be re-issued at most once
every thirty seconds per account. Only a hash of the code is stored on the
user row; the plaintext is returned once so it can be mailed.
"""
import math
import secrets
from datetime import timedelta

from werkzeug.security import generate_password_hash, check_password_hash

from notesapp.errors import BadRequest, NotFound, RateLimited
from notesapp.utils import utcnow

OTP_TTL = timedelta(minutes=10)
RESEND_COOLDOWN = timedelta(seconds=30)


def generate_otp():
    return str(100000 + secrets.randbelow(900000))


def seconds_until_resend(user, now=None):
    if user.last_otp_sent is None:
        return 0
    now = now or utcnow()
    remaining = (user.last_otp_sent + RESEND_COOLDOWN - now).total_seconds()
    return max(0, math.ceil(remaining))


def issue(user, now=None):
    """Store a fresh code on ``user`` and return it. The caller commits."""
    now = now or utcnow()
    wait = seconds_until_resend(user, now)
    if wait > 0:
        raise RateLimited(
            f'Please wait {wait} seconds before requesting another OTP.',
            retry_after=wait,
        )

    code = generate_otp()
    user.otp = generate_password_hash(code)
    user.otp_expires = now + OTP_TTL
    user.last_otp_sent = now
    return code


def verify(user, code, signup=False, now=None):
    if user is None:
        raise NotFound('User not found')
    if signup and user.is_verified:
        raise BadRequest('Email already verified')
    if not user.has_pending_otp:
        raise BadRequest('No OTP found. Please request a new one.')

    now = now or utcnow()
    if user.otp_expires < now:
        raise BadRequest('OTP expired. Please request a new one.')
    if not check_password_hash(user.otp, code):
        raise BadRequest('Invalid OTP')

    clear(user)


def clear(user):
    user.otp = None
    user.otp_expires = None
