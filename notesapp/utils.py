from datetime import datetime, timezone


def utcnow():
    """Naive UTC timestamp, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value):
    return value.isoformat() + 'Z' if value else None


def normalize_email(email):
    return email.strip().lower() if email else email
