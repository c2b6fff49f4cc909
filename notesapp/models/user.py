from sqlalchemy.orm import deferred

from notesapp import db
from notesapp.utils import utcnow, isoformat

AUTH_PROVIDER_OTP = 'otp'
AUTH_PROVIDER_GOOGLE = 'google'


class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), nullable=False)
    email = db.Column(db.String(100), unique=True, index=True, nullable=False)
    date_of_birth = db.Column(db.Date, nullable=True)
    avatar = db.Column(db.String(500), nullable=True)
    auth_provider = db.Column(db.String(20), nullable=False, default=AUTH_PROVIDER_OTP)
    google_id = db.Column(db.String(128), unique=True, nullable=True)
    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    # otp holds a hash of the code; kept out of the default column load
    otp = deferred(db.Column(db.String(255), nullable=True))
    otp_expires = deferred(db.Column(db.DateTime, nullable=True))
    last_otp_sent = deferred(db.Column(db.DateTime, nullable=True))
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    notes = db.relationship('Note', backref='owner', cascade='all, delete-orphan')

    @property
    def has_pending_otp(self):
        return self.otp is not None and self.otp_expires is not None

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'avatar': self.avatar,
            'authProvider': self.auth_provider,
            'dateOfBirth': self.date_of_birth.isoformat() if self.date_of_birth else None,
            'isVerified': self.is_verified,
            'createdAt': isoformat(self.created_at),
        }

    def __repr__(self):
        return f'<User {self.email}>'
