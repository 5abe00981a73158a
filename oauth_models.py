"""
User and Web Session Models for ContextDB

Extends models.py with account tables.
"""

from datetime import timedelta
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship
import secrets

from models import Base, UUID_TYPE, _uuid_default, utcnow, as_utc


class User(Base):
    """User account - created by signup or first external sign-in"""
    __tablename__ = "users"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    email = Column(String, unique=True, nullable=False, index=True)  # Always lower-cased
    name = Column(String, nullable=True)
    password_hash = Column(String, nullable=True)

    # External identity provider subject (e.g. "auth0|123", "google-oauth2|456")
    auth_subject = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    sessions = relationship("WebSession", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_users_auth_subject', 'auth_subject', unique=True),
    )

    def __repr__(self):
        return f"<User {self.email}>"


class WebSession(Base):
    """Cookie sessions for the account API"""
    __tablename__ = "web_sessions"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    user_id = Column(UUID_TYPE, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Session token (secure random, sent as cookie)
    token = Column(String, unique=True, nullable=False, index=True)

    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_activity = Column(DateTime(timezone=True), nullable=False)

    is_revoked = Column(Boolean, default=False, nullable=False)

    user = relationship("User", back_populates="sessions")

    def __init__(self, user_id: str, expires_in_hours: int = 24 * 7, **kwargs):
        now = utcnow()
        self.user_id = user_id
        self.token = secrets.token_urlsafe(48)
        self.ip_address = kwargs.get('ip_address')
        self.user_agent = kwargs.get('user_agent')
        self.created_at = now
        self.expires_at = now + timedelta(hours=expires_in_hours)
        self.last_activity = now
        self.is_revoked = False

    @property
    def is_valid(self) -> bool:
        return (
            not self.is_revoked
            and utcnow() < as_utc(self.expires_at)
        )

    def refresh_activity(self):
        """Update last activity timestamp"""
        self.last_activity = utcnow()


def cleanup_expired_sessions(session):
    """Remove expired web sessions"""
    session.query(WebSession).filter(WebSession.expires_at < utcnow()).delete()
    session.commit()
