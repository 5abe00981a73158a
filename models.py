"""
ContextDB Database Models
PostgreSQL schema (SQLite for local development and tests)
"""

from datetime import datetime, timezone
import os
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, ForeignKey, Index, UniqueConstraint, JSON
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import relationship, declarative_base

DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
DB_BACKEND_EFFECTIVE = DB_BACKEND if DB_BACKEND in {"postgres", "sqlite"} else "postgres"

JSON_TYPE = JSONB if DB_BACKEND_EFFECTIVE == "postgres" else JSON
TAGS_TYPE = ARRAY(String) if DB_BACKEND_EFFECTIVE == "postgres" else JSON
UUID_TYPE = UUID(as_uuid=False) if DB_BACKEND_EFFECTIVE == "postgres" else String(36)


def _uuid_default() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


Base = declarative_base()


# =============================================================================
# Contexts
# =============================================================================

class Context(Base):
    """A named, versioned JSON document owned by one user"""
    __tablename__ = "contexts"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    user_id = Column(UUID_TYPE, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    summary = Column(Text)
    tags = Column(TAGS_TYPE, default=list, nullable=False)
    content = Column(JSON_TYPE, default=dict, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    # Relationships
    history = relationship(
        "ContextHistory",
        back_populates="context",
        cascade="all, delete-orphan",
        order_by="ContextHistory.version.desc()",
    )

    __table_args__ = (
        UniqueConstraint('user_id', 'name', name='uq_contexts_user_name'),
        Index('ix_contexts_user_updated', 'user_id', 'updated_at'),
        Index('ix_contexts_tags', 'tags', postgresql_using='gin'),
    )

    def __repr__(self):
        return f"<Context {self.name} v{self.version}>"


class ContextHistory(Base):
    """Snapshot of a context's payload taken before each mutation"""
    __tablename__ = "context_history"

    id = Column(Integer, primary_key=True)
    context_id = Column(UUID_TYPE, ForeignKey("contexts.id", ondelete="CASCADE"), nullable=False)
    version = Column(Integer, nullable=False)
    content = Column(JSON_TYPE, default=dict, nullable=False)
    inserted_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    context = relationship("Context", back_populates="history")

    __table_args__ = (
        Index('ix_context_history_context_version', 'context_id', 'version'),
    )
