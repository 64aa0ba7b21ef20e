"""
SQLAlchemy ORM models for provider configs and user connections.

Types are kept portable (``Uuid``, ``JSON``) so the same models run on
PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, relationship

from connectors.encryption import decrypt_token, encrypt_token


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    NEEDS_REFRESH = "needs_refresh"
    EXPIRED = "expired"


class ProviderConfig(Base):
    __tablename__ = "provider_configs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    key = Column(String(64), unique=True, nullable=False)
    display_name = Column(String(64), nullable=False)
    category = Column(String(32), nullable=False, default="other")
    client_id = Column(String(256), nullable=False, default="")
    client_secret_hash = Column(String(128))
    redirect_uri = Column(Text, nullable=False)
    scopes = Column(JSON, nullable=False, default=list)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    connections = relationship("Connection", back_populates="provider")


class Connection(Base):
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider_id", name="uq_connections_user_provider"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    provider_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("provider_configs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text)
    expires_at = Column(DateTime(timezone=True))
    scope = Column(Text)
    metadata_ = Column("metadata", JSON, default=dict)
    status = Column(String(16), nullable=False, default=ConnectionStatus.ACTIVE.value)
    error_message = Column(Text)
    last_checked_at = Column(DateTime(timezone=True))
    last_refreshed_at = Column(DateTime(timezone=True))
    last_used_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    provider = relationship("ProviderConfig", back_populates="connections", lazy="joined")

    # Plaintext only exists in memory, through these two properties.

    @property
    def access_token(self) -> str:
        return decrypt_token(self.access_token_encrypted)

    @access_token.setter
    def access_token(self, value: str) -> None:
        self.access_token_encrypted = encrypt_token(value)

    @property
    def refresh_token(self) -> str | None:
        return decrypt_token(self.refresh_token_encrypted)

    @refresh_token.setter
    def refresh_token(self, value: str | None) -> None:
        self.refresh_token_encrypted = encrypt_token(value)

    def __repr__(self) -> str:
        return f"<Connection {self.id} user={self.user_id} status={self.status}>"
