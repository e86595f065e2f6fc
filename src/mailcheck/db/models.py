"""SQLAlchemy models for accounts, API keys, and usage logs."""

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mailcheck.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class PlanType(str, Enum):
    """Known plan names. Partner webhooks may send others."""

    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ULTRA = "ultra"
    PARTNER = "partner"  # Default for marketplace subscribers


class KeyProvenance(str, Enum):
    """How an API key was issued."""

    DIRECT = "direct"  # Issued by us (scripts, signup)
    PARTNER = "partner"  # Issued from a partner marketplace webhook


# =============================================================================
# Plan Configuration
# =============================================================================

PLAN_CREDITS: dict[str, int] = {
    PlanType.FREE.value: 100,
    PlanType.BASIC.value: 1000,
    PlanType.PRO.value: 10000,
    PlanType.ULTRA.value: 100000,
    PlanType.PARTNER.value: 10000,
}

DEFAULT_PLAN = PlanType.PARTNER.value


# =============================================================================
# User Model
# =============================================================================


class User(Base):
    """Account that owns API keys."""

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False)

    # Marketplace subscriber id (unique when present)
    external_partner_id: Mapped[str | None] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    api_keys: Mapped[list["ApiKey"]] = relationship(back_populates="user")

    __table_args__ = (
        UniqueConstraint("email", name="uq_users_email"),
        UniqueConstraint("external_partner_id", name="uq_users_external_partner_id"),
    )


# =============================================================================
# API Key Model
# =============================================================================


class ApiKey(Base):
    """Metered access token with a remaining-credit counter."""

    __tablename__ = "api_keys"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )

    token: Mapped[str] = mapped_column(String(128), nullable=False)
    plan_type: Mapped[str] = mapped_column(String(50), nullable=False)
    credits_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    provenance: Mapped[str] = mapped_column(
        String(50), nullable=False, default=KeyProvenance.DIRECT.value
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    user: Mapped["User"] = relationship(back_populates="api_keys")

    __table_args__ = (
        UniqueConstraint("token", name="uq_api_keys_token"),
        CheckConstraint("credits_remaining >= 0", name="ck_api_keys_credits"),
        Index("ix_api_keys_user_id", "user_id"),
        Index("ix_api_keys_provenance", "provenance"),
    )

    @property
    def masked_token(self) -> str:
        """Token with the random body hidden, safe to show back to callers."""
        return f"{self.token[:9]}...{self.token[-6:]}"


# =============================================================================
# Usage Log Model
# =============================================================================


class UsageLog(Base):
    """Append-only record of one validation call."""

    __tablename__ = "usage_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    api_key_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("api_keys.id"), nullable=False
    )
    validated_address: Mapped[str] = mapped_column(Text, nullable=False)
    result_json: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_usage_logs_api_key_id", "api_key_id"),
        Index("ix_usage_logs_created_at", "created_at"),
    )
