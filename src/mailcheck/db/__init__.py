"""Database module.

Provides SQLAlchemy models, async engine/session management, and utilities.
"""

from mailcheck.db.database import (
    DEFAULT_DATABASE_URL,
    Base,
    create_engine,
    create_session_factory,
    init_db,
)
from mailcheck.db.models import (
    DEFAULT_PLAN,
    PLAN_CREDITS,
    ApiKey,
    KeyProvenance,
    PlanType,
    UsageLog,
    User,
)

__all__ = [
    "DEFAULT_PLAN",
    "PLAN_CREDITS",
    "ApiKey",
    "Base",
    "DEFAULT_DATABASE_URL",
    "KeyProvenance",
    "PlanType",
    "UsageLog",
    "User",
    "create_engine",
    "create_session_factory",
    "init_db",
]
