"""Service configuration.

All values come from environment variables (loaded from .env.local / .env
at startup). Every variable has a working default; malformed values fail
fast with a clear error instead of being silently ignored.
"""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from mailcheck.db.database import DEFAULT_DATABASE_URL
from mailcheck.db.models import PLAN_CREDITS


class ConfigurationError(Exception):
    """Raised when a configuration value cannot be parsed."""

    pass


DEFAULT_CACHE_TTL_SECONDS = 24 * 60 * 60
DEFAULT_CACHE_PATH = Path(tempfile.gettempdir()) / "mailcheck-disposable-domains.json"


def _env_number(key: str, default: float) -> float:
    """Read a positive number from the environment."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return float(default)
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid value for {key}: {raw!r}\n"
            "Expected a positive number of seconds."
        ) from e
    if value <= 0:
        raise ConfigurationError(f"{key} must be positive, got {raw!r}")
    return value


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"Invalid boolean for {key}: {raw!r}")


def parse_domain_override(raw: str | None) -> frozenset[str] | None:
    """Parse a comma-separated domain list. Empty or unset means no override."""
    if raw is None:
        return None
    domains = frozenset(
        part.strip().lower() for part in raw.split(",") if part.strip()
    )
    return domains or None


def parse_plan_credits(raw: str | None) -> dict[str, int]:
    """Parse ``name:credits`` pairs and merge them over the default table.

    Example: ``PLAN_CREDITS="basic:2000,enterprise:500000"``
    """
    table = dict(PLAN_CREDITS)
    if raw is None or not raw.strip():
        return table

    for pair in raw.split(","):
        if not pair.strip():
            continue
        name, sep, credits = pair.partition(":")
        if not sep or not name.strip():
            raise ConfigurationError(
                f"Invalid PLAN_CREDITS entry: {pair!r}\n"
                'Expected "plan:credits", e.g. PLAN_CREDITS="basic:1000,pro:10000"'
            )
        try:
            amount = int(credits)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid credit amount in PLAN_CREDITS entry: {pair!r}"
            ) from e
        if amount < 0:
            raise ConfigurationError(f"Negative credit amount in PLAN_CREDITS: {pair!r}")
        table[name.strip().lower()] = amount
    return table


@dataclass
class Settings:
    """Runtime settings for the validation service."""

    database_url: str = DEFAULT_DATABASE_URL
    disposable_cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    disposable_cache_path: Path = DEFAULT_CACHE_PATH
    disposable_domains_override: frozenset[str] | None = None
    disposable_fetch_timeout_seconds: float = 10.0
    dns_timeout_seconds: float = 5.0
    role_based_scoring: bool = True
    plan_credits: dict[str, int] = field(default_factory=lambda: dict(PLAN_CREDITS))
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables."""
        cache_path = os.getenv("DISPOSABLE_CACHE_PATH")
        return cls(
            database_url=os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL,
            disposable_cache_ttl_seconds=_env_number(
                "DISPOSABLE_CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS
            ),
            disposable_cache_path=Path(cache_path) if cache_path else DEFAULT_CACHE_PATH,
            disposable_domains_override=parse_domain_override(
                os.getenv("DISPOSABLE_DOMAINS_OVERRIDE")
            ),
            disposable_fetch_timeout_seconds=_env_number(
                "DISPOSABLE_FETCH_TIMEOUT_SECONDS", 10.0
            ),
            dns_timeout_seconds=_env_number("DNS_TIMEOUT_SECONDS", 5.0),
            role_based_scoring=_env_bool("ROLE_BASED_SCORING", True),
            plan_credits=parse_plan_credits(os.getenv("PLAN_CREDITS")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
