"""Email validation module.

Provides the multi-signal validation engine and the disposable domain cache.
"""

from mailcheck.validation.disposable import CacheState, DisposableDomainCache
from mailcheck.validation.engine import (
    DnsChecker,
    ValidationEngine,
    is_role_based,
    validate_syntax,
)
from mailcheck.validation.schemas import DnsResult, ValidationDetails, ValidationResult

__all__ = [
    "CacheState",
    "DisposableDomainCache",
    "DnsChecker",
    "DnsResult",
    "ValidationDetails",
    "ValidationEngine",
    "ValidationResult",
    "is_role_based",
    "validate_syntax",
]
