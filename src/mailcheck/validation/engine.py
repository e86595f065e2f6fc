"""Multi-signal email validation.

Pipeline:
1. Syntax check (short-circuits everything else on failure)
2. In parallel: MX lookup, disposable-domain lookup, role-account check
3. Score and verdict
"""

import asyncio
import logging
import re

import dns.asyncresolver
import dns.exception
import dns.resolver

from mailcheck.validation.disposable import DisposableDomainCache
from mailcheck.validation.schemas import DnsResult, ValidationResult

logger = logging.getLogger("mailcheck-validation")

EMAIL_REGEX = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

# Generic mailbox names that belong to a function, not a person
ROLE_PREFIXES = frozenset(
    [
        "admin",
        "administrator",
        "info",
        "information",
        "support",
        "help",
        "helpdesk",
        "sales",
        "marketing",
        "contact",
        "hello",
        "hi",
        "office",
        "team",
        "billing",
        "accounts",
        "accounting",
        "hr",
        "careers",
        "jobs",
        "recruiting",
        "noreply",
        "no-reply",
        "donotreply",
        "service",
        "services",
        "webmaster",
        "hostmaster",
        "postmaster",
        "abuse",
        "security",
        "legal",
        "privacy",
        "press",
        "media",
        "pr",
        "feedback",
        "suggestions",
    ]
)

DNS_TIMEOUT_SECONDS = 5.0


def validate_syntax(email: object) -> bool:
    """Check an address against a conservative pattern."""
    if not email or not isinstance(email, str):
        return False
    return bool(EMAIL_REGEX.fullmatch(email.strip()))


def is_role_based(email: object) -> bool:
    """Check if the local part is a generic role mailbox (exact match)."""
    if not email or not isinstance(email, str):
        return False
    parts = email.split("@")
    if len(parts) != 2:
        return False
    return parts[0].lower() in ROLE_PREFIXES


class DnsChecker:
    """MX lookups via dnspython's asyncio resolver.

    Lookup errors never propagate: any failure is reported as a domain that
    does not resolve.
    """

    def __init__(
        self,
        timeout: float = DNS_TIMEOUT_SECONDS,
        resolver: dns.asyncresolver.Resolver | None = None,
    ):
        self.timeout = timeout
        self.resolver = resolver or dns.asyncresolver.Resolver()

    async def check(self, domain: str) -> DnsResult:
        """Resolve MX records for a domain.

        Returns:
            DnsResult with MX hostnames sorted by ascending preference.
        """
        try:
            answer = await self.resolver.resolve(domain, "MX", lifetime=self.timeout)
        except dns.resolver.NoAnswer:
            # The name exists but publishes no MX records
            return DnsResult(resolves=True, has_mx=False)
        except (dns.exception.DNSException, OSError) as e:
            logger.debug(f"MX lookup failed for {domain}: {e!r}")
            return DnsResult()

        records = sorted(answer, key=lambda record: record.preference)
        servers = tuple(str(record.exchange).rstrip(".") for record in records)
        return DnsResult(resolves=True, has_mx=bool(servers), mx_servers=servers)


class ValidationEngine:
    """Scores addresses by combining syntax, DNS, disposable and role signals."""

    def __init__(
        self,
        disposable_cache: DisposableDomainCache,
        dns_checker: DnsChecker | None = None,
        role_based_scoring: bool = True,
    ):
        """Initialize the engine.

        Args:
            disposable_cache: Shared process-wide disposable domain cache.
            dns_checker: MX resolver. Defaults to a live DnsChecker.
            role_based_scoring: When False, role accounts are not detected
                and the maximum score is 100 instead of 120.
        """
        self.disposable_cache = disposable_cache
        self.dns_checker = dns_checker or DnsChecker()
        self.role_based_scoring = role_based_scoring

    @property
    def max_score(self) -> int:
        return 120 if self.role_based_scoring else 100

    async def validate(self, email: str) -> ValidationResult:
        """Validate one address.

        Args:
            email: Raw address as supplied by the caller.

        Returns:
            A fresh, immutable ValidationResult.
        """
        if not validate_syntax(email):
            return ValidationResult.invalid_syntax(email if isinstance(email, str) else "")

        email = email.strip()
        domain = email.split("@")[1]

        dns_result, disposable, role_based = await asyncio.gather(
            self.dns_checker.check(domain),
            self.disposable_cache.is_disposable(email),
            self._check_role(email),
        )

        return ValidationResult.from_signals(
            email=email,
            dns=dns_result,
            disposable=disposable,
            role_based=role_based,
        )

    async def _check_role(self, email: str) -> bool | None:
        if not self.role_based_scoring:
            return None
        return is_role_based(email)
