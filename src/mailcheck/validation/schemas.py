"""Pydantic schemas for validation results.

Results are immutable: the engine builds one per request and nothing
downstream (metering, usage logging, the HTTP layer) may alter it.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict

# Points per favourable signal
SCORE_SYNTAX = 20
SCORE_DNS = 20
SCORE_MX = 40
SCORE_NOT_DISPOSABLE = 20
SCORE_NOT_ROLE_BASED = 20


class DnsResult(BaseModel):
    """Outcome of the MX lookup for a domain."""

    model_config = ConfigDict(frozen=True)

    resolves: bool = False
    has_mx: bool = False
    mx_servers: tuple[str, ...] = ()


class ValidationDetails(BaseModel):
    """Per-signal breakdown. None means the signal was not evaluated."""

    model_config = ConfigDict(frozen=True)

    syntax: bool
    dns: bool | None = None
    mx_records: bool | None = None
    disposable: bool | None = None
    role_based: bool | None = None
    mx_servers: tuple[str, ...] | None = None


class ValidationResult(BaseModel):
    """Verdict and score for one address."""

    model_config = ConfigDict(frozen=True)

    email: str
    valid: bool
    score: int
    details: ValidationDetails

    @classmethod
    def invalid_syntax(cls, email: str) -> "ValidationResult":
        """Short-circuited result: only the syntax signal was evaluated."""
        return cls(
            email=email,
            valid=False,
            score=0,
            details=ValidationDetails(syntax=False),
        )

    @classmethod
    def from_signals(
        cls,
        email: str,
        dns: DnsResult,
        disposable: bool,
        role_based: bool | None,
    ) -> "ValidationResult":
        """Score a syntactically valid address.

        ``role_based=None`` means role detection is disabled: it neither
        scores nor takes part in the verdict, so the ceiling drops to 100.
        """
        score = SCORE_SYNTAX
        if dns.resolves:
            score += SCORE_DNS
        if dns.has_mx:
            score += SCORE_MX
        if not disposable:
            score += SCORE_NOT_DISPOSABLE
        if role_based is False:
            score += SCORE_NOT_ROLE_BASED

        valid = dns.resolves and dns.has_mx and not disposable and not role_based

        return cls(
            email=email,
            valid=valid,
            score=score,
            details=ValidationDetails(
                syntax=True,
                dns=dns.resolves,
                mx_records=dns.has_mx,
                disposable=disposable,
                role_based=role_based,
                mx_servers=dns.mx_servers,
            ),
        )

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict used for responses and usage logs."""
        return self.model_dump(mode="json")
