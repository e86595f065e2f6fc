"""Retry helpers built on tenacity."""

import logging

from sqlalchemy.exc import IntegrityError
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
)

logger = logging.getLogger("mailcheck-retry")

MAX_CONFLICT_ATTEMPTS = 5


def is_unique_conflict(error: BaseException, targets: tuple[str, ...]) -> bool:
    """True if ``error`` is a unique violation on one of ``targets``.

    Targets are matched against the driver message, so list both spellings:
    ``table.column`` (SQLite) and the constraint name (PostgreSQL).
    """
    if not isinstance(error, IntegrityError):
        return False
    message = str(error.orig).lower()
    if "unique" not in message:
        return False
    return any(target.lower() in message for target in targets)


def _log_conflict(retry_state: RetryCallState) -> None:
    logger.warning(
        f"Unique conflict in {retry_state.fn.__name__} "
        f"(attempt {retry_state.attempt_number}), retrying with fresh values"
    )


def retry_on_conflict(*targets: str, attempts: int = MAX_CONFLICT_ATTEMPTS):
    """Retry a coroutine while it hits unique conflicts on ``targets``.

    The wrapped callable must generate fresh values (or re-read state) on
    every call. Any other error, including other integrity violations,
    propagates unchanged on the first attempt. Once ``attempts`` is
    exhausted tenacity raises ``RetryError`` wrapping the last conflict;
    callers turn that into their own fatal error.
    """
    return retry(
        stop=stop_after_attempt(attempts),
        retry=retry_if_exception(lambda e: is_unique_conflict(e, targets)),
        before_sleep=_log_conflict,
        reraise=False,
    )
