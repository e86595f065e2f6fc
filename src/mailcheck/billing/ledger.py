"""Credit metering and key storage.

The ledger is the only writer of ``api_keys`` and ``usage_logs``. Every
debit is a single conditional UPDATE so concurrent requests against the
same key can never overdraw it.
"""

import json
import logging
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import RetryError

from mailcheck.db.models import ApiKey, KeyProvenance, UsageLog, User
from mailcheck.keys.generator import KeyEnvironment, KeyGenerator
from mailcheck.retry import MAX_CONFLICT_ATTEMPTS, retry_on_conflict

logger = logging.getLogger("mailcheck-ledger")

# Driver spellings of a token collision (SQLite, PostgreSQL)
TOKEN_CONFLICT_TARGETS = ("api_keys.token", "uq_api_keys_token")


class KeyRejection(str, Enum):
    """Why an API key was refused."""

    MALFORMED = "malformed"
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXHAUSTED = "exhausted"


REJECTION_MESSAGES = {
    KeyRejection.MALFORMED: "API key is malformed.",
    KeyRejection.NOT_FOUND: "API key not found.",
    KeyRejection.INACTIVE: "API key is inactive.",
    KeyRejection.EXHAUSTED: "Insufficient credits",
}


class ApiKeyRejected(Exception):
    """Raised when a key cannot be used for a metered call."""

    def __init__(self, reason: KeyRejection):
        self.reason = reason
        super().__init__(REJECTION_MESSAGES[reason])


class KeyGenerationError(Exception):
    """Raised when no unique key could be minted within the retry bound."""

    pass


class CreditLedger:
    """Debits credits, records usage, and stores keys."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        key_generator: KeyGenerator | None = None,
        max_mint_attempts: int = MAX_CONFLICT_ATTEMPTS,
    ):
        """Initialize the ledger.

        Args:
            sessions: Session factory. Debits and usage records each run in
                their own short transaction so they can proceed concurrently.
            key_generator: Generator used when minting keys.
            max_mint_attempts: Bound on generate-and-insert attempts.
        """
        self.sessions = sessions
        self.key_generator = key_generator or KeyGenerator()
        self.max_mint_attempts = max_mint_attempts

    # -------------------------------------------------------------------------
    # Metering
    # -------------------------------------------------------------------------

    async def authenticate(
        self, token: str | None, require_credits: bool = True
    ) -> ApiKey:
        """Resolve a presented token to a usable key.

        The structural check runs first so malformed input never reaches
        the database. With ``require_credits=False`` an exhausted key is
        still accepted (for unmetered endpoints).

        Raises:
            ApiKeyRejected: With the specific reason the key is unusable.
        """
        if not self.key_generator.is_well_formed(token):
            raise ApiKeyRejected(KeyRejection.MALFORMED)

        async with self.sessions() as session:
            result = await session.execute(select(ApiKey).where(ApiKey.token == token))
            api_key = result.scalar_one_or_none()

        if api_key is None:
            raise ApiKeyRejected(KeyRejection.NOT_FOUND)
        if not api_key.is_active:
            raise ApiKeyRejected(KeyRejection.INACTIVE)
        if require_credits and api_key.credits_remaining <= 0:
            raise ApiKeyRejected(KeyRejection.EXHAUSTED)
        return api_key

    async def debit(self, key_id: UUID) -> bool:
        """Consume one credit.

        Returns:
            True iff a credit was actually consumed; False when the counter
            was already zero (or the key does not exist).
        """
        async with self.sessions.begin() as session:
            result = await session.execute(
                update(ApiKey)
                .where(ApiKey.id == key_id)
                .where(ApiKey.credits_remaining > 0)
                .values(credits_remaining=ApiKey.credits_remaining - 1)
                .execution_options(synchronize_session=False)
            )
            debited = result.rowcount == 1
        return debited

    async def record_usage(
        self, key_id: UUID, address: str, result: dict[str, Any]
    ) -> None:
        """Append a usage record. Never raises."""
        try:
            async with self.sessions.begin() as session:
                session.add(
                    UsageLog(
                        api_key_id=key_id,
                        validated_address=address,
                        result_json=json.dumps(result),
                    )
                )
        except Exception:
            logger.exception(f"Failed to record usage for key {key_id}")

    async def get_balance(self, key_id: UUID) -> int | None:
        """Remaining credits for a key, None if it does not exist."""
        async with self.sessions() as session:
            result = await session.execute(
                select(ApiKey.credits_remaining).where(ApiKey.id == key_id)
            )
            return result.scalar_one_or_none()

    async def list_keys(self, user_id: UUID) -> list[ApiKey]:
        """All keys owned by a user, newest first."""
        async with self.sessions() as session:
            result = await session.execute(
                select(ApiKey)
                .where(ApiKey.user_id == user_id)
                .order_by(ApiKey.created_at.desc())
            )
            return list(result.scalars().all())

    async def deactivate_key(self, key_id: UUID, user_id: UUID) -> bool:
        """Deactivate one key, only if ``user_id`` owns it.

        Returns:
            True if the key was found under that owner.
        """
        async with self.sessions.begin() as session:
            result = await session.execute(
                update(ApiKey)
                .where(ApiKey.id == key_id)
                .where(ApiKey.user_id == user_id)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            deactivated = result.rowcount == 1

        if deactivated:
            logger.info(f"Key {key_id} deactivated by its owner")
        return deactivated

    # -------------------------------------------------------------------------
    # Key issuing (runs inside the caller's transaction)
    # -------------------------------------------------------------------------

    async def issue_key(
        self,
        session: AsyncSession,
        user_id: UUID,
        plan: str,
        credits: int,
        provenance: KeyProvenance = KeyProvenance.DIRECT,
        environment: KeyEnvironment = KeyEnvironment.LIVE,
    ) -> ApiKey:
        """Mint a key and insert it, retrying on token collisions.

        Each attempt runs in a SAVEPOINT so a collision does not poison the
        caller's transaction.

        Raises:
            KeyGenerationError: If every attempt collided.
            IntegrityError: Any other constraint violation, unchanged.
        """

        @retry_on_conflict(*TOKEN_CONFLICT_TARGETS, attempts=self.max_mint_attempts)
        async def _insert_fresh_key() -> ApiKey:
            api_key = ApiKey(
                user_id=user_id,
                token=self.key_generator.generate(environment),
                plan_type=plan,
                credits_remaining=credits,
                is_active=True,
                provenance=KeyProvenance(provenance).value,
            )
            async with session.begin_nested():
                session.add(api_key)
                await session.flush()
            return api_key

        try:
            return await _insert_fresh_key()
        except RetryError as e:
            raise KeyGenerationError(
                f"Failed to generate a unique API key after "
                f"{self.max_mint_attempts} attempts"
            ) from e

    async def top_up_partner_keys(
        self, session: AsyncSession, partner_id: str, plan: str, credits: int
    ) -> int:
        """Add credits and set the plan on a partner's active partner keys.

        Returns:
            Number of keys updated.
        """
        result = await session.execute(
            update(ApiKey)
            .where(ApiKey.user_id.in_(_partner_user_ids(partner_id)))
            .where(ApiKey.provenance == KeyProvenance.PARTNER.value)
            .where(ApiKey.is_active.is_(True))
            .values(
                plan_type=plan,
                credits_remaining=ApiKey.credits_remaining + credits,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def deactivate_partner_keys(self, session: AsyncSession, partner_id: str) -> int:
        """Deactivate a partner's active partner keys in one statement.

        Returns:
            Number of keys deactivated.
        """
        result = await session.execute(
            update(ApiKey)
            .where(ApiKey.user_id.in_(_partner_user_ids(partner_id)))
            .where(ApiKey.provenance == KeyProvenance.PARTNER.value)
            .where(ApiKey.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


def _partner_user_ids(partner_id: str):
    return select(User.id).where(User.external_partner_id == partner_id)
