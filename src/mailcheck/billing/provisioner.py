"""Partner marketplace account lifecycle.

Turns subscription webhooks (created / cancelled / updated) into users and
API keys. Replayed events are safe: a second "created" for the same partner
user returns the key that already exists.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailcheck.billing.ledger import CreditLedger
from mailcheck.db.models import DEFAULT_PLAN, PLAN_CREDITS, ApiKey, KeyProvenance, User
from mailcheck.keys.generator import KeyEnvironment
from mailcheck.retry import retry_on_conflict

logger = logging.getLogger("mailcheck-provisioning")

# Driver spellings of a duplicate user row (SQLite, PostgreSQL)
USER_CONFLICT_TARGETS = (
    "users.email",
    "users.external_partner_id",
    "uq_users_email",
    "uq_users_external_partner_id",
)
USER_CONFLICT_ATTEMPTS = 2


class ProvisioningError(Exception):
    """Raised when a lifecycle event could not be applied. Nothing was written."""

    pass


class LifecycleEvent(str, Enum):
    """Subscription events we act on."""

    CREATED = "created"
    CANCELLED = "cancelled"
    UPDATED = "updated"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, name: object) -> "LifecycleEvent":
        """Map a webhook event name to an event kind."""
        if not isinstance(name, str):
            return cls.UNRECOGNIZED
        return EVENT_ALIASES.get(name.strip().lower(), cls.UNRECOGNIZED)


EVENT_ALIASES = {
    "created": LifecycleEvent.CREATED,
    "subscription.created": LifecycleEvent.CREATED,
    "subscription.activated": LifecycleEvent.CREATED,
    "cancelled": LifecycleEvent.CANCELLED,
    "subscription.cancelled": LifecycleEvent.CANCELLED,
    "subscription.deactivated": LifecycleEvent.CANCELLED,
    "updated": LifecycleEvent.UPDATED,
    "subscription.updated": LifecycleEvent.UPDATED,
}


@dataclass
class ProvisionResult:
    """Outcome of a subscription-created event."""

    user_id: UUID
    api_key: str
    plan: str
    credits: int
    is_new_user: bool = False
    existing: bool = False


@dataclass
class WebhookOutcome:
    """What happened to a webhook payload, ready to serialize."""

    success: bool
    event: LifecycleEvent
    message: str | None = None
    error: str | None = None
    data: dict[str, Any] | None = None


def credits_for_plan(plan: str | None, table: dict[str, int] | None = None) -> int:
    """Credit allotment for a plan name. Unknown plans get the default."""
    table = table or PLAN_CREDITS
    normalized = (plan or DEFAULT_PLAN).strip().lower()
    return table.get(normalized, table.get(DEFAULT_PLAN, PLAN_CREDITS[DEFAULT_PLAN]))


def _normalize_plan(plan: str | None) -> str:
    return (plan or DEFAULT_PLAN).strip().lower() or DEFAULT_PLAN


class AccountProvisioner:
    """Creates, tops up, and deactivates partner accounts and keys."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        ledger: CreditLedger,
        plan_credits: dict[str, int] | None = None,
    ):
        """Initialize the provisioner.

        Args:
            sessions: Session factory; each event runs in its own transaction.
            ledger: Ledger used to mint and update keys.
            plan_credits: Plan name to credit allotment table.
        """
        self.sessions = sessions
        self.ledger = ledger
        self.plan_credits = plan_credits or dict(PLAN_CREDITS)

    # -------------------------------------------------------------------------
    # Lifecycle operations
    # -------------------------------------------------------------------------

    async def on_created(
        self, partner_id: str, email: str, plan: str | None = None
    ) -> ProvisionResult:
        """Provision a user and key for a new subscription.

        The partner's user row is locked for the whole transaction, so
        concurrent deliveries of the same event are applied one after the
        other. If a concurrent delivery inserts the user first, the unique
        conflict is retried once and the lookup then finds its key.

        Raises:
            ProvisioningError: If any step fails. The transaction is rolled
                back so no partial user or key is left behind.
        """
        plan_name = _normalize_plan(plan)
        credits = credits_for_plan(plan_name, self.plan_credits)
        email = email.strip().lower()

        @retry_on_conflict(*USER_CONFLICT_TARGETS, attempts=USER_CONFLICT_ATTEMPTS)
        async def _provision() -> ProvisionResult:
            async with self.sessions.begin() as session:
                return await self._provision_in(
                    session, partner_id, email, plan_name, credits
                )

        try:
            result = await _provision()
        except Exception as e:
            logger.error(f"Provisioning failed for partner user {partner_id}: {e}")
            raise ProvisioningError(
                f"Could not provision partner user {partner_id}"
            ) from e

        if result.existing:
            logger.info(
                f"Partner user {partner_id} already has an active key; "
                "ignoring duplicate created event"
            )
        else:
            logger.info(
                f"Subscription created for partner user {partner_id}: "
                f"plan={plan_name} credits={credits} new_user={result.is_new_user}"
            )
        return result

    async def on_cancelled(self, partner_id: str) -> int:
        """Deactivate the partner's keys.

        Returns:
            Number of keys deactivated (0 when the partner user is unknown).
        """
        try:
            async with self.sessions.begin() as session:
                count = await self.ledger.deactivate_partner_keys(session, partner_id)
        except SQLAlchemyError as e:
            raise ProvisioningError(
                f"Could not deactivate keys for partner user {partner_id}"
            ) from e

        logger.info(
            f"Subscription cancelled for partner user {partner_id}: "
            f"keys_deactivated={count}"
        )
        return count

    async def on_updated(self, partner_id: str, plan: str | None = None) -> int:
        """Top up the partner's active key with the plan's allotment.

        Returns:
            Credits added, or 0 when there was no active partner key.
        """
        plan_name = _normalize_plan(plan)
        credits = credits_for_plan(plan_name, self.plan_credits)

        try:
            async with self.sessions.begin() as session:
                updated = await self.ledger.top_up_partner_keys(
                    session, partner_id, plan_name, credits
                )
        except SQLAlchemyError as e:
            raise ProvisioningError(
                f"Could not update plan for partner user {partner_id}"
            ) from e

        credits_added = credits if updated else 0
        logger.info(
            f"Subscription updated for partner user {partner_id}: "
            f"plan={plan_name} credits_added={credits_added}"
        )
        return credits_added

    # -------------------------------------------------------------------------
    # Webhook dispatch
    # -------------------------------------------------------------------------

    async def handle_event(self, payload: dict[str, Any]) -> WebhookOutcome:
        """Apply a partner webhook payload.

        Expected shape::

            {"event": "subscription.created",
             "user": {"id": "...", "email": "..."},
             "subscription": {"plan": "pro", "status": "active"}}

        Input problems and unrecognized events come back as failed outcomes.
        Storage failures propagate as ProvisioningError.
        """
        user = payload.get("user") if isinstance(payload.get("user"), dict) else {}
        subscription = (
            payload.get("subscription")
            if isinstance(payload.get("subscription"), dict)
            else {}
        )

        event_name = payload.get("event") or payload.get("type")
        event = LifecycleEvent.parse(event_name)
        partner_id = (
            user.get("id") or payload.get("userId") or payload.get("partner_user_id")
        )
        email = user.get("email") or payload.get("email")
        plan = subscription.get("plan") or payload.get("plan")
        if not isinstance(plan, str):
            plan = None

        if event is LifecycleEvent.UNRECOGNIZED:
            return WebhookOutcome(
                success=False, event=event, error=f"Unhandled event type: {event_name}"
            )
        if not partner_id:
            return WebhookOutcome(
                success=False,
                event=event,
                error="Missing partner user ID in webhook payload",
            )
        partner_id = str(partner_id)

        if event is LifecycleEvent.CREATED:
            if not email or not isinstance(email, str):
                return WebhookOutcome(
                    success=False,
                    event=event,
                    error="Missing user email in webhook payload",
                )
            result = await self.on_created(partner_id, email, plan)
            return WebhookOutcome(
                success=True,
                event=event,
                message=(
                    "User already has an active API key"
                    if result.existing
                    else "API key provisioned"
                ),
                data={
                    "userId": str(result.user_id),
                    "apiKey": result.api_key,
                    "plan": result.plan,
                    "credits": result.credits,
                    "isNewUser": result.is_new_user,
                },
            )

        if event is LifecycleEvent.CANCELLED:
            count = await self.on_cancelled(partner_id)
            return WebhookOutcome(
                success=True,
                event=event,
                message="User API keys deactivated",
                data={"keysDeactivated": count},
            )

        credits_added = await self.on_updated(partner_id, plan)
        return WebhookOutcome(
            success=True,
            event=event,
            message=(
                "User plan updated" if credits_added else "No active API key to update"
            ),
            data={"plan": _normalize_plan(plan), "creditsAdded": credits_added},
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _provision_in(
        self,
        session: AsyncSession,
        partner_id: str,
        email: str,
        plan_name: str,
        credits: int,
    ) -> ProvisionResult:
        user = await self._find_user_by_partner(session, partner_id)
        is_new_user = False

        if user is not None:
            existing_key = await self._active_partner_key(session, user.id)
            if existing_key is not None:
                return ProvisionResult(
                    user_id=user.id,
                    api_key=existing_key.token,
                    plan=existing_key.plan_type,
                    credits=existing_key.credits_remaining,
                    existing=True,
                )
        else:
            user, is_new_user = await self._attach_or_create_user(
                session, partner_id, email
            )

        api_key = await self.ledger.issue_key(
            session,
            user_id=user.id,
            plan=plan_name,
            credits=credits,
            provenance=KeyProvenance.PARTNER,
            environment=KeyEnvironment.LIVE,
        )
        return ProvisionResult(
            user_id=user.id,
            api_key=api_key.token,
            plan=plan_name,
            credits=credits,
            is_new_user=is_new_user,
        )

    async def _find_user_by_partner(
        self, session: AsyncSession, partner_id: str
    ) -> User | None:
        result = await session.execute(
            select(User)
            .where(User.external_partner_id == partner_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _active_partner_key(
        self, session: AsyncSession, user_id: UUID
    ) -> ApiKey | None:
        result = await session.execute(
            select(ApiKey)
            .where(ApiKey.user_id == user_id)
            .where(ApiKey.provenance == KeyProvenance.PARTNER.value)
            .where(ApiKey.is_active.is_(True))
            .order_by(ApiKey.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _attach_or_create_user(
        self, session: AsyncSession, partner_id: str, email: str
    ) -> tuple[User, bool]:
        """Reuse the account holding this email, or create one."""
        result = await session.execute(
            select(User).where(User.email == email).with_for_update()
        )
        user = result.scalar_one_or_none()
        if user is not None:
            user.external_partner_id = partner_id
            await session.flush()
            return user, False

        user = User(email=email, external_partner_id=partner_id)
        session.add(user)
        await session.flush()
        return user, True
