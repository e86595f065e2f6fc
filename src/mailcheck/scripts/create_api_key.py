"""Issue an API key from the command line.

Creates the user if the email is new, then mints a key on the given plan.

Usage:
    python -m mailcheck.scripts.create_api_key --email test@example.com
    python -m mailcheck.scripts.create_api_key --email ops@example.com \\
        --plan pro --env test
"""

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailcheck.billing.ledger import CreditLedger, KeyGenerationError
from mailcheck.billing.provisioner import credits_for_plan
from mailcheck.config import ConfigurationError, Settings
from mailcheck.db.database import create_engine, create_session_factory, init_db
from mailcheck.db.models import ApiKey, KeyProvenance, PlanType, User
from mailcheck.keys.generator import KeyEnvironment

logger = logging.getLogger("mailcheck-scripts")


async def issue_api_key(
    sessions: async_sessionmaker[AsyncSession],
    email: str,
    plan: str = PlanType.FREE.value,
    credits: int | None = None,
    environment: KeyEnvironment = KeyEnvironment.LIVE,
    provenance: KeyProvenance = KeyProvenance.DIRECT,
    plan_credits: dict[str, int] | None = None,
) -> ApiKey:
    """Find or create the user and mint one key for them.

    Args:
        sessions: Session factory for the target database.
        email: Account email (case-insensitive).
        plan: Plan name stored on the key.
        credits: Starting credits. Defaults to the plan's allotment.
        environment: Key environment (live or test).
        provenance: Recorded issue channel.
        plan_credits: Plan allotment table used when credits is None.
    """
    email = email.strip().lower()
    plan = plan.strip().lower()
    if credits is None:
        credits = credits_for_plan(plan, plan_credits)

    ledger = CreditLedger(sessions)
    async with sessions.begin() as session:
        result = await session.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()
        if user is None:
            user = User(email=email)
            session.add(user)
            await session.flush()
            logger.info(f"Created user {email}")

        return await ledger.issue_key(
            session,
            user_id=user.id,
            plan=plan,
            credits=credits,
            provenance=provenance,
            environment=environment,
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create a user (if needed) and issue an API key",
    )
    parser.add_argument("--email", required=True, help="Account email")
    parser.add_argument(
        "--plan",
        default=PlanType.FREE.value,
        help="Plan name stored on the key (default: free)",
    )
    parser.add_argument(
        "--credits",
        type=int,
        default=None,
        help="Starting credits (default: the plan's allotment)",
    )
    parser.add_argument(
        "--env",
        choices=[e.value for e in KeyEnvironment],
        default=KeyEnvironment.LIVE.value,
        help="Key environment",
    )
    parser.add_argument(
        "--provenance",
        choices=[p.value for p in KeyProvenance],
        default=KeyProvenance.DIRECT.value,
        help="How the key was issued",
    )
    return parser


async def run(args: argparse.Namespace, settings: Settings) -> ApiKey:
    db_engine = create_engine(settings.database_url)
    try:
        await init_db(db_engine)
        return await issue_api_key(
            create_session_factory(db_engine),
            email=args.email,
            plan=args.plan,
            credits=args.credits,
            environment=KeyEnvironment(args.env),
            provenance=KeyProvenance(args.provenance),
            plan_credits=settings.plan_credits,
        )
    finally:
        await db_engine.dispose()


def main(argv: list[str] | None = None) -> int:
    """CLI entry point. Returns the process exit code."""
    load_dotenv(".env.local")
    load_dotenv()

    args = build_parser().parse_args(argv)
    if args.credits is not None and args.credits < 0:
        print("--credits must not be negative", file=sys.stderr)
        return 2

    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(level=settings.log_level)

    try:
        api_key = asyncio.run(run(args, settings))
    except KeyGenerationError as e:
        logger.error(f"Could not issue API key: {e}")
        return 1

    print(
        f"API key for {args.email.strip().lower()} "
        f"({api_key.plan_type}, {api_key.credits_remaining} credits):"
    )
    print(api_key.token)
    print("\nExample:")
    print("  curl -X POST http://localhost:8000/api/v1/validate \\")
    print(f'    -H "x-api-key: {api_key.token}" \\')
    print('    -H "Content-Type: application/json" \\')
    print("    -d '{\"email\": \"test@gmail.com\"}'")
    return 0


if __name__ == "__main__":
    sys.exit(main())
