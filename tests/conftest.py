"""Shared fixtures: a throwaway SQLite database per test."""

from types import SimpleNamespace

import dns.resolver
import pytest
from sqlalchemy import select

from mailcheck.billing.ledger import CreditLedger
from mailcheck.billing.provisioner import AccountProvisioner
from mailcheck.db.database import create_engine, create_session_factory, init_db
from mailcheck.db.models import ApiKey, KeyProvenance, User
from mailcheck.keys.generator import KeyEnvironment
from mailcheck.validation.schemas import DnsResult


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite engine with all tables created."""
    engine = create_engine(f"sqlite:///{tmp_path / 'mailcheck.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(db_engine):
    """Session factory bound to the test database."""
    return create_session_factory(db_engine)


@pytest.fixture
def ledger(sessions):
    return CreditLedger(sessions)


@pytest.fixture
def provisioner(sessions, ledger):
    return AccountProvisioner(sessions, ledger)


@pytest.fixture
def make_key(sessions, ledger):
    """Factory that creates a user and issues one key for them."""

    async def _make_key(
        email: str = "owner@example.com",
        plan: str = "free",
        credits: int = 10,
        provenance: KeyProvenance = KeyProvenance.DIRECT,
        environment: KeyEnvironment = KeyEnvironment.LIVE,
        is_active: bool = True,
        partner_id: str | None = None,
    ) -> ApiKey:
        async with sessions.begin() as session:
            result = await session.execute(select(User).where(User.email == email))
            user = result.scalar_one_or_none()
            if user is None:
                user = User(email=email, external_partner_id=partner_id)
                session.add(user)
                await session.flush()
            api_key = await ledger.issue_key(
                session,
                user_id=user.id,
                plan=plan,
                credits=credits,
                provenance=provenance,
                environment=environment,
            )
            api_key.is_active = is_active
        return api_key

    return _make_key


# =============================================================================
# DNS / network fakes
# =============================================================================


def mx_record(preference: int, exchange: str) -> SimpleNamespace:
    """Stand-in for a dnspython MX rdata."""
    return SimpleNamespace(preference=preference, exchange=exchange)


class StubResolver:
    """Resolver returning canned answers (or raising) per domain."""

    def __init__(self, answers: dict | None = None, error: Exception | None = None):
        self.answers = answers or {}
        self.error = error
        self.queries: list[str] = []

    async def resolve(self, domain, rdtype, lifetime=None):
        self.queries.append(domain)
        if self.error is not None:
            raise self.error
        answer = self.answers.get(domain)
        if isinstance(answer, Exception):
            raise answer
        if answer is None:
            raise dns.resolver.NXDOMAIN()
        return answer


class StubDnsChecker:
    """DnsChecker replacement returning a fixed result."""

    def __init__(self, result: DnsResult):
        self.result = result
        self.domains: list[str] = []

    async def check(self, domain: str) -> DnsResult:
        self.domains.append(domain)
        return self.result
