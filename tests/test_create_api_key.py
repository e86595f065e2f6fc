"""Tests for the key issuing script."""

import pytest
from sqlalchemy import func, select

from mailcheck.db.models import User
from mailcheck.keys.generator import KeyEnvironment, KeyGenerator
from mailcheck.scripts import create_api_key


class TestIssueApiKey:
    """Tests for create_api_key.issue_api_key."""

    @pytest.mark.asyncio
    async def test_creates_user_and_key(self, sessions):
        api_key = await create_api_key.issue_api_key(sessions, "Ops@Example.com")

        assert KeyGenerator.is_well_formed(api_key.token)
        assert api_key.plan_type == "free"
        assert api_key.credits_remaining == 100
        assert api_key.provenance == "direct"

        async with sessions() as session:
            user = (await session.execute(select(User))).scalar_one()
        assert user.email == "ops@example.com"
        assert user.id == api_key.user_id

    @pytest.mark.asyncio
    async def test_reuses_existing_user(self, sessions):
        first = await create_api_key.issue_api_key(sessions, "ops@example.com")
        second = await create_api_key.issue_api_key(
            sessions,
            "ops@example.com",
            plan="pro",
            credits=42,
            environment=KeyEnvironment.TEST,
        )

        assert second.user_id == first.user_id
        assert second.token.startswith("mmk_test_")
        assert second.credits_remaining == 42
        async with sessions() as session:
            assert await session.scalar(select(func.count()).select_from(User)) == 1


class TestMain:
    """Tests for the command line entry point."""

    def test_parser_defaults(self):
        args = create_api_key.build_parser().parse_args(["--email", "a@b.com"])

        assert args.plan == "free"
        assert args.credits is None
        assert args.env == "live"
        assert args.provenance == "direct"

    def test_rejects_unknown_env(self):
        with pytest.raises(SystemExit):
            create_api_key.build_parser().parse_args(["--email", "a@b.com", "--env", "prod"])

    def test_main_issues_key(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
        monkeypatch.delenv("PLAN_CREDITS", raising=False)

        exit_code = create_api_key.main(["--email", "ops@example.com", "--plan", "basic"])

        assert exit_code == 0
        output = capsys.readouterr().out
        assert "ops@example.com (basic, 1000 credits)" in output
        assert "mmk_live_" in output

    def test_main_rejects_negative_credits(self, capsys):
        exit_code = create_api_key.main(["--email", "a@b.com", "--credits", "-1"])

        assert exit_code == 2
        assert "--credits" in capsys.readouterr().err
