"""Tests for table definitions."""

import pytest
from sqlalchemy import UniqueConstraint, text

from mailcheck.db.models import ApiKey, User


def unique_constraints(table, column):
    return [
        constraint.name
        for constraint in table.constraints
        if isinstance(constraint, UniqueConstraint)
        and constraint.columns.keys() == [column]
    ]


class TestSchema:
    """Unique columns are indexed exactly once, by their named constraint."""

    def test_partner_id_has_no_extra_index(self):
        assert [
            index.name
            for index in User.__table__.indexes
            if "external_partner_id" in index.columns.keys()
        ] == []
        assert unique_constraints(User.__table__, "external_partner_id") == [
            "uq_users_external_partner_id"
        ]

    def test_named_unique_constraints(self):
        assert unique_constraints(User.__table__, "email") == ["uq_users_email"]
        assert unique_constraints(ApiKey.__table__, "token") == ["uq_api_keys_token"]

    @pytest.mark.asyncio
    async def test_created_database_has_one_partner_index(self, db_engine):
        async with db_engine.connect() as conn:
            indexes = (await conn.execute(text("PRAGMA index_list(users)"))).all()
            partner_indexes = []
            for index in indexes:
                columns = await conn.execute(text(f"PRAGMA index_info('{index[1]}')"))
                if [row[2] for row in columns] == ["external_partner_id"]:
                    partner_indexes.append(index[1])

        assert len(partner_indexes) == 1
