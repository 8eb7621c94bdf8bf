"""
Unit tests for the asyncpg-backed stores, against mocked pools.
"""

from datetime import datetime, timezone

import asyncpg
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from shared.errors import ExternalServiceError
from service_policy.app.enforcement.models import CasbinRuleRow, Role
from service_policy.app.persistence.directory import PostgreSQLDirectory
from service_policy.app.persistence.postgres import PostgreSQLPolicyStore
from service_policy.app.tokens.models import AuthToken
from service_policy.app.tokens.store import PostgreSQLTokenStore


def make_pool(conn):
    """Pool mock whose acquire() yields conn."""
    acquire = MagicMock()
    acquire.__aenter__ = AsyncMock(return_value=conn)
    acquire.__aexit__ = AsyncMock(return_value=False)
    pool = MagicMock()
    pool.acquire.return_value = acquire
    pool.close = AsyncMock()
    return pool


@pytest.fixture
def conn():
    conn = MagicMock()
    conn.execute = AsyncMock(return_value="INSERT 0 1")
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchval = AsyncMock(return_value=0)
    return conn


class TestPostgreSQLPolicyStore:
    """Test cases for PostgreSQLPolicyStore."""

    @pytest.fixture
    def store(self, conn):
        return PostgreSQLPolicyStore("postgres://test", pool=make_pool(conn))

    def test_rejects_unsafe_table_name(self):
        with pytest.raises(ValueError):
            PostgreSQLPolicyStore("postgres://test", table="rules; DROP TABLE users")

    @pytest.mark.asyncio
    async def test_load_rules(self, store, conn):
        conn.fetch.return_value = [
            {"ptype": "p", "v0": "OWNER", "v1": "*", "v2": "*", "v3": "org-1", "v4": None, "v5": None},
            {"ptype": "g", "v0": "user-1", "v1": "OWNER", "v2": "org-1", "v3": None, "v4": None, "v5": None},
        ]

        rows = await store.load_rules()

        assert rows == [
            CasbinRuleRow("p", "OWNER", "*", "*", "org-1"),
            CasbinRuleRow("g", "user-1", "OWNER", "org-1"),
        ]

    @pytest.mark.asyncio
    async def test_load_failure_propagates(self, store, conn):
        conn.fetch.side_effect = ConnectionError("connection refused")

        with pytest.raises(ConnectionError):
            await store.load_rules()

    @pytest.mark.asyncio
    async def test_add_rule_ignores_duplicates(self, store, conn):
        await store.add_rule(CasbinRuleRow("p", "OWNER", "*", "*", "org-1"))

        query, *params = conn.execute.call_args.args
        assert "ON CONFLICT DO NOTHING" in query
        assert params == ["p", "OWNER", "*", "*", "org-1", None, None]

    @pytest.mark.asyncio
    async def test_remove_rule_matches_nulls(self, store, conn):
        conn.execute.return_value = "DELETE 1"

        removed = await store.remove_rule(CasbinRuleRow("g", "user-1", "OWNER", "org-1"))

        query, *params = conn.execute.call_args.args
        assert removed is True
        assert "v3 IS NULL" in query
        assert params == ["g", "user-1", "OWNER", "org-1"]

    @pytest.mark.asyncio
    async def test_remove_missing_rule(self, store, conn):
        conn.execute.return_value = "DELETE 0"

        assert await store.remove_rule(CasbinRuleRow("g", "user-1", "OWNER", "org-1")) is False

    @pytest.mark.asyncio
    async def test_start_failure_is_external_error(self):
        store = PostgreSQLPolicyStore("postgres://test")

        with patch("asyncpg.create_pool", AsyncMock(side_effect=OSError("no route to host"))):
            with pytest.raises(ExternalServiceError):
                await store.start()


class TestPostgreSQLDirectory:
    """Test cases for PostgreSQLDirectory."""

    @pytest.fixture
    def directory(self, conn):
        return PostgreSQLDirectory("postgres://test", pool=make_pool(conn))

    @pytest.mark.asyncio
    async def test_user_organizations(self, directory, conn):
        conn.fetch.return_value = [{"id": "org-1", "name": "Acme", "slug": "acme", "role": "OWNER"}]

        organizations = await directory.get_user_organizations("user-1")

        assert organizations[0].id == "org-1"
        assert organizations[0].user_role is Role.OWNER

    @pytest.mark.asyncio
    async def test_memberships_skip_unknown_roles(self, directory, conn):
        conn.fetch.return_value = [
            {"user_id": "user-1", "organization_id": "org-1", "role": "MEMBER"},
            {"user_id": "user-2", "organization_id": "org-1", "role": "GUEST"},
        ]

        memberships = await directory.get_organization_memberships("org-1")

        assert [(m.user_id, m.role) for m in memberships] == [("user-1", Role.MEMBER)]

    @pytest.mark.asyncio
    async def test_missing_project(self, directory):
        assert await directory.get_project("proj-missing") is None

    @pytest.mark.asyncio
    async def test_query_error_is_external_error(self, directory, conn):
        conn.fetch.side_effect = asyncpg.PostgresError("relation does not exist")

        with pytest.raises(ExternalServiceError):
            await directory.get_user_by_principal("principal-1")


class TestPostgreSQLTokenStore:
    """Test cases for PostgreSQLTokenStore."""

    @pytest.fixture
    def token_store(self, conn):
        return PostgreSQLTokenStore("postgres://test", pool=make_pool(conn))

    @pytest.mark.asyncio
    async def test_find_valid_filters_expiry_in_sql(self, token_store, conn):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        conn.fetch.return_value = [{
            "id": "tok-1",
            "token": "datk_secret",
            "policy_ptype": "api_readonly",
            "project_id": "proj-1",
            "user_id": None,
            "expires_at": None,
            "created_at": now,
            "last_used_at": None,
        }]

        token = await token_store.find_valid("datk_secret", "proj-1", now)

        query, *params = conn.fetch.call_args.args
        assert "expires_at IS NULL OR expires_at > $3" in query
        assert params == ["datk_secret", "proj-1", now]
        assert token.policy_type == "api_readonly"

    @pytest.mark.asyncio
    async def test_create(self, token_store, conn):
        token = AuthToken(id="tok-1", token="datk_secret", policy_type="api_admin", project_id="proj-1")

        await token_store.create(token)

        params = conn.execute.call_args.args[1:]
        assert params[:4] == ("tok-1", "datk_secret", "api_admin", "proj-1")

    @pytest.mark.asyncio
    async def test_delete(self, token_store, conn):
        conn.execute.return_value = "DELETE 0"

        assert await token_store.delete("tok-missing") is False
