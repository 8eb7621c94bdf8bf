"""
Integration tests for the setup_policies operator CLI.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from scripts import setup_policies
from service_policy.app.enforcement.models import Role
from service_policy.app.persistence.directory import InMemoryDirectory
from service_policy.app.persistence.store import InMemoryPolicyStore
from shared.errors import NotFoundError


class TestSetupPoliciesCli:
    """Integration tests for scripts/setup_policies.py against in-memory backends."""

    @pytest.fixture
    def directory(self):
        directory = InMemoryDirectory()
        directory.add_user("user-1", "principal-1")
        directory.add_organization("org-1", "Acme")
        directory.add_membership("user-1", "org-1", Role.OWNER)
        directory.add_project("proj-1", "org-1", "Loyalty")
        return directory

    @pytest.fixture
    def store(self):
        return InMemoryPolicyStore()

    @pytest.fixture
    def backends(self, directory, store):
        with patch.object(setup_policies, "PostgreSQLDirectory", return_value=directory), \
                patch.object(setup_policies, "build_store_factory", return_value=lambda: store):
            yield

    @pytest.mark.asyncio
    async def test_seed_then_setup_all(self, backends, store):
        seeded = await setup_policies.run("seed")
        summary = await setup_policies.run("setup-all")

        assert seeded == {"rules_added": 5}
        assert summary == {"organizations": 1, "token_policies_added": 13}
        assert len(store.rows) > 5

    @pytest.mark.asyncio
    async def test_seed_skips_populated_store(self, backends):
        await setup_policies.run("project", "proj-1")

        assert await setup_policies.run("seed") == {"rules_added": 0}

    @pytest.mark.asyncio
    async def test_unknown_project(self, backends):
        with pytest.raises(NotFoundError):
            await setup_policies.run("project", "proj-missing")

    @pytest.mark.asyncio
    async def test_unknown_command(self, backends):
        with pytest.raises(ValueError):
            await setup_policies.run("rebuild")

    @pytest.mark.asyncio
    async def test_writes_are_broadcast(self, backends):
        """Test that CLI writes reach running instances through the reload channel."""
        notifier = MagicMock()
        notifier.publish = AsyncMock()
        notifier.stop = AsyncMock()

        with patch.object(setup_policies, "build_notifier", return_value=notifier):
            await setup_policies.run("seed")

        notifier.publish.assert_any_await("add_policy", "global")
        notifier.stop.assert_awaited_once()
