"""
Unit tests for the enforcer lifecycle holder.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from shared.config import BaseConfig
from shared.errors import InitializationError
from service_policy.app.enforcement.lifecycle import (
    EnforcerLifecycle, EnforcerState, build_notifier, build_store_factory
)
from service_policy.app.enforcement.models import Action, Resource, Role, PolicyRule, RoleAssignment
from service_policy.app.persistence.store import InMemoryPolicyStore


class GatedStore(InMemoryPolicyStore):
    """In-memory store whose load blocks until the gate opens."""

    def __init__(self, rows=None, fail_loads=0):
        super().__init__(rows)
        self.gate = asyncio.Event()
        self.loads = 0
        self.fail_loads = fail_loads
        self.stopped = False

    async def load_rules(self):
        self.loads += 1
        await self.gate.wait()
        if self.loads <= self.fail_loads:
            raise ConnectionError("policy store unreachable")
        return await super().load_rules()

    async def stop(self):
        self.stopped = True


def seeded_rows():
    return [
        PolicyRule.of(Role.OWNER, Resource.ALL, Action.ALL, "org-1").to_row(),
        RoleAssignment.of("user-1", Role.OWNER, "org-1").to_row(),
    ]


class TestEnforcerLifecycle:
    """Test cases for EnforcerLifecycle."""

    @pytest.fixture
    def store(self):
        return GatedStore(seeded_rows())

    @pytest.fixture
    def lifecycle(self, store):
        return EnforcerLifecycle(lambda: store)

    @pytest.mark.asyncio
    async def test_concurrent_init_loads_once(self, lifecycle, store):
        """Test that N concurrent init() calls share one load."""
        waiters = [asyncio.ensure_future(lifecycle.init()) for _ in range(10)]
        await asyncio.sleep(0)

        assert lifecycle.state is EnforcerState.INITIALIZING
        store.gate.set()
        await asyncio.gather(*waiters)

        assert store.loads == 1
        assert lifecycle.state is EnforcerState.READY
        assert lifecycle.is_initialized() is True

    @pytest.mark.asyncio
    async def test_init_when_ready_does_not_reload(self, lifecycle, store):
        """Test that init() on a ready holder returns without loading."""
        store.gate.set()
        await lifecycle.init()
        await lifecycle.init()

        assert store.loads == 1

    @pytest.mark.asyncio
    async def test_failed_init_reaches_every_waiter_then_retries(self):
        """Test that a failed load fails all waiters identically and resets state."""
        store = GatedStore(seeded_rows(), fail_loads=1)
        factory = MagicMock(return_value=store)
        lifecycle = EnforcerLifecycle(factory)

        waiters = [asyncio.ensure_future(lifecycle.init()) for _ in range(5)]
        await asyncio.sleep(0)
        store.gate.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(r, InitializationError) for r in results)
        assert len({id(r) for r in results}) == 1
        assert lifecycle.state is EnforcerState.UNINITIALIZED
        assert store.stopped is True

        await lifecycle.init()

        assert lifecycle.state is EnforcerState.READY
        assert factory.call_count == 2
        assert store.loads == 2

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_load(self, lifecycle, store):
        """Test that abandoning init() leaves the shared load running."""
        abandoned = asyncio.ensure_future(lifecycle.init())
        patient = asyncio.ensure_future(lifecycle.init())
        await asyncio.sleep(0)

        abandoned.cancel()
        await asyncio.sleep(0)
        store.gate.set()
        await patient

        assert abandoned.cancelled()
        assert lifecycle.state is EnforcerState.READY
        assert store.loads == 1

    @pytest.mark.asyncio
    async def test_wait_for_timeout_does_not_cancel_load(self, lifecycle, store):
        """Test that a timed-out caller leaves the load for the next caller."""
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(lifecycle.init(), timeout=0.01)

        assert lifecycle.state is EnforcerState.INITIALIZING
        store.gate.set()
        await lifecycle.init()

        assert store.loads == 1

    @pytest.mark.asyncio
    async def test_enforce_initializes_lazily(self, lifecycle, store):
        """Test that the first enforce() call triggers the load."""
        store.gate.set()

        assert await lifecycle.enforce("user-1", "billing", "read", "org-1") is True
        assert await lifecycle.enforce("user-1", "billing", "read", "proj-1") is False
        assert lifecycle.is_initialized() is True

    @pytest.mark.asyncio
    async def test_mutation_visible_in_same_process(self, lifecycle, store):
        """Test read-after-write through the facade."""
        store.gate.set()

        assert await lifecycle.add_role_for_user_in_domain("user-2", Role.OWNER, "org-1") is True
        assert await lifecycle.enforce("user-2", "project", "delete", "org-1") is True

        assert await lifecycle.remove_role_for_user_in_domain("user-2", Role.OWNER, "org-1") is True
        assert await lifecycle.enforce("user-2", "project", "delete", "org-1") is False

    @pytest.mark.asyncio
    async def test_reload_picks_up_external_writes(self, lifecycle, store):
        """Test that other processes' writes become visible only after reload."""
        store.gate.set()
        await lifecycle.init()
        store.rows.append(RoleAssignment.of("user-2", Role.OWNER, "org-1").to_row())

        assert await lifecycle.enforce("user-2", "billing", "read", "org-1") is False
        await lifecycle.reload_policy()
        assert await lifecycle.enforce("user-2", "billing", "read", "org-1") is True

    @pytest.mark.asyncio
    async def test_mutations_are_broadcast(self, store):
        """Test that successful mutations publish a change notification."""
        store.gate.set()
        notifier = MagicMock()
        notifier.publish = AsyncMock()
        lifecycle = EnforcerLifecycle(lambda: store, notifier=notifier)

        await lifecycle.add_policy(Role.MEMBER, Resource.PROJECT, Action.READ, "proj-1")
        await lifecycle.add_policy(Role.MEMBER, Resource.PROJECT, Action.READ, "proj-1")

        notifier.publish.assert_awaited_once_with("add_policy", "proj-1")

    @pytest.mark.asyncio
    async def test_broadcast_failure_does_not_fail_mutation(self, store):
        """Test that a committed write survives a failed broadcast."""
        store.gate.set()
        notifier = MagicMock()
        notifier.publish = AsyncMock(side_effect=ConnectionError("redis down"))
        lifecycle = EnforcerLifecycle(lambda: store, notifier=notifier)

        added = await lifecycle.add_policy(Role.MEMBER, Resource.PROJECT, Action.READ, "proj-1")

        assert added is True
        assert await lifecycle.get_filtered_policy("proj-1")

    @pytest.mark.asyncio
    async def test_periodic_refresh_reloads(self, lifecycle, store):
        """Test that the refresh task reloads on its interval."""
        store.gate.set()
        await lifecycle.init()

        lifecycle.start_periodic_refresh(0.01)
        await asyncio.sleep(0.05)
        await lifecycle.close()

        assert store.loads >= 2
        assert lifecycle.state is EnforcerState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_count_stored_rules(self, lifecycle, store):
        store.gate.set()

        assert await lifecycle.count_stored_rules() == 2

    @pytest.mark.asyncio
    async def test_close_during_init_releases_store(self, lifecycle, store):
        """Test that shutdown mid-load leaves nothing loaded and the store released."""
        waiter = asyncio.ensure_future(lifecycle.init())
        while store.loads == 0:
            await asyncio.sleep(0)

        await lifecycle.close()
        store.gate.set()

        with pytest.raises(InitializationError):
            await waiter
        await asyncio.sleep(0)
        assert lifecycle.state is EnforcerState.UNINITIALIZED
        assert store.stopped is True

        await lifecycle.init()
        assert lifecycle.state is EnforcerState.READY
        assert store.loads == 2

    def test_change_listener_disabled_without_notifier(self, lifecycle):
        assert lifecycle.start_change_listener() is None

    def test_memory_backend_factory_reuses_store(self):
        """Test that the memory backend keeps rules across reinitialization."""
        factory = build_store_factory(BaseConfig(store_backend="memory"))

        assert factory() is factory()

    def test_notifier_disabled_by_default(self):
        assert build_notifier(BaseConfig()) is None
        assert build_notifier(BaseConfig(reload_channel="policy-changes")).channel == "policy-changes"
