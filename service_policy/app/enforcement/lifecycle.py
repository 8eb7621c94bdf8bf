"""
Process-wide lifecycle holder for the enforcement engine.

The holder moves through three states:

- uninitialized: nothing loaded; the next ``init()`` starts a load.
- initializing: one load task is in flight; every ``init()`` caller awaits
  that same task instead of starting another.
- ready: the engine is loaded; ``init()`` returns immediately.

State transitions happen synchronously between suspension points, so on a
single event loop no lock is needed around them. A failed load puts the holder
back to uninitialized and every waiter of that attempt receives the same
``InitializationError``. The load task is shielded: a caller that gives up
(cancellation, request timeout) does not cancel the load for the others.

Mutations are visible to ``enforce`` in this process as soon as they return.
Other processes only see them after ``reload_policy()``, unless the optional
periodic refresh or Redis change notifications are enabled.
"""

import asyncio
from enum import Enum
from typing import Callable, List, Optional, Union

from shared.config import BaseConfig
from shared.logging import get_logger
from shared.errors import InitializationError
from shared.metrics import MetricsCollector
from ..persistence.store import PolicyStore, InMemoryPolicyStore
from ..persistence.postgres import PostgreSQLPolicyStore
from .engine import EnforcementEngine
from .models import (
    Action, Resource, Role, PolicyType, PolicyRule, RoleAssignment, subject_key
)
from .notifier import PolicyChangeNotifier

StoreFactory = Callable[[], PolicyStore]
SubjectLike = Union[Role, PolicyType, str]


class EnforcerState(str, Enum):
    """Lifecycle states of the enforcement engine holder."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class EnforcerLifecycle:
    """Owns the one enforcement engine of a process."""

    def __init__(
        self,
        store_factory: StoreFactory,
        metrics: Optional[MetricsCollector] = None,
        notifier: Optional[PolicyChangeNotifier] = None
    ):
        self.logger = get_logger("policy.lifecycle")
        self.metrics = metrics
        self.notifier = notifier
        self._store_factory = store_factory
        self._state = EnforcerState.UNINITIALIZED
        self._engine: Optional[EnforcementEngine] = None
        self._init_task: Optional[asyncio.Task] = None
        self._background_tasks: List[asyncio.Task] = []

    @property
    def state(self) -> EnforcerState:
        return self._state

    def is_initialized(self) -> bool:
        return self._state is EnforcerState.READY

    async def init(self) -> None:
        """Load the rule set exactly once, however many callers race here."""
        if self._state is EnforcerState.READY:
            return

        if self._state is EnforcerState.UNINITIALIZED:
            self._state = EnforcerState.INITIALIZING
            self._init_task = asyncio.ensure_future(self._initialize())
            self._init_task.add_done_callback(_consume_task_exception)
            self.logger.info("Initializing policy enforcer")

        await asyncio.shield(self._init_task)

    async def _initialize(self) -> None:
        store = None
        try:
            store = self._store_factory()
            await store.start()
            engine = EnforcementEngine(store, self.metrics)
            await engine.load()
        except asyncio.CancelledError:
            # close() ran while the load was in flight
            self._state = EnforcerState.UNINITIALIZED
            self._init_task = None
            self.logger.info("Policy enforcer closed during initialization")
            if store is not None:
                await self._stop_store(store)
            raise InitializationError("Policy enforcer closed during initialization")
        except Exception as e:
            self._state = EnforcerState.UNINITIALIZED
            self._init_task = None
            self.logger.error("Policy enforcer initialization failed", error=str(e))
            if self.metrics:
                self.metrics.increment_counter("policy_loads_total", status="error")
            if store is not None:
                await self._stop_store(store)
            raise InitializationError(str(e), details={"error_type": type(e).__name__}) from e

        self._engine = engine
        self._state = EnforcerState.READY
        self._init_task = None
        if self.metrics:
            self.metrics.increment_counter("policy_loads_total", status="ok")
        self.logger.info("Policy enforcer initialized", **engine.get_engine_stats())

    async def _stop_store(self, store: PolicyStore):
        try:
            await store.stop()
        except Exception as e:
            self.logger.warning("Failed to release policy store after aborted load", error=str(e))

    async def get_engine(self) -> EnforcementEngine:
        if self._state is not EnforcerState.READY:
            await self.init()
        return self._engine

    async def enforce(
        self,
        subject: SubjectLike,
        resource: Union[Resource, str],
        action: Union[Action, str],
        domain: str
    ) -> bool:
        """Check whether subject may perform action on resource in domain."""
        engine = await self.get_engine()
        return engine.enforce(subject_key(subject), resource, action, domain)

    async def add_policy(
        self,
        subject: SubjectLike,
        resource: Union[Resource, str],
        action: Union[Action, str],
        domain: str
    ) -> bool:
        """Allow subject to perform action on resource in domain."""
        engine = await self.get_engine()
        added = await engine.add_policy(PolicyRule.of(subject, resource, action, domain))
        if added:
            await self._notify("add_policy", domain)
        return added

    async def remove_policy(
        self,
        subject: SubjectLike,
        resource: Union[Resource, str],
        action: Union[Action, str],
        domain: str
    ) -> bool:
        engine = await self.get_engine()
        removed = await engine.remove_policy(PolicyRule.of(subject, resource, action, domain))
        if removed:
            await self._notify("remove_policy", domain)
        return removed

    async def add_role_for_user_in_domain(self, user: str, role: SubjectLike, domain: str) -> bool:
        engine = await self.get_engine()
        added = await engine.add_role_for_user_in_domain(RoleAssignment.of(user, role, domain))
        if added:
            await self._notify("add_role_for_user_in_domain", domain)
        return added

    async def remove_role_for_user_in_domain(self, user: str, role: SubjectLike, domain: str) -> bool:
        engine = await self.get_engine()
        removed = await engine.remove_role_for_user_in_domain(RoleAssignment.of(user, role, domain))
        if removed:
            await self._notify("remove_role_for_user_in_domain", domain)
        return removed

    async def get_roles_for_user_in_domain(self, user: str, domain: str) -> List[str]:
        engine = await self.get_engine()
        return engine.get_roles_for_user_in_domain(user, domain)

    async def get_direct_roles_for_user_in_domain(self, user: str, domain: str) -> List[str]:
        engine = await self.get_engine()
        return engine.get_direct_roles_for_user_in_domain(user, domain)

    async def get_filtered_policy(self, domain: str) -> List[PolicyRule]:
        engine = await self.get_engine()
        return engine.get_filtered_policy(domain)

    async def get_filtered_grouping_policy(self, domain: str) -> List[RoleAssignment]:
        engine = await self.get_engine()
        return engine.get_filtered_grouping_policy(domain)

    async def count_stored_rules(self) -> int:
        engine = await self.get_engine()
        return await engine.store.count_rules()

    async def reload_policy(self) -> None:
        """Reload every rule from the store, picking up other processes' writes."""
        engine = await self.get_engine()
        await engine.load()
        if self.metrics:
            self.metrics.increment_counter("policy_loads_total", status="reload")

    async def _notify(self, operation: str, domain: str):
        if self.notifier is None:
            return
        try:
            await self.notifier.publish(operation, domain)
        except Exception as e:
            # The local write is committed; peers stay stale until their next reload.
            self.logger.warning("Policy change broadcast failed", operation=operation, domain=domain, error=str(e))

    def start_periodic_refresh(self, interval_seconds: float) -> asyncio.Task:
        """Reload the rule set every interval_seconds."""
        task = asyncio.ensure_future(self._refresh_loop(interval_seconds))
        self._background_tasks.append(task)
        return task

    async def _refresh_loop(self, interval_seconds: float):
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.reload_policy()
            except Exception as e:
                self.logger.error("Periodic policy refresh failed", error=str(e))

    def start_change_listener(self) -> Optional[asyncio.Task]:
        """Reload whenever another instance broadcasts a policy change."""
        if self.notifier is None:
            return None
        task = asyncio.ensure_future(self.notifier.listen(self.reload_policy))
        self._background_tasks.append(task)
        return task

    async def close(self) -> None:
        """Stop background work, abandon an in-flight load and release the store."""
        init_task = self._init_task
        if init_task is not None:
            init_task.cancel()
            await asyncio.gather(init_task, return_exceptions=True)

        for task in self._background_tasks:
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks = []

        if self.notifier is not None:
            await self.notifier.stop()

        if self._engine is not None:
            await self._engine.store.stop()
        self._engine = None
        self._state = EnforcerState.UNINITIALIZED


def _consume_task_exception(task: asyncio.Task):
    # Marks the failure as retrieved when every waiter has already gone away.
    if not task.cancelled():
        task.exception()


def build_store_factory(config: BaseConfig) -> StoreFactory:
    """Policy store factory for the configured backend."""
    if config.store_backend == "memory":
        store = InMemoryPolicyStore()
        return lambda: store
    return lambda: PostgreSQLPolicyStore(config.postgres_dsn, config.policy_table)


def build_notifier(config: BaseConfig) -> Optional[PolicyChangeNotifier]:
    if not config.reload_channel:
        return None
    return PolicyChangeNotifier(config.redis_url, config.reload_channel)


_lifecycle: Optional[EnforcerLifecycle] = None


def get_enforcer_lifecycle(
    config: Optional[BaseConfig] = None,
    metrics: Optional[MetricsCollector] = None
) -> EnforcerLifecycle:
    """Return the process-wide lifecycle holder, creating it on first use."""
    global _lifecycle
    if _lifecycle is None:
        config = config or BaseConfig()
        _lifecycle = EnforcerLifecycle(
            build_store_factory(config),
            metrics=metrics,
            notifier=build_notifier(config)
        )
    return _lifecycle
