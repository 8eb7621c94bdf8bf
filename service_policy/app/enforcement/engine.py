"""
Enforcement engine for the Policy Service.
"""

import asyncio
import time
from collections import deque
from typing import Dict, Any, Optional, List, Set, Tuple, Union

from shared.logging import get_logger
from shared.errors import MutationError
from shared.metrics import MetricsCollector
from ..persistence.store import PolicyStore
from .models import (
    Action, Resource, PolicyRule, RoleAssignment, CasbinRuleRow,
    GLOBAL_DOMAIN, POLICY_PTYPE, GROUPING_PTYPE
)

# The one inheritance edge built into the model, valid in the global domain only.
GLOBAL_ADMIN_ROLE = "admin"
GLOBAL_OWNER_ROLE = "owner"

PolicyIndex = Dict[str, Dict[str, Set[PolicyRule]]]
GroupingIndex = Dict[str, Dict[str, Set[str]]]


class EnforcementEngine:
    """In-memory RBAC-with-domains decision procedure.

    Grants are indexed by domain then subject, role assignments by domain then
    user. ``enforce`` never performs I/O. Mutations persist to the policy store
    first and only touch the index once the write succeeded.
    """

    def __init__(self, store: PolicyStore, metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.metrics = metrics
        self.logger = get_logger("policy.engine")
        self._policies: PolicyIndex = {}
        self._groupings: GroupingIndex = {}
        self._write_lock = asyncio.Lock()

    async def load(self) -> None:
        """Replace the index with the full rule set from the store."""
        async with self._write_lock:
            rows = await self.store.load_rules()
            policies, groupings = self._build_index(rows)
            self._policies = policies
            self._groupings = groupings

        self.logger.info(
            "Policy loaded",
            policies=sum(len(rules) for subjects in policies.values() for rules in subjects.values()),
            role_assignments=sum(len(roles) for users in groupings.values() for roles in users.values()),
            domains=len(set(policies) | set(groupings))
        )

    def _build_index(self, rows: List[CasbinRuleRow]) -> Tuple[PolicyIndex, GroupingIndex]:
        policies: PolicyIndex = {}
        groupings: GroupingIndex = {}

        for row in rows:
            try:
                if row.ptype == POLICY_PTYPE:
                    rule = PolicyRule.from_row(row)
                    policies.setdefault(rule.domain, {}).setdefault(rule.subject, set()).add(rule)
                elif row.ptype == GROUPING_PTYPE:
                    assignment = RoleAssignment.from_row(row)
                    groupings.setdefault(assignment.domain, {}).setdefault(assignment.user, set()).add(assignment.role)
                else:
                    self.logger.warning("Skipping rule with unknown ptype", ptype=row.ptype)
            except ValueError as e:
                self.logger.warning("Skipping malformed rule", ptype=row.ptype, v0=row.v0, error=str(e))

        return policies, groupings

    def enforce(
        self,
        subject: str,
        resource: Union[Resource, str],
        action: Union[Action, str],
        domain: str
    ) -> bool:
        """Decide whether subject may perform action on resource in domain."""
        start_time = time.perf_counter()
        allowed = self._match(subject, resource, action, domain)

        if self.metrics:
            self.metrics.record_decision(allowed, time.perf_counter() - start_time)

        if not allowed:
            self.logger.debug(
                "Access denied",
                subject=subject,
                resource=str(getattr(resource, "value", resource)),
                action=str(getattr(action, "value", action)),
                domain=domain
            )

        return allowed

    def _match(self, subject: str, resource, action, domain: str) -> bool:
        requested_resource = Resource.parse(resource)
        requested_action = Action.parse(action)
        if requested_resource is None or requested_action is None:
            return False

        domain_policies = self._policies.get(domain)
        if not domain_policies:
            return False

        # The subject itself is checked first so policy types can be granted directly.
        for holder in [subject, *self.get_roles_for_user_in_domain(subject, domain)]:
            for rule in domain_policies.get(holder, ()):
                if rule.grants(requested_resource, requested_action):
                    return True

        return False

    def get_roles_for_user_in_domain(self, user: str, domain: str) -> List[str]:
        """Roles held by user in domain, including inherited ones."""
        domain_groupings = self._groupings.get(domain, {})
        seen: Set[str] = {user}
        ordered: List[str] = []
        queue = deque([user])

        while queue:
            current = queue.popleft()
            parents = set(domain_groupings.get(current, ()))
            if domain == GLOBAL_DOMAIN and current == GLOBAL_ADMIN_ROLE:
                parents.add(GLOBAL_OWNER_ROLE)

            for role in sorted(parents):
                if role not in seen:
                    seen.add(role)
                    ordered.append(role)
                    queue.append(role)

        return ordered

    def get_direct_roles_for_user_in_domain(self, user: str, domain: str) -> List[str]:
        return sorted(self._groupings.get(domain, {}).get(user, ()))

    def has_policy(self, rule: PolicyRule) -> bool:
        return rule in self._policies.get(rule.domain, {}).get(rule.subject, ())

    def has_grouping_policy(self, assignment: RoleAssignment) -> bool:
        return assignment.role in self._groupings.get(assignment.domain, {}).get(assignment.user, ())

    def get_filtered_policy(self, domain: str) -> List[PolicyRule]:
        """All grants stored for a domain."""
        rules = [rule for subjects in self._policies.get(domain, {}).values() for rule in subjects]
        return sorted(rules, key=lambda r: (r.subject, r.resource.value, r.action.value))

    def get_filtered_grouping_policy(self, domain: str) -> List[RoleAssignment]:
        """All role assignments stored for a domain."""
        return sorted(
            RoleAssignment(user, role, domain)
            for user, roles in self._groupings.get(domain, {}).items()
            for role in roles
        )

    def get_users_for_role_in_domain(self, role: str, domain: str) -> List[str]:
        return sorted(user for user, roles in self._groupings.get(domain, {}).items() if role in roles)

    async def add_policy(self, rule: PolicyRule) -> bool:
        """Add a grant. Returns False if it already existed."""
        async with self._write_lock:
            if self.has_policy(rule):
                return False

            await self._persist("add_policy", self.store.add_rule, rule.to_row())
            self._policies.setdefault(rule.domain, {}).setdefault(rule.subject, set()).add(rule)

        self.logger.info(
            "Policy added",
            subject=rule.subject,
            resource=rule.resource.value,
            action=rule.action.value,
            domain=rule.domain
        )
        return True

    async def remove_policy(self, rule: PolicyRule) -> bool:
        """Remove a grant. Returns False if it did not exist."""
        async with self._write_lock:
            if not self.has_policy(rule):
                return False

            await self._persist("remove_policy", self.store.remove_rule, rule.to_row())
            subjects = self._policies[rule.domain]
            subjects[rule.subject].discard(rule)
            if not subjects[rule.subject]:
                del subjects[rule.subject]

        self.logger.info(
            "Policy removed",
            subject=rule.subject,
            resource=rule.resource.value,
            action=rule.action.value,
            domain=rule.domain
        )
        return True

    async def add_role_for_user_in_domain(self, assignment: RoleAssignment) -> bool:
        """Add a role assignment. Returns False if it already existed."""
        async with self._write_lock:
            if self.has_grouping_policy(assignment):
                return False

            await self._persist("add_role_for_user_in_domain", self.store.add_rule, assignment.to_row())
            self._groupings.setdefault(assignment.domain, {}).setdefault(assignment.user, set()).add(assignment.role)

        self.logger.info("Role assigned", user=assignment.user, role=assignment.role, domain=assignment.domain)
        return True

    async def remove_role_for_user_in_domain(self, assignment: RoleAssignment) -> bool:
        """Remove a role assignment. Returns False if it did not exist."""
        async with self._write_lock:
            if not self.has_grouping_policy(assignment):
                return False

            await self._persist("remove_role_for_user_in_domain", self.store.remove_rule, assignment.to_row())
            users = self._groupings[assignment.domain]
            users[assignment.user].discard(assignment.role)
            if not users[assignment.user]:
                del users[assignment.user]

        self.logger.info("Role revoked", user=assignment.user, role=assignment.role, domain=assignment.domain)
        return True

    async def _persist(self, operation: str, write, row: CasbinRuleRow):
        try:
            await write(row)
        except Exception as e:
            self.logger.error("Policy store write failed", operation=operation, ptype=row.ptype, v0=row.v0, error=str(e))
            if self.metrics:
                self.metrics.increment_counter("policy_mutations_total", operation=operation, status="error")
            raise MutationError(operation, str(e)) from e

        if self.metrics:
            self.metrics.increment_counter("policy_mutations_total", operation=operation, status="ok")

    def get_engine_stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        return {
            "total_policies": sum(
                len(rules) for subjects in self._policies.values() for rules in subjects.values()
            ),
            "total_role_assignments": sum(
                len(roles) for users in self._groupings.values() for roles in users.values()
            ),
            "domains": sorted(set(self._policies) | set(self._groupings))
        }
