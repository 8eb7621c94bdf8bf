"""
Policy provisioning on top of the enforcement lifecycle.
"""

from typing import Iterable, List, Union

from shared.logging import get_logger
from shared.errors import ValidationError
from ..enforcement.lifecycle import EnforcerLifecycle
from ..enforcement.models import Action, Resource, Role, PolicyRule
from .templates import Template, ORGANIZATION_TEMPLATE, PROJECT_TEMPLATE


class PolicyManager:
    """Seeds role templates and manages role assignments per domain.

    Setup is safe to repeat: a grant that already exists is not stored twice.
    Organization roles are copied into a project only when the project is
    provisioned; see ProvisioningWorkflows for the cascade.
    """

    def __init__(self, enforcer: EnforcerLifecycle):
        self.enforcer = enforcer
        self.logger = get_logger("policy.provisioning.manager")

    async def setup_organization_policies(self, organization_id: str) -> int:
        """Seed the default role grants for an organization."""
        added = await self.apply_template(ORGANIZATION_TEMPLATE, organization_id)
        self.logger.info("Organization policies set up", organization_id=organization_id, added=added)
        return added

    async def setup_project_policies(self, project_id: str) -> int:
        """Seed the default role grants for a project."""
        added = await self.apply_template(PROJECT_TEMPLATE, project_id)
        self.logger.info("Project policies set up", project_id=project_id, added=added)
        return added

    async def apply_template(self, template: Template, domain: str) -> int:
        """Grant every template entry in domain. Returns how many were new."""
        added = 0
        for subject, grants in template.items():
            for resource, action in grants:
                if await self.enforcer.add_policy(subject, resource, action, domain):
                    added += 1
        return added

    async def assign_role_to_user_for_organization(
        self, user_id: str, organization_id: str, role: Union[Role, str]
    ) -> bool:
        return await self.enforcer.add_role_for_user_in_domain(user_id, _role(role), organization_id)

    async def assign_role_to_user_for_project(self, user_id: str, project_id: str, role: Union[Role, str]) -> bool:
        return await self.enforcer.add_role_for_user_in_domain(user_id, _role(role), project_id)

    async def revoke_role_from_user_for_project(self, user_id: str, project_id: str, role: Union[Role, str]) -> bool:
        return await self.enforcer.remove_role_for_user_in_domain(user_id, _role(role), project_id)

    async def revoke_role_from_user_for_organization(
        self, user_id: str, organization_id: str, role: Union[Role, str]
    ) -> bool:
        return await self.enforcer.remove_role_for_user_in_domain(user_id, _role(role), organization_id)

    async def change_user_role_for_organization(
        self, user_id: str, organization_id: str, role: Union[Role, str]
    ) -> bool:
        """Make role the user's only ranked role in the organization.

        Projects are not touched: existing project assignments keep the old
        role until ProvisioningWorkflows.migrate_existing_roles copies the
        organization assignments into them.
        """
        new_role = _role(role)
        changed = False
        for assignment in await self.enforcer.get_filtered_grouping_policy(organization_id):
            held = Role.parse(assignment.role)
            if assignment.user == user_id and held is not None and held is not new_role:
                changed |= await self.enforcer.remove_role_for_user_in_domain(user_id, held, organization_id)

        changed |= await self.enforcer.add_role_for_user_in_domain(user_id, new_role, organization_id)
        self.logger.info(
            "Organization role changed",
            user_id=user_id,
            organization_id=organization_id,
            role=new_role.value
        )
        return changed

    async def get_user_roles_for_project(self, user_id: str, project_id: str) -> List[str]:
        """Roles assigned to the user in the project, without inherited ones."""
        return await self.enforcer.get_direct_roles_for_user_in_domain(user_id, project_id)

    async def has_role_for_project(self, user_id: str, project_id: str, min_role: Union[Role, str]) -> bool:
        """Whether the user holds a ranked role at or above min_role in the project."""
        minimum = _role(min_role)
        roles = await self.get_user_roles_for_project(user_id, project_id)
        ranks = [role.rank for role in map(Role.parse, roles) if role is not None]
        return any(rank >= minimum.rank for rank in ranks)

    async def can_user_access_in_project(
        self,
        user_id: str,
        resource: Union[Resource, str],
        action: Union[Action, str],
        project_id: str
    ) -> bool:
        return await self.enforcer.enforce(user_id, resource, action, project_id)

    async def create_policy_type(
        self,
        project_id: str,
        policy_name: str,
        resources: Iterable[Union[Resource, str]],
        actions: Iterable[Union[Action, str]]
    ) -> int:
        """Grant policy_name every resource x action pair in the project."""
        resources, actions = list(resources), list(actions)
        if not policy_name or not resources or not actions:
            raise ValidationError("Policy type needs a name, resources and actions")
        if Role.parse(policy_name) is not None:
            raise ValidationError(f"Policy type may not reuse role name {policy_name}")

        try:
            rules = [PolicyRule.of(policy_name, r, a, project_id) for r in resources for a in actions]
        except ValueError as e:
            raise ValidationError(str(e))

        added = 0
        for rule in rules:
            if await self.enforcer.add_policy(rule.subject, rule.resource, rule.action, rule.domain):
                added += 1

        self.logger.info("Policy type created", project_id=project_id, policy_type=policy_name, grants=len(rules))
        return added


def _role(role: Union[Role, str]) -> Role:
    parsed = Role.parse(role)
    if parsed is None:
        raise ValidationError(f"Unknown role: {role}")
    return parsed
