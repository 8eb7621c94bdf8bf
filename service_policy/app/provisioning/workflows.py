"""
Operator workflows that seed and re-derive policies from the directory.

Project provisioning copies every organization membership into the project
domain once. Later organization role changes are not re-cascaded; run
``migrate_existing_roles`` to copy organization assignments into projects.
"""

from typing import Any, Dict, Set

from shared.logging import get_logger
from shared.errors import NotFoundError
from ..enforcement.lifecycle import EnforcerLifecycle
from ..enforcement.models import GLOBAL_DOMAIN, Role
from ..persistence.directory import Directory
from .manager import PolicyManager
from .templates import DEFAULT_TOKEN_TEMPLATE, GLOBAL_TEMPLATE, GLOBAL_ROLE_INHERITANCE


class ProvisioningWorkflows:
    """Seeds organizations, projects and token policy types from the directory."""

    def __init__(self, manager: PolicyManager, directory: Directory, enforcer: EnforcerLifecycle):
        self.manager = manager
        self.directory = directory
        self.enforcer = enforcer
        self.logger = get_logger("policy.provisioning.workflows")

    async def provision_organization(self, organization_id: str) -> Dict[str, Any]:
        """Seed org grants, assign member roles and provision every org project."""
        organization = await self.directory.get_organization(organization_id)
        if organization is None:
            raise NotFoundError("Organization", organization_id)

        policies = await self.manager.setup_organization_policies(organization_id)

        assignments = 0
        for membership in await self.directory.get_organization_memberships(organization_id):
            if await self.manager.assign_role_to_user_for_organization(
                membership.user_id, organization_id, membership.role
            ):
                assignments += 1

        projects = await self.directory.get_organization_projects(organization_id)
        for project in projects:
            await self.provision_project(project.id)

        self.logger.info(
            "Organization provisioned",
            organization_id=organization_id,
            policies_added=policies,
            assignments_added=assignments,
            projects=len(projects)
        )
        return {
            "organization_id": organization_id,
            "policies_added": policies,
            "assignments_added": assignments,
            "projects_provisioned": len(projects)
        }

    async def provision_project(self, project_id: str) -> Dict[str, Any]:
        """Seed project grants and copy the owning organization's roles into it."""
        project = await self.directory.get_project(project_id)
        if project is None:
            raise NotFoundError("Project", project_id)

        policies = await self.manager.setup_project_policies(project_id)

        assignments = 0
        for membership in await self.directory.get_organization_memberships(project.organization_id):
            if await self.manager.assign_role_to_user_for_project(membership.user_id, project_id, membership.role):
                assignments += 1

        self.logger.info(
            "Project provisioned",
            project_id=project_id,
            organization_id=project.organization_id,
            policies_added=policies,
            assignments_added=assignments
        )
        return {
            "project_id": project_id,
            "organization_id": project.organization_id,
            "policies_added": policies,
            "assignments_added": assignments
        }

    async def setup_all_policies(self) -> int:
        """Provision every organization in the directory."""
        organizations = await self.directory.list_organizations()
        for organization in organizations:
            await self.provision_organization(organization.id)

        self.logger.info("All organizations provisioned", organizations=len(organizations))
        return len(organizations)

    async def migrate_existing_roles(self) -> int:
        """Re-derive project assignments from the organization assignments.

        Members with no organization assignment yet get their directory role
        first. Each project then mirrors the ranked roles its members hold in
        the organization. Returns the number of assignments added or removed.
        """
        changed = 0
        for organization in await self.directory.list_organizations():
            org_roles = await self._ranked_roles(organization.id)
            for membership in await self.directory.get_organization_memberships(organization.id):
                if membership.user_id in org_roles:
                    continue
                if await self.manager.assign_role_to_user_for_organization(
                    membership.user_id, organization.id, membership.role
                ):
                    changed += 1
                org_roles[membership.user_id] = {membership.role}

            for project in await self.directory.get_organization_projects(organization.id):
                changed += await self._sync_project_roles(project.id, org_roles)

        self.logger.info("Role migration completed", assignments_changed=changed)
        return changed

    async def _ranked_roles(self, domain: str) -> Dict[str, Set[Role]]:
        roles: Dict[str, Set[Role]] = {}
        for assignment in await self.enforcer.get_filtered_grouping_policy(domain):
            role = Role.parse(assignment.role)
            if role is not None:
                roles.setdefault(assignment.user, set()).add(role)
        return roles

    async def _sync_project_roles(self, project_id: str, org_roles: Dict[str, Set[Role]]) -> int:
        changed = 0
        project_roles = await self._ranked_roles(project_id)
        for user_id, roles in org_roles.items():
            held = project_roles.get(user_id, set())
            for stale in held - roles:
                if await self.manager.revoke_role_from_user_for_project(user_id, project_id, stale):
                    changed += 1
            for missing in roles - held:
                if await self.manager.assign_role_to_user_for_project(user_id, project_id, missing):
                    changed += 1
        return changed

    async def setup_default_token_policies(self) -> int:
        """Seed the shared api_readonly/api_readwrite/api_admin policy types into every project."""
        added = 0
        projects = 0
        for organization in await self.directory.list_organizations():
            for project in await self.directory.get_organization_projects(organization.id):
                added += await self.manager.apply_template(DEFAULT_TOKEN_TEMPLATE, project.id)
                projects += 1

        self.logger.info("Default token policies set up", projects=projects, policies_added=added)
        return added

    async def seed_global_policies(self) -> int:
        """Bootstrap the global domain on an empty store. Returns rules added."""
        existing = await self.enforcer.count_stored_rules()
        if existing > 0:
            self.logger.info("Policy store already seeded, skipping global seed", rules=existing)
            return 0

        added = await self.manager.apply_template(GLOBAL_TEMPLATE, GLOBAL_DOMAIN)
        for role, inherited in GLOBAL_ROLE_INHERITANCE:
            if await self.enforcer.add_role_for_user_in_domain(role, inherited, GLOBAL_DOMAIN):
                added += 1

        self.logger.info("Global policies seeded", rules_added=added)
        return added

    async def setup_all(self) -> Dict[str, int]:
        organizations = await self.setup_all_policies()
        token_policies = await self.setup_default_token_policies()
        self.logger.info("Policy setup completed")
        return {"organizations": organizations, "token_policies_added": token_policies}
