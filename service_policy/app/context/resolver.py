"""
Per-request resolution of principal -> user -> organization -> project.
"""

from typing import Optional, Tuple

from shared.logging import get_logger
from ..enforcement.models import Role
from ..persistence.directory import Directory
from .models import ResolvedContext, OrganizationContext, ProjectAccess


class ContextResolver:
    """Builds the ResolvedContext of a request from the directory.

    Directory failures propagate; callers map them to 5xx rather than
    treating them as a missing user.
    """

    def __init__(self, directory: Directory):
        self.directory = directory
        self.logger = get_logger("policy.context.resolver")

    async def resolve(self, principal_id: Optional[str]) -> ResolvedContext:
        context = ResolvedContext()
        if not principal_id:
            return context

        user = await self.directory.get_user_by_principal(principal_id)
        if user is None:
            self.logger.debug("No local user for principal", principal_id=principal_id)
            return context
        context.user = user

        context.organization = await self.get_user_primary_organization(user.id)
        if context.organization is not None:
            projects = await self.directory.get_organization_projects(context.organization.id)
            if projects:
                context.project = projects[0]

        return context

    async def get_user_primary_organization(self, user_id: str) -> Optional[OrganizationContext]:
        """The organization the user owns, else the first membership found."""
        organizations = await self.directory.get_user_organizations(user_id)
        if not organizations:
            return None

        owned = next((o for o in organizations if o.user_role is Role.OWNER), None)
        return owned or organizations[0]

    async def set_project_context_from_param(
        self, context: ResolvedContext, project_id: Optional[str]
    ) -> Tuple[ProjectAccess, ResolvedContext]:
        """Replace the context project with project_id when the user may access it.

        Membership is checked before the project is fetched, so an unknown
        project ID reports FORBIDDEN for a user outside every owning org.
        """
        if context.user is None:
            return ProjectAccess.UNAUTHENTICATED, context
        if not project_id:
            return ProjectAccess.GRANTED, context

        if not await self.directory.has_project_access(context.user.id, project_id):
            self.logger.info("Project access denied", user_id=context.user.id, project_id=project_id)
            return ProjectAccess.FORBIDDEN, context

        project = await self.directory.get_project(project_id)
        if project is None:
            return ProjectAccess.NOT_FOUND, context

        context.project = project
        if context.organization is None:
            context.organization = await self.get_user_primary_organization(context.user.id)

        return ProjectAccess.GRANTED, context

    async def switch_organization(self, context: ResolvedContext, organization_id: str) -> Optional[ResolvedContext]:
        """Context rebased on organization_id, or None when the user is not a member."""
        organizations = await self.directory.get_user_organizations(context.user.id)
        organization = next((o for o in organizations if o.id == organization_id), None)
        if organization is None:
            return None

        projects = await self.directory.get_organization_projects(organization.id)
        return ResolvedContext(
            user=context.user,
            organization=organization,
            project=projects[0] if projects else None
        )
