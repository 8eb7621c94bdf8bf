"""
FastAPI dependencies that populate and guard the request context.
"""

from typing import Optional, Union

from fastapi import HTTPException, Request

from shared.config import BaseConfig
from shared.logging import get_logger, set_request_context
from ..enforcement.models import Action, Resource, Role
from ..provisioning.manager import PolicyManager
from .models import ResolvedContext, ProjectAccess
from .resolver import ContextResolver


def require_user_context(context: ResolvedContext) -> ResolvedContext:
    if context.user is None:
        raise HTTPException(status_code=401, detail="User context not available")
    return context


def require_org_context(context: ResolvedContext) -> ResolvedContext:
    if context.organization is None:
        raise HTTPException(status_code=404, detail="Organization context not available")
    return context


def require_project_context(context: ResolvedContext) -> ResolvedContext:
    if context.project is None:
        raise HTTPException(status_code=404, detail="Project context not available")
    return context


_ACCESS_ERRORS = {
    ProjectAccess.UNAUTHENTICATED: (401, "User context not available"),
    ProjectAccess.FORBIDDEN: (403, "Not authorized to access this project"),
    ProjectAccess.NOT_FOUND: (404, "Project not found"),
}


class ContextGuards:
    """Request-scoped context population and permission guards."""

    def __init__(self, resolver: ContextResolver, manager: PolicyManager, config: BaseConfig):
        self.resolver = resolver
        self.manager = manager
        self.config = config
        self.logger = get_logger("policy.context.guards")

    def get_principal_id(self, request: Request) -> Optional[str]:
        """Principal set by the upstream identity check, or the trusted header."""
        principal_id = getattr(request.state, "principal_id", None)
        if principal_id:
            return principal_id
        if self.config.trust_principal_header:
            return request.headers.get(self.config.principal_header)
        return None

    async def populate_context(self, request: Request) -> ResolvedContext:
        """Resolve the context once per request and cache it on request.state."""
        cached = getattr(request.state, "context", None)
        if cached is not None:
            return cached

        context = await self.resolver.resolve(self.get_principal_id(request))
        request.state.context = context
        set_request_context(
            user_id=context.user.id if context.user else None,
            organization_id=context.organization.id if context.organization else None,
            project_id=context.project.id if context.project else None
        )
        return context

    async def user_context(self, request: Request) -> ResolvedContext:
        return require_user_context(await self.populate_context(request))

    async def org_context(self, request: Request) -> ResolvedContext:
        return require_org_context(await self.user_context(request))

    async def project_context(self, request: Request) -> ResolvedContext:
        return require_project_context(await self.user_context(request))

    async def project_context_from_param(self, request: Request, project_id: str) -> ResolvedContext:
        """Select project_id as the request project. 401/403/404 on failure."""
        context = await self.populate_context(request)
        access, context = await self.resolver.set_project_context_from_param(context, project_id)
        if access is not ProjectAccess.GRANTED:
            status_code, detail = _ACCESS_ERRORS[access]
            raise HTTPException(status_code=status_code, detail=detail)

        set_request_context(
            user_id=context.user.id,
            organization_id=context.organization.id if context.organization else None,
            project_id=context.project.id
        )
        return context

    async def check_permission(
        self,
        user_id: Optional[str],
        project_id: str,
        resource: Union[Resource, str],
        action: Union[Action, str]
    ) -> bool:
        if not user_id:
            return False
        return await self.manager.can_user_access_in_project(user_id, resource, action, project_id)

    async def check_role(self, user_id: Optional[str], project_id: str, min_role: Union[Role, str]) -> bool:
        if not user_id:
            return False
        return await self.manager.has_role_for_project(user_id, project_id, min_role)

    def require_permission(
        self,
        resource: Union[Resource, str],
        action: Union[Action, str],
        domain_param: str = "project_id"
    ):
        """Dependency that 403s unless the user may perform action in the path domain."""

        async def dependency(request: Request) -> ResolvedContext:
            context = await self.user_context(request)
            domain = request.path_params.get(domain_param)
            if not await self.check_permission(context.user.id, domain, resource, action):
                self.logger.info(
                    "Permission denied",
                    user_id=context.user.id,
                    domain=domain,
                    resource=str(getattr(resource, "value", resource)),
                    action=str(getattr(action, "value", action))
                )
                raise HTTPException(status_code=403, detail="Insufficient permissions")
            return context

        return dependency
