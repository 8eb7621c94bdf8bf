"""
Policy service: authorization decisions, provisioning and auth tokens.
"""

from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ValidationError

from .enforcement.lifecycle import EnforcerLifecycle, get_enforcer_lifecycle
from .enforcement.models import (
    Action, Resource, GLOBAL_DOMAIN,
    EnforceRequest, EnforceResponse, PolicyListResponse, PolicyRuleResponse
)
from .persistence.directory import Directory, InMemoryDirectory, PostgreSQLDirectory
from .provisioning.manager import PolicyManager
from .provisioning.workflows import ProvisioningWorkflows
from .context.guards import ContextGuards
from .context.models import ResolvedContext, OrganizationSwitchRequest
from .context.resolver import ContextResolver
from .tokens.models import (
    AuthTokenCreateRequest, AuthTokenListResponse, AuthTokenResponse,
    PolicyTypeCreateRequest, TokenCheckRequest, TokenCheckResponse
)
from .tokens.service import AuthTokenService
from .tokens.store import TokenStore, InMemoryTokenStore, PostgreSQLTokenStore


class PolicyService(BaseService):
    """Policy service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        lifecycle: Optional[EnforcerLifecycle] = None,
        directory: Optional[Directory] = None,
        token_store: Optional[TokenStore] = None
    ):
        super().__init__("policy", 8013, config)

        memory = self.config.store_backend == "memory"
        self.lifecycle = lifecycle or get_enforcer_lifecycle(self.config, self.metrics)
        self.directory = directory or (InMemoryDirectory() if memory else PostgreSQLDirectory(self.config.postgres_dsn))
        self.token_store = token_store or (
            InMemoryTokenStore() if memory else PostgreSQLTokenStore(self.config.postgres_dsn)
        )

        self.manager = PolicyManager(self.lifecycle)
        self.workflows = ProvisioningWorkflows(self.manager, self.directory, self.lifecycle)
        self.resolver = ContextResolver(self.directory)
        self.guards = ContextGuards(self.resolver, self.manager, self.config)
        self.tokens = AuthTokenService(
            self.token_store,
            self.lifecycle,
            self.manager,
            token_prefix=self.config.token_prefix,
            metrics=self.metrics
        )
        self.bearer = HTTPBearer(auto_error=False)

        @self.app.on_event("startup")
        async def _startup():
            await self.directory.start()
            await self.token_store.start()
            try:
                await self.lifecycle.init()
            except Exception as e:
                # init() is retried lazily by the first request that needs the enforcer.
                self.logger.warning("Policy enforcer warmup failed", error=str(e))

            if self.config.refresh_interval_seconds > 0:
                self.lifecycle.start_periodic_refresh(self.config.refresh_interval_seconds)
            self.lifecycle.start_change_listener()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.lifecycle.close()
            await self.token_store.stop()
            await self.directory.stop()

        self._setup_policy_routes()
        self._setup_provisioning_routes()
        self._setup_token_routes()

    def _setup_policy_routes(self):
        """Set up context and enforcement routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "policy",
                "message": "Policy Layer - Policy Service",
                "version": "1.0.0",
                "capabilities": ["enforcement", "provisioning", "auth_tokens"]
            }

        @self.app.get("/user/context", response_model=ResolvedContext)
        async def get_user_context(context: ResolvedContext = Depends(self.guards.user_context)):
            """Resolved user, organization and project of the caller."""
            return context

        @self.app.post("/user/context", response_model=ResolvedContext)
        async def switch_organization(request: Request, body: OrganizationSwitchRequest):
            """Switch the caller's current organization."""
            if not self.guards.get_principal_id(request):
                raise HTTPException(status_code=401, detail="Unauthorized")

            context = await self.guards.populate_context(request)
            if context.user is None:
                raise HTTPException(status_code=404, detail="User not found")

            switched = await self.resolver.switch_organization(context, body.organization_id)
            if switched is None:
                raise HTTPException(status_code=403, detail="Not a member of this organization")

            self.logger.info("Organization switched", user_id=context.user.id, organization_id=body.organization_id)
            return switched

        @self.app.post("/policy/check", response_model=EnforceResponse)
        async def check_policy(
            body: EnforceRequest,
            context: ResolvedContext = Depends(self.guards.user_context)
        ):
            """Check a permission for the caller, or for another subject with policy:manage."""
            subject = body.subject or context.user.id
            if subject != context.user.id and not await self.lifecycle.enforce(
                context.user.id, Resource.POLICY, Action.MANAGE, body.domain
            ):
                raise HTTPException(status_code=403, detail="Insufficient permissions")

            allowed = await self.lifecycle.enforce(subject, body.resource, body.action, body.domain)
            return EnforceResponse(
                allowed=allowed,
                subject=subject,
                resource=body.resource,
                action=body.action,
                domain=body.domain
            )

        @self.app.post("/policy/reload")
        async def reload_policy(context: ResolvedContext = Depends(self.guards.user_context)):
            """Reload the rule set from the policy store."""
            if not await self.lifecycle.enforce(context.user.id, Resource.POLICY, Action.MANAGE, GLOBAL_DOMAIN):
                raise HTTPException(status_code=403, detail="Insufficient permissions")

            await self.lifecycle.reload_policy()
            engine = await self.lifecycle.get_engine()
            self.logger.info("Policy reloaded on request", user_id=context.user.id)
            return {"status": "reloaded", **engine.get_engine_stats()}

        @self.app.get("/projects/{project_id}/policies", response_model=PolicyListResponse)
        async def list_project_policies(
            project_id: str,
            context: ResolvedContext = Depends(self.guards.require_permission(Resource.POLICY, Action.MANAGE))
        ):
            """List the grants stored for a project."""
            rules = await self.lifecycle.get_filtered_policy(project_id)
            return PolicyListResponse(
                domain=project_id,
                policies=[PolicyRuleResponse.from_rule(rule) for rule in rules],
                total=len(rules)
            )

    def _setup_provisioning_routes(self):
        """Set up provisioning routes."""

        @self.app.post("/organizations/{organization_id}/provision")
        async def provision_organization(
            organization_id: str,
            context: ResolvedContext = Depends(
                self.guards.require_permission(Resource.ORGANIZATION, Action.UPDATE, domain_param="organization_id")
            )
        ) -> Dict[str, Any]:
            """Seed an organization and cascade roles into its projects."""
            return await self.workflows.provision_organization(organization_id)

        @self.app.post("/projects/{project_id}/provision")
        async def provision_project(
            project_id: str,
            context: ResolvedContext = Depends(self.guards.require_permission(Resource.PROJECT, Action.UPDATE))
        ) -> Dict[str, Any]:
            """Seed a project and copy its organization's roles into it."""
            return await self.workflows.provision_project(project_id)

    def _setup_token_routes(self):
        """Set up auth token routes."""

        @self.app.get("/projects/{project_id}/auth-tokens", response_model=AuthTokenListResponse)
        async def list_tokens(
            project_id: str,
            context: ResolvedContext = Depends(self.guards.require_permission(Resource.AUTH_TOKEN, Action.READ))
        ):
            """List a project's tokens with masked secrets."""
            tokens = await self.tokens.get_tokens_for_project(project_id)
            return AuthTokenListResponse(
                tokens=[AuthTokenResponse.from_token(token) for token in tokens],
                total=len(tokens)
            )

        @self.app.post(
            "/projects/{project_id}/auth-tokens",
            response_model=AuthTokenResponse,
            status_code=status.HTTP_201_CREATED
        )
        async def create_token(
            project_id: str,
            body: AuthTokenCreateRequest,
            context: ResolvedContext = Depends(self.guards.require_permission(Resource.AUTH_TOKEN, Action.CREATE))
        ):
            """Issue a token bound to a policy type or to a fresh scoped policy type."""
            if (body.policy_type is None) == (body.scope is None):
                raise ValidationError("Provide exactly one of policy_type or scope")

            if body.scope is not None:
                token = await self.tokens.create_api_token(
                    project_id, body.scope, body.expires_in_days, user_id=context.user.id
                )
            else:
                token = await self.tokens.create_token(
                    project_id, body.policy_type, body.expires_in_days, user_id=context.user.id
                )
            return AuthTokenResponse.from_token(token)

        @self.app.post("/projects/{project_id}/auth-tokens/policy-types", status_code=status.HTTP_201_CREATED)
        async def create_policy_type(
            project_id: str,
            body: PolicyTypeCreateRequest,
            context: ResolvedContext = Depends(self.guards.require_permission(Resource.POLICY, Action.MANAGE))
        ):
            """Create a custom policy type for tokens."""
            added = await self.tokens.create_policy_type(project_id, body.name, body.resources, body.actions)
            return {"policy_type": body.name, "project_id": project_id, "policies_added": added}

        @self.app.delete("/projects/{project_id}/auth-tokens/{token_id}")
        async def revoke_token(
            project_id: str,
            token_id: str,
            context: ResolvedContext = Depends(self.guards.require_permission(Resource.AUTH_TOKEN, Action.DELETE))
        ):
            """Revoke a token of the project."""
            if not await self.tokens.revoke_token(token_id, project_id=project_id):
                raise HTTPException(status_code=404, detail="Token not found")
            return {"revoked": True, "token_id": token_id}

        @self.app.post("/projects/{project_id}/auth-tokens/check", response_model=TokenCheckResponse)
        async def check_token(
            project_id: str,
            body: TokenCheckRequest,
            credentials: Optional[HTTPAuthorizationCredentials] = Depends(self.bearer)
        ):
            """Check what the presented bearer token may do in the project."""
            if credentials is None:
                raise HTTPException(status_code=401, detail="Bearer token required")

            allowed = await self.tokens.check_token_permission(
                credentials.credentials, body.resource, body.action, project_id
            )
            return TokenCheckResponse(
                allowed=allowed,
                project_id=project_id,
                resource=body.resource,
                action=body.action
            )

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check policy store health."""
        dependencies = {"enforcer": self.lifecycle.state.value}
        if self.lifecycle.is_initialized():
            engine = await self.lifecycle.get_engine()
            dependencies["policy_store"] = "ok" if await engine.store.health_check() else "error"
        return dependencies


def create_app(**kwargs):
    """Create policy service application."""
    service = PolicyService(**kwargs)
    return service.app


if __name__ == "__main__":
    service = PolicyService()
    service.run()
