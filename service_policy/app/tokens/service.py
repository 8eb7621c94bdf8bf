"""
Auth token service.

Tokens authenticate machine clients as a policy type rather than a user. A
check looks the token up first and only consults the enforcer for a live
token, so an expired token behaves exactly like an unknown one.
"""

import time
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..enforcement.lifecycle import EnforcerLifecycle
from ..enforcement.models import Action, Resource
from ..provisioning.manager import PolicyManager
from ..provisioning.templates import API_SCOPE_GRANTS
from .models import ApiScope, AuthToken, mask_secret, utcnow
from .store import TokenStore

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    digits = []
    while True:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
        if value == 0:
            return "".join(reversed(digits))


def generate_secret(prefix: str) -> str:
    """Unguessable bearer secret: <prefix>_<32 random hex chars>_<base36 ms timestamp>."""
    return f"{prefix}_{secrets.token_hex(16)}_{_base36(int(time.time() * 1000))}"


class AuthTokenService:
    """Issues, lists, revokes and checks auth tokens."""

    def __init__(
        self,
        store: TokenStore,
        enforcer: EnforcerLifecycle,
        manager: PolicyManager,
        token_prefix: str = "datk",
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.enforcer = enforcer
        self.manager = manager
        self.token_prefix = token_prefix
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("policy.tokens")

    async def create_token(
        self,
        project_id: str,
        policy_type: str,
        expires_in_days: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> AuthToken:
        """Issue a token for policy_type. expires_in_days=None never expires."""
        now = self.clock()
        token = AuthToken(
            id=uuid.uuid4().hex,
            token=generate_secret(self.token_prefix),
            policy_type=policy_type,
            project_id=project_id,
            user_id=user_id,
            expires_at=now + timedelta(days=expires_in_days) if expires_in_days is not None else None,
            created_at=now
        )
        await self.store.create(token)

        self.logger.info(
            "Auth token created",
            token_id=token.id,
            token=token.token[:8] + "...",
            project_id=project_id,
            policy_type=policy_type,
            expires_at=token.expires_at.isoformat() if token.expires_at else None
        )
        return token

    async def get_tokens_for_project(self, project_id: str) -> List[AuthToken]:
        """Project tokens, newest first, with secrets masked."""
        return [token.masked() for token in await self.store.list_for_project(project_id)]

    async def revoke_token(self, token_id: str, project_id: Optional[str] = None) -> bool:
        """Delete a token. With project_id, only a token of that project is revoked."""
        if project_id is not None:
            tokens = await self.store.list_for_project(project_id)
            if not any(t.id == token_id for t in tokens):
                return False
        revoked = await self.store.delete(token_id)
        if revoked:
            self.logger.info("Auth token revoked", token_id=token_id)
        return revoked

    async def check_token_permission(
        self,
        secret: str,
        resource: Union[Resource, str],
        action: Union[Action, str],
        project_id: str
    ) -> bool:
        now = self.clock()
        token = await self.store.find_valid(secret, project_id, now)
        if token is None:
            self.logger.debug("Unknown or expired auth token", token=mask_secret(secret), project_id=project_id)
            self._record_check("invalid")
            return False

        await self.store.touch(token.id, now)
        allowed = await self.enforcer.enforce(token.policy_type, resource, action, project_id)
        self._record_check("allow" if allowed else "deny")
        return allowed

    async def create_policy_type(
        self,
        project_id: str,
        policy_name: str,
        resources: List[Union[Resource, str]],
        actions: List[Union[Action, str]]
    ) -> int:
        return await self.manager.create_policy_type(project_id, policy_name, resources, actions)

    async def create_api_token(
        self,
        project_id: str,
        scope: Union[ApiScope, str],
        expires_in_days: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> AuthToken:
        """Provision a fresh api_<scope>_<id> policy type and bind a new token to it."""
        scope = ApiScope(scope)
        policy_name = f"api_{scope.value}_{uuid.uuid4().hex[:8]}"
        await self.manager.apply_template({policy_name: API_SCOPE_GRANTS[scope.value]}, project_id)
        return await self.create_token(project_id, policy_name, expires_in_days, user_id)

    def _record_check(self, result: str):
        if self.metrics:
            self.metrics.increment_counter("token_checks_total", result=result)
