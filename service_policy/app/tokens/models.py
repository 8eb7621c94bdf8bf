"""
Auth token models.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ..enforcement.models import Action, Resource


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApiScope(str, Enum):
    """Preset grant sets for API tokens."""
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


@dataclass
class AuthToken:
    """Bearer credential bound to a policy type within one project."""
    id: str
    token: str
    policy_type: str
    project_id: str
    user_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None

    def is_valid_at(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now

    def masked(self) -> "AuthToken":
        """Copy with the secret reduced to its first 8 and last 4 characters."""
        return replace(self, token=mask_secret(self.token))


def mask_secret(secret: str) -> str:
    return f"{secret[:8]}...{secret[-4:]}"


class AuthTokenCreateRequest(BaseModel):
    """Request model for issuing a token bound to an existing policy type."""
    policy_type: Optional[str] = Field(None, min_length=1, description="Policy type to bind")
    scope: Optional[ApiScope] = Field(None, description="Provision a fresh scoped policy type instead")
    expires_in_days: Optional[int] = Field(None, ge=0, description="Days until expiry, null never expires")


class PolicyTypeCreateRequest(BaseModel):
    """Request model for creating a custom policy type."""
    name: str = Field(..., min_length=1, description="Policy type name")
    resources: List[Resource] = Field(..., min_length=1)
    actions: List[Action] = Field(..., min_length=1)


class TokenCheckRequest(BaseModel):
    """Request model for checking a bearer token's permission."""
    resource: str = Field(..., description="Requested resource")
    action: str = Field(..., description="Requested action")


class AuthTokenResponse(BaseModel):
    """Response model for a token. The secret is only unmasked at creation."""
    id: str
    token: str
    policy_type: str
    project_id: str
    user_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_token(cls, token: AuthToken) -> "AuthTokenResponse":
        return cls(
            id=token.id,
            token=token.token,
            policy_type=token.policy_type,
            project_id=token.project_id,
            user_id=token.user_id,
            expires_at=token.expires_at,
            created_at=token.created_at,
            last_used_at=token.last_used_at
        )


class AuthTokenListResponse(BaseModel):
    """Response model for listing a project's tokens."""
    tokens: List[AuthTokenResponse]
    total: int


class TokenCheckResponse(BaseModel):
    """Response model for a token permission check."""
    allowed: bool
    project_id: str
    resource: str
    action: str
