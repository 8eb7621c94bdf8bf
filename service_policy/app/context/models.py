"""
Request context models.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..enforcement.models import Role


class UserContext(BaseModel):
    """Local user row resolved from an authenticated principal."""
    id: str
    principal_id: str
    email: Optional[str] = None
    name: Optional[str] = None


class OrganizationContext(BaseModel):
    """Organization plus the requesting user's role in it, when known."""
    id: str
    name: str
    slug: Optional[str] = None
    user_role: Optional[Role] = None


class ProjectContext(BaseModel):
    """Project and its owning organization."""
    id: str
    name: str
    slug: Optional[str] = None
    organization_id: str


class ResolvedContext(BaseModel):
    """Per-request projection of principal -> user -> organization -> project."""
    user: Optional[UserContext] = None
    organization: Optional[OrganizationContext] = None
    project: Optional[ProjectContext] = None


class OrganizationSwitchRequest(BaseModel):
    """Request model for switching the current organization."""
    organization_id: str = Field(..., min_length=1, description="Organization ID")


@dataclass(frozen=True)
class OrganizationMembership:
    """A user's role within an organization."""
    user_id: str
    organization_id: str
    role: Role


class ProjectAccess(str, Enum):
    """Outcome of selecting a project from a route parameter."""
    GRANTED = "granted"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
