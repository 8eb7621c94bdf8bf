"""
Policy data models for the Policy Service.
"""

from typing import Optional, List, Union
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field


GLOBAL_DOMAIN = "global"

POLICY_PTYPE = "p"
GROUPING_PTYPE = "g"


class Role(str, Enum):
    """Ordered organization/project roles, lowest first."""
    VIEWER = "VIEWER"
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"
    OWNER = "OWNER"

    @property
    def rank(self) -> int:
        return ROLE_HIERARCHY.index(self)

    @classmethod
    def parse(cls, value: Union["Role", str, None]) -> Optional["Role"]:
        """Return the role named by value, or None for policy-type strings."""
        if isinstance(value, Role):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


ROLE_HIERARCHY = (Role.VIEWER, Role.MEMBER, Role.ADMIN, Role.OWNER)


class Resource(str, Enum):
    """Resource classes a rule can grant on."""
    PROJECT = "project"
    ORGANIZATION = "organization"
    USER = "user"
    BILLING = "billing"
    API_TOKEN = "api_token"
    API_KEY = "api_key"
    AUDIT_LOG = "audit_log"
    AUTH_TOKEN = "auth_token"
    CUSTOMER = "customer"
    REWARD = "reward"
    CAMPAIGN = "campaign"
    MEMBERSHIP = "membership"
    INTEGRATION = "integration"
    PROJECT_SETTINGS = "project_settings"
    POLICY = "policy"
    ALL = "*"

    def matches(self, requested: "Resource") -> bool:
        return self is Resource.ALL or self is requested

    @classmethod
    def parse(cls, value: Union["Resource", str]) -> Optional["Resource"]:
        if isinstance(value, Resource):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class Action(str, Enum):
    """Actions a rule can grant. MANAGE does not imply CRUD."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"
    ALL = "*"

    def matches(self, requested: "Action") -> bool:
        return self is Action.ALL or self is requested

    @classmethod
    def parse(cls, value: Union["Action", str]) -> Optional["Action"]:
        if isinstance(value, Action):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class PolicyType:
    """Free-form policy name used as a subject by machine credentials."""
    name: str

    def __str__(self) -> str:
        return self.name


RoleOrPolicyType = Union[Role, PolicyType]


def subject_key(subject: Union[Role, PolicyType, str]) -> str:
    """Storage key for a rule subject or assigned role."""
    if isinstance(subject, Role):
        return subject.value
    return str(subject)


def parse_subject(value: str) -> RoleOrPolicyType:
    role = Role.parse(value)
    return role if role is not None else PolicyType(value)


@dataclass(frozen=True)
class CasbinRuleRow:
    """Persisted rule row: ptype "p" is a grant, "g" a role assignment."""
    ptype: str
    v0: Optional[str] = None
    v1: Optional[str] = None
    v2: Optional[str] = None
    v3: Optional[str] = None
    v4: Optional[str] = None
    v5: Optional[str] = None


@dataclass(frozen=True)
class PolicyRule:
    """Grant: holders of subject in domain may perform action on resource."""
    subject: str
    resource: Resource
    action: Action
    domain: str

    @classmethod
    def of(
        cls,
        subject: Union[Role, PolicyType, str],
        resource: Union[Resource, str],
        action: Union[Action, str],
        domain: str
    ) -> "PolicyRule":
        parsed_resource = Resource.parse(resource)
        parsed_action = Action.parse(action)
        if parsed_resource is None:
            raise ValueError(f"Unknown resource: {resource}")
        if parsed_action is None:
            raise ValueError(f"Unknown action: {action}")
        return cls(subject_key(subject), parsed_resource, parsed_action, domain)

    def grants(self, resource: Resource, action: Action) -> bool:
        return self.resource.matches(resource) and self.action.matches(action)

    def to_row(self) -> CasbinRuleRow:
        return CasbinRuleRow(
            ptype=POLICY_PTYPE,
            v0=self.subject,
            v1=self.resource.value,
            v2=self.action.value,
            v3=self.domain
        )

    @classmethod
    def from_row(cls, row: CasbinRuleRow) -> "PolicyRule":
        if not (row.v0 and row.v3):
            raise ValueError(f"Incomplete policy row: {row}")
        return cls.of(row.v0, row.v1, row.v2, row.v3)


@dataclass(frozen=True, order=True)
class RoleAssignment:
    """Grouping rule: user (or role) holds role within domain."""
    user: str
    role: str
    domain: str

    @classmethod
    def of(cls, user: str, role: Union[Role, PolicyType, str], domain: str) -> "RoleAssignment":
        return cls(user, subject_key(role), domain)

    def to_row(self) -> CasbinRuleRow:
        return CasbinRuleRow(
            ptype=GROUPING_PTYPE,
            v0=self.user,
            v1=self.role,
            v2=self.domain
        )

    @classmethod
    def from_row(cls, row: CasbinRuleRow) -> "RoleAssignment":
        if not (row.v0 and row.v1 and row.v2):
            raise ValueError(f"Incomplete grouping row: {row}")
        return cls(row.v0, row.v1, row.v2)


class EnforceRequest(BaseModel):
    """Request model for an enforcement check."""
    resource: str = Field(..., description="Resource type")
    action: str = Field(..., description="Action to perform")
    domain: str = Field(..., description="Organization ID, project ID or 'global'")
    subject: Optional[str] = Field(None, description="Subject; defaults to the current user")


class EnforceResponse(BaseModel):
    """Response model for an enforcement check."""
    allowed: bool
    subject: str
    resource: str
    action: str
    domain: str


class PolicyRuleResponse(BaseModel):
    """Response model for a stored grant."""
    subject: str
    resource: str
    action: str
    domain: str

    @classmethod
    def from_rule(cls, rule: PolicyRule) -> "PolicyRuleResponse":
        return cls(
            subject=rule.subject,
            resource=rule.resource.value,
            action=rule.action.value,
            domain=rule.domain
        )


class PolicyListResponse(BaseModel):
    """Response model for a domain's grants."""
    domain: str
    policies: List[PolicyRuleResponse]
    total: int
