"""
Grant templates seeded by provisioning.

Each template maps a subject (role or policy type) to the (resource, action)
pairs it is granted inside the domain being provisioned.
"""

from typing import Dict, List, Tuple

from ..enforcement.models import Action, Resource, Role

Grant = Tuple[Resource, Action]
Template = Dict[str, List[Grant]]


def _grants(resources, actions) -> List[Grant]:
    return [(resource, action) for resource in resources for action in actions]


ORGANIZATION_TEMPLATE: Template = {
    Role.OWNER.value: [
        (Resource.ALL, Action.ALL),
        (Resource.ORGANIZATION, Action.ALL),
        (Resource.BILLING, Action.ALL),
        (Resource.PROJECT, Action.ALL),
        (Resource.USER, Action.ALL),
        (Resource.POLICY, Action.ALL),
    ],
    Role.ADMIN.value: [
        (Resource.PROJECT, Action.ALL),
        (Resource.USER, Action.ALL),
        (Resource.BILLING, Action.READ),
        (Resource.ORGANIZATION, Action.READ),
        (Resource.POLICY, Action.MANAGE),
    ],
    Role.MEMBER.value: [
        (Resource.ORGANIZATION, Action.READ),
    ],
    Role.VIEWER.value: [
        (Resource.ORGANIZATION, Action.READ),
    ],
}

PROJECT_TEMPLATE: Template = {
    Role.OWNER.value: [(Resource.ALL, Action.ALL)] + _grants(
        (
            Resource.PROJECT, Resource.USER, Resource.CUSTOMER, Resource.REWARD,
            Resource.CAMPAIGN, Resource.MEMBERSHIP, Resource.API_TOKEN,
            Resource.AUTH_TOKEN, Resource.POLICY,
        ),
        (Action.ALL,)
    ),
    Role.ADMIN.value: [
        (Resource.PROJECT, Action.UPDATE),
        (Resource.USER, Action.MANAGE),
        (Resource.CUSTOMER, Action.ALL),
        (Resource.REWARD, Action.ALL),
        (Resource.CAMPAIGN, Action.ALL),
        (Resource.MEMBERSHIP, Action.ALL),
        (Resource.API_TOKEN, Action.ALL),
        (Resource.AUTH_TOKEN, Action.MANAGE),
    ],
    Role.MEMBER.value: (
        [(Resource.PROJECT, Action.READ)]
        + _grants(
            (Resource.CUSTOMER, Resource.REWARD, Resource.CAMPAIGN),
            (Action.CREATE, Action.READ, Action.UPDATE)
        )
        + _grants((Resource.MEMBERSHIP, Resource.API_TOKEN, Resource.AUTH_TOKEN), (Action.READ,))
    ),
    Role.VIEWER.value: _grants(
        (Resource.PROJECT, Resource.CUSTOMER, Resource.REWARD, Resource.CAMPAIGN, Resource.MEMBERSHIP),
        (Action.READ,)
    ),
}

# Scoped API tokens get a freshly named policy type seeded from one of these.
API_SCOPE_GRANTS: Dict[str, List[Grant]] = {
    "read": _grants((Resource.CUSTOMER, Resource.REWARD, Resource.CAMPAIGN), (Action.READ,)),
    "write": _grants(
        (Resource.CUSTOMER, Resource.REWARD, Resource.CAMPAIGN),
        (Action.READ, Action.CREATE, Action.UPDATE)
    ),
    "admin": [(Resource.ALL, Action.ALL)],
}

# Shared policy types seeded into every project by setup_default_token_policies.
DEFAULT_TOKEN_TEMPLATE: Template = {
    "api_readonly": API_SCOPE_GRANTS["read"],
    "api_readwrite": API_SCOPE_GRANTS["write"],
    "api_admin": API_SCOPE_GRANTS["admin"],
}

# Global-domain bootstrap. "admin" additionally inherits "owner" in the global
# domain through the edge built into the engine.
GLOBAL_TEMPLATE: Template = {
    "owner": [(Resource.ALL, Action.ALL)],
    "admin": [
        (Resource.ORGANIZATION, Action.MANAGE),
        (Resource.PROJECT, Action.MANAGE),
    ],
}

# Role inheritance seeded into the global domain: (role, inherited role).
GLOBAL_ROLE_INHERITANCE: List[Tuple[str, str]] = [
    ("admin", "owner"),
    ("member", "viewer"),
]
