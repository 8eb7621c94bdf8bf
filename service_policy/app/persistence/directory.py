"""
Directory of users, organizations, memberships and projects.

The directory is owned by the platform's relational schema; this service only
reads it, to resolve request context and to drive provisioning cascades.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import asyncpg
from shared.logging import get_logger
from shared.errors import ExternalServiceError
from ..enforcement.models import Role
from ..context.models import (
    UserContext, OrganizationContext, ProjectContext, OrganizationMembership
)


class Directory(ABC):
    """Read-only view of tenants and their members."""

    async def start(self):
        """Open connections. No-op by default."""

    async def stop(self):
        """Release connections. No-op by default."""

    @abstractmethod
    async def get_user_by_principal(self, principal_id: str) -> Optional[UserContext]:
        """Local user for an authenticated principal."""

    @abstractmethod
    async def get_user_organizations(self, user_id: str) -> List[OrganizationContext]:
        """Organizations the user belongs to, with the user's role in each."""

    @abstractmethod
    async def get_organization(self, organization_id: str) -> Optional[OrganizationContext]:
        """Organization by ID."""

    @abstractmethod
    async def list_organizations(self) -> List[OrganizationContext]:
        """Every organization."""

    @abstractmethod
    async def get_organization_projects(self, organization_id: str) -> List[ProjectContext]:
        """Projects of an organization, oldest first."""

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[ProjectContext]:
        """Project by ID."""

    @abstractmethod
    async def get_organization_memberships(self, organization_id: str) -> List[OrganizationMembership]:
        """Members of an organization with their roles."""

    @abstractmethod
    async def list_memberships(self) -> List[OrganizationMembership]:
        """Every organization membership."""

    async def has_project_access(self, user_id: str, project_id: str) -> bool:
        """Whether the user belongs to the organization owning the project."""
        project = await self.get_project(project_id)
        if project is None:
            return False

        memberships = await self.get_organization_memberships(project.organization_id)
        return any(m.user_id == user_id for m in memberships)


class InMemoryDirectory(Directory):
    """Process-local directory for tests and development."""

    def __init__(self):
        self.users: Dict[str, UserContext] = {}
        self.organizations: Dict[str, OrganizationContext] = {}
        self.projects: Dict[str, ProjectContext] = {}
        self.memberships: List[OrganizationMembership] = []

    def add_user(self, user_id: str, principal_id: str, email: str = None, name: str = None) -> UserContext:
        user = UserContext(id=user_id, principal_id=principal_id, email=email, name=name)
        self.users[user_id] = user
        return user

    def add_organization(self, organization_id: str, name: str, slug: str = None) -> OrganizationContext:
        organization = OrganizationContext(id=organization_id, name=name, slug=slug)
        self.organizations[organization_id] = organization
        return organization

    def add_membership(self, user_id: str, organization_id: str, role: Role) -> OrganizationMembership:
        membership = OrganizationMembership(user_id, organization_id, role)
        self.memberships.append(membership)
        return membership

    def add_project(self, project_id: str, organization_id: str, name: str, slug: str = None) -> ProjectContext:
        project = ProjectContext(id=project_id, name=name, slug=slug, organization_id=organization_id)
        self.projects[project_id] = project
        return project

    async def get_user_by_principal(self, principal_id: str) -> Optional[UserContext]:
        return next((u for u in self.users.values() if u.principal_id == principal_id), None)

    async def get_user_organizations(self, user_id: str) -> List[OrganizationContext]:
        return [
            self.organizations[m.organization_id].model_copy(update={"user_role": m.role})
            for m in self.memberships
            if m.user_id == user_id and m.organization_id in self.organizations
        ]

    async def get_organization(self, organization_id: str) -> Optional[OrganizationContext]:
        return self.organizations.get(organization_id)

    async def list_organizations(self) -> List[OrganizationContext]:
        return list(self.organizations.values())

    async def get_organization_projects(self, organization_id: str) -> List[ProjectContext]:
        return [p for p in self.projects.values() if p.organization_id == organization_id]

    async def get_project(self, project_id: str) -> Optional[ProjectContext]:
        return self.projects.get(project_id)

    async def get_organization_memberships(self, organization_id: str) -> List[OrganizationMembership]:
        return [m for m in self.memberships if m.organization_id == organization_id]

    async def list_memberships(self) -> List[OrganizationMembership]:
        return list(self.memberships)


class PostgreSQLDirectory(Directory):
    """Directory backed by the platform's users/organizations/projects tables."""

    def __init__(self, dsn: str, pool: Optional[asyncpg.Pool] = None):
        self.dsn = dsn
        self.logger = get_logger("policy.persistence.directory")
        self.pool: Optional[asyncpg.Pool] = pool

    async def start(self):
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(self.dsn, min_size=1, max_size=10, command_timeout=30)
            self.logger.info("PostgreSQL directory started")
        except Exception as e:
            self.logger.error("Failed to start PostgreSQL directory", error=str(e))
            raise ExternalServiceError("postgres", str(e))

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def _fetch(self, query: str, *args) -> List[asyncpg.Record]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except asyncpg.PostgresError as e:
            self.logger.error("Directory query failed", error=str(e))
            raise ExternalServiceError("postgres", str(e))

    async def _fetchrow(self, query: str, *args) -> Optional[asyncpg.Record]:
        rows = await self._fetch(query, *args)
        return rows[0] if rows else None

    async def get_user_by_principal(self, principal_id: str) -> Optional[UserContext]:
        row = await self._fetchrow("""
            SELECT id, principal_id, email, name FROM users WHERE principal_id = $1
        """, principal_id)
        if not row:
            return None
        return UserContext(id=row['id'], principal_id=row['principal_id'], email=row['email'], name=row['name'])

    async def get_user_organizations(self, user_id: str) -> List[OrganizationContext]:
        rows = await self._fetch("""
            SELECT o.id, o.name, o.slug, uo.role
            FROM user_organizations uo
            JOIN organizations o ON o.id = uo.organization_id
            WHERE uo.user_id = $1
            ORDER BY uo.created_at ASC
        """, user_id)
        return [
            OrganizationContext(id=r['id'], name=r['name'], slug=r['slug'], user_role=Role.parse(r['role']))
            for r in rows
        ]

    async def get_organization(self, organization_id: str) -> Optional[OrganizationContext]:
        row = await self._fetchrow("""
            SELECT id, name, slug FROM organizations WHERE id = $1
        """, organization_id)
        if not row:
            return None
        return OrganizationContext(id=row['id'], name=row['name'], slug=row['slug'])

    async def list_organizations(self) -> List[OrganizationContext]:
        rows = await self._fetch("SELECT id, name, slug FROM organizations ORDER BY created_at ASC")
        return [OrganizationContext(id=r['id'], name=r['name'], slug=r['slug']) for r in rows]

    async def get_organization_projects(self, organization_id: str) -> List[ProjectContext]:
        rows = await self._fetch("""
            SELECT id, name, slug, organization_id FROM projects
            WHERE organization_id = $1
            ORDER BY created_at ASC
        """, organization_id)
        return [self._row_to_project(r) for r in rows]

    async def get_project(self, project_id: str) -> Optional[ProjectContext]:
        row = await self._fetchrow("""
            SELECT id, name, slug, organization_id FROM projects WHERE id = $1
        """, project_id)
        return self._row_to_project(row) if row else None

    async def get_organization_memberships(self, organization_id: str) -> List[OrganizationMembership]:
        rows = await self._fetch("""
            SELECT user_id, organization_id, role FROM user_organizations
            WHERE organization_id = $1
            ORDER BY created_at ASC
        """, organization_id)
        return self._rows_to_memberships(rows)

    async def list_memberships(self) -> List[OrganizationMembership]:
        rows = await self._fetch("""
            SELECT user_id, organization_id, role FROM user_organizations ORDER BY created_at ASC
        """)
        return self._rows_to_memberships(rows)

    async def has_project_access(self, user_id: str, project_id: str) -> bool:
        row = await self._fetchrow("""
            SELECT 1 FROM projects p
            JOIN user_organizations uo ON uo.organization_id = p.organization_id
            WHERE p.id = $1 AND uo.user_id = $2
            LIMIT 1
        """, project_id, user_id)
        return row is not None

    @staticmethod
    def _row_to_project(row) -> ProjectContext:
        return ProjectContext(
            id=row['id'],
            name=row['name'],
            slug=row['slug'],
            organization_id=row['organization_id']
        )

    def _rows_to_memberships(self, rows) -> List[OrganizationMembership]:
        memberships = []
        for row in rows:
            role = Role.parse(row['role'])
            if role is None:
                self.logger.warning("Skipping membership with unknown role", user_id=row['user_id'], role=row['role'])
                continue
            memberships.append(OrganizationMembership(row['user_id'], row['organization_id'], role))
        return memberships
