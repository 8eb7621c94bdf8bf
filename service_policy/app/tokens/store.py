"""
Persistence for auth tokens.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

import asyncpg
from shared.logging import get_logger
from shared.errors import ExternalServiceError
from .models import AuthToken


class TokenStore(ABC):
    """Durable storage of auth tokens, independent of the policy store."""

    async def start(self):
        """Open connections. No-op by default."""

    async def stop(self):
        """Release connections. No-op by default."""

    @abstractmethod
    async def create(self, token: AuthToken) -> AuthToken:
        """Persist a new token."""

    @abstractmethod
    async def list_for_project(self, project_id: str) -> List[AuthToken]:
        """Tokens of a project, newest first."""

    @abstractmethod
    async def find_valid(self, secret: str, project_id: str, now: datetime) -> Optional[AuthToken]:
        """Token with this secret in the project that has not expired at now."""

    @abstractmethod
    async def touch(self, token_id: str, used_at: datetime) -> None:
        """Record a use of the token."""

    @abstractmethod
    async def delete(self, token_id: str) -> bool:
        """Delete a token. Returns False when it does not exist."""


class InMemoryTokenStore(TokenStore):
    """Process-local token store for tests and development."""

    def __init__(self):
        self.tokens: Dict[str, AuthToken] = {}

    async def create(self, token: AuthToken) -> AuthToken:
        self.tokens[token.id] = token
        return token

    async def list_for_project(self, project_id: str) -> List[AuthToken]:
        tokens = [t for t in self.tokens.values() if t.project_id == project_id]
        return sorted(tokens, key=lambda t: t.created_at, reverse=True)

    async def find_valid(self, secret: str, project_id: str, now: datetime) -> Optional[AuthToken]:
        return next(
            (
                t for t in self.tokens.values()
                if t.token == secret and t.project_id == project_id and t.is_valid_at(now)
            ),
            None
        )

    async def touch(self, token_id: str, used_at: datetime) -> None:
        if token_id in self.tokens:
            self.tokens[token_id].last_used_at = used_at

    async def delete(self, token_id: str) -> bool:
        return self.tokens.pop(token_id, None) is not None


class PostgreSQLTokenStore(TokenStore):
    """Token store over the auth_tokens table."""

    def __init__(self, dsn: str, pool: Optional[asyncpg.Pool] = None):
        self.dsn = dsn
        self.logger = get_logger("policy.tokens.store")
        self.pool: Optional[asyncpg.Pool] = pool

    async def start(self):
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(self.dsn, min_size=1, max_size=10, command_timeout=30)
            await self._create_tables()
            self.logger.info("PostgreSQL token store started")
        except Exception as e:
            self.logger.error("Failed to start PostgreSQL token store", error=str(e))
            raise ExternalServiceError("postgres", str(e))

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS auth_tokens (
                    id VARCHAR(255) PRIMARY KEY,
                    token VARCHAR(255) NOT NULL UNIQUE,
                    policy_ptype VARCHAR(255) NOT NULL,
                    project_id VARCHAR(255) NOT NULL,
                    user_id VARCHAR(255),
                    expires_at TIMESTAMP WITH TIME ZONE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    last_used_at TIMESTAMP WITH TIME ZONE
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_auth_tokens_project ON auth_tokens(project_id);
            """)

    async def _execute(self, query: str, *args) -> str:
        try:
            async with self.pool.acquire() as conn:
                return await conn.execute(query, *args)
        except asyncpg.PostgresError as e:
            self.logger.error("Token store write failed", error=str(e))
            raise ExternalServiceError("postgres", str(e))

    async def _fetch(self, query: str, *args) -> List[asyncpg.Record]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except asyncpg.PostgresError as e:
            self.logger.error("Token store query failed", error=str(e))
            raise ExternalServiceError("postgres", str(e))

    async def create(self, token: AuthToken) -> AuthToken:
        await self._execute("""
            INSERT INTO auth_tokens (id, token, policy_ptype, project_id, user_id, expires_at, created_at, last_used_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        """, token.id, token.token, token.policy_type, token.project_id, token.user_id,
            token.expires_at, token.created_at, token.last_used_at)
        return token

    async def list_for_project(self, project_id: str) -> List[AuthToken]:
        rows = await self._fetch("""
            SELECT * FROM auth_tokens WHERE project_id = $1 ORDER BY created_at DESC
        """, project_id)
        return [self._row_to_token(r) for r in rows]

    async def find_valid(self, secret: str, project_id: str, now: datetime) -> Optional[AuthToken]:
        rows = await self._fetch("""
            SELECT * FROM auth_tokens
            WHERE token = $1 AND project_id = $2 AND (expires_at IS NULL OR expires_at > $3)
            LIMIT 1
        """, secret, project_id, now)
        return self._row_to_token(rows[0]) if rows else None

    async def touch(self, token_id: str, used_at: datetime) -> None:
        await self._execute("UPDATE auth_tokens SET last_used_at = $2 WHERE id = $1", token_id, used_at)

    async def delete(self, token_id: str) -> bool:
        result = await self._execute("DELETE FROM auth_tokens WHERE id = $1", token_id)
        return result != "DELETE 0"

    @staticmethod
    def _row_to_token(row) -> AuthToken:
        return AuthToken(
            id=row['id'],
            token=row['token'],
            policy_type=row['policy_ptype'],
            project_id=row['project_id'],
            user_id=row['user_id'],
            expires_at=row['expires_at'],
            created_at=row['created_at'],
            last_used_at=row['last_used_at']
        )
