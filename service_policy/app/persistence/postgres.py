"""
PostgreSQL persistence layer for policy rules.
"""

import re
from typing import Optional, List

import asyncpg
from shared.logging import get_logger
from shared.errors import ExternalServiceError
from .store import PolicyStore
from ..enforcement.models import CasbinRuleRow

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_VALUE_COLUMNS = ("v0", "v1", "v2", "v3", "v4", "v5")


class PostgreSQLPolicyStore(PolicyStore):
    """PostgreSQL policy store over the two-relation (p/g) rule table."""

    def __init__(self, dsn: str, table: str = "casbin_rule", pool: Optional[asyncpg.Pool] = None):
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid policy table name: {table}")
        self.dsn = dsn
        self.table = table
        self.logger = get_logger("policy.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = pool

    async def start(self):
        """Start the persistence layer."""
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )

            await self._create_tables()

            self.logger.info("PostgreSQL policy store started", table=self.table)

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL policy store", error=str(e))
            raise ExternalServiceError("postgres", str(e))

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL policy store stopped")

    async def _create_tables(self):
        """Create the rule table and its uniqueness index."""
        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id SERIAL PRIMARY KEY,
                    ptype VARCHAR(8) NOT NULL,
                    v0 VARCHAR(255),
                    v1 VARCHAR(255),
                    v2 VARCHAR(255),
                    v3 VARCHAR(255),
                    v4 VARCHAR(255),
                    v5 VARCHAR(255)
                );
            """)

            await conn.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_{self.table}_unique ON {self.table} (
                    ptype,
                    COALESCE(v0, ''), COALESCE(v1, ''), COALESCE(v2, ''),
                    COALESCE(v3, ''), COALESCE(v4, ''), COALESCE(v5, '')
                );
            """)
            await conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{self.table}_ptype ON {self.table}(ptype);
            """)

    async def load_rules(self) -> List[CasbinRuleRow]:
        """Load all rule rows. Failures propagate; there is no safe empty answer."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT ptype, v0, v1, v2, v3, v4, v5 FROM {self.table} ORDER BY id ASC
            """)

        return [self._record_to_row(record) for record in rows]

    async def add_rule(self, row: CasbinRuleRow) -> None:
        """Insert a rule row, ignoring an identical existing row."""
        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                INSERT INTO {self.table} (ptype, v0, v1, v2, v3, v4, v5)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT DO NOTHING
            """, row.ptype, *self._values(row))

        self.logger.debug("Rule saved", ptype=row.ptype, v0=row.v0, domain=self._domain(row))

    async def remove_rule(self, row: CasbinRuleRow) -> bool:
        """Delete a rule row."""
        conditions = ["ptype = $1"]
        params = [row.ptype]
        for column, value in zip(_VALUE_COLUMNS, self._values(row)):
            if value is None:
                conditions.append(f"{column} IS NULL")
            else:
                params.append(value)
                conditions.append(f"{column} = ${len(params)}")

        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {self.table} WHERE {' AND '.join(conditions)}",
                *params
            )

        if result.startswith("DELETE") and result != "DELETE 0":
            self.logger.debug("Rule deleted", ptype=row.ptype, v0=row.v0, domain=self._domain(row))
            return True

        self.logger.warning("Rule not found for deletion", ptype=row.ptype, v0=row.v0)
        return False

    async def count_rules(self) -> int:
        """Get total number of rule rows."""
        async with self.pool.acquire() as conn:
            count = await conn.fetchval(f"SELECT COUNT(*) FROM {self.table}")
            return count or 0

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False

    @staticmethod
    def _values(row: CasbinRuleRow) -> List[Optional[str]]:
        return [getattr(row, column) for column in _VALUE_COLUMNS]

    @staticmethod
    def _domain(row: CasbinRuleRow) -> Optional[str]:
        return row.v3 if row.ptype == "p" else row.v2

    @staticmethod
    def _record_to_row(record) -> CasbinRuleRow:
        """Convert database record to a rule row."""
        return CasbinRuleRow(
            ptype=record['ptype'],
            v0=record['v0'],
            v1=record['v1'],
            v2=record['v2'],
            v3=record['v3'],
            v4=record['v4'],
            v5=record['v5']
        )
