"""
Policy store interface and in-memory implementation.
"""

from abc import ABC, abstractmethod
from typing import List

from ..enforcement.models import CasbinRuleRow


class PolicyStore(ABC):
    """Durable storage of grant ("p") and grouping ("g") rule rows."""

    async def start(self):
        """Open connections. No-op by default."""

    async def stop(self):
        """Release connections. No-op by default."""

    @abstractmethod
    async def load_rules(self) -> List[CasbinRuleRow]:
        """Load every stored rule row."""

    @abstractmethod
    async def add_rule(self, row: CasbinRuleRow) -> None:
        """Persist a row; storing an existing row again is a no-op."""

    @abstractmethod
    async def remove_rule(self, row: CasbinRuleRow) -> bool:
        """Delete a row. Returns False if it was not stored."""

    @abstractmethod
    async def count_rules(self) -> int:
        """Number of stored rows."""

    async def health_check(self) -> bool:
        return True


class InMemoryPolicyStore(PolicyStore):
    """Process-local policy store for tests and single-node development."""

    def __init__(self, rows: List[CasbinRuleRow] = None):
        self.rows: List[CasbinRuleRow] = []
        for row in rows or []:
            if row not in self.rows:
                self.rows.append(row)

    async def load_rules(self) -> List[CasbinRuleRow]:
        return list(self.rows)

    async def add_rule(self, row: CasbinRuleRow) -> None:
        if row not in self.rows:
            self.rows.append(row)

    async def remove_rule(self, row: CasbinRuleRow) -> bool:
        if row in self.rows:
            self.rows.remove(row)
            return True
        return False

    async def count_rules(self) -> int:
        return len(self.rows)
