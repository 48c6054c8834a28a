"""Cross-execution memory used by ``memory`` nodes with ``scope: owner``.

Values are JSON documents addressed by ``(owner_id, namespace, key)``.
``InMemoryMemoryStore`` is process-local; ``SqliteMemoryStore`` persists to
the same kind of aiosqlite connection the ExecutionRegistry uses.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

import aiosqlite

from agentflow.models import utcnow

logger = logging.getLogger(__name__)


class MemoryStore(Protocol):
    async def get(self, owner_id: str, namespace: str, key: str) -> Any: ...

    async def set(self, owner_id: str, namespace: str, key: str, value: Any) -> None: ...

    async def append(self, owner_id: str, namespace: str, key: str, value: Any) -> list[Any]: ...

    async def delete(self, owner_id: str, namespace: str, key: str) -> bool: ...


def append_value(current: Any, value: Any) -> list[Any]:
    if current is None:
        return [value]
    if isinstance(current, list):
        return [*current, value]
    return [current, value]


class InMemoryMemoryStore:
    def __init__(self) -> None:
        self._values: dict[tuple[str, str, str], Any] = {}
        self._lock = asyncio.Lock()

    async def get(self, owner_id: str, namespace: str, key: str) -> Any:
        return self._values.get((owner_id, namespace, key))

    async def set(self, owner_id: str, namespace: str, key: str, value: Any) -> None:
        self._values[(owner_id, namespace, key)] = value

    async def append(self, owner_id: str, namespace: str, key: str, value: Any) -> list[Any]:
        async with self._lock:
            updated = append_value(self._values.get((owner_id, namespace, key)), value)
            self._values[(owner_id, namespace, key)] = updated
            return updated

    async def delete(self, owner_id: str, namespace: str, key: str) -> bool:
        return self._values.pop((owner_id, namespace, key), None) is not None


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memory (
    owner_id TEXT NOT NULL,
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (owner_id, namespace, key)
);
"""


class SqliteMemoryStore:
    """Owner-scoped memory persisted in SQLite."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        await self.db.executescript(_SCHEMA_SQL)
        await self.db.commit()
        logger.info("Memory store initialized")

    async def get(self, owner_id: str, namespace: str, key: str) -> Any:
        cursor = await self.db.execute(
            "SELECT value FROM memory WHERE owner_id = ? AND namespace = ? AND key = ?",
            (owner_id, namespace, key),
        )
        row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def set(self, owner_id: str, namespace: str, key: str, value: Any) -> None:
        await self.db.execute(
            """INSERT INTO memory (owner_id, namespace, key, value, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(owner_id, namespace, key)
               DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
            (owner_id, namespace, key, json.dumps(value, default=str), utcnow().isoformat()),
        )
        await self.db.commit()

    async def append(self, owner_id: str, namespace: str, key: str, value: Any) -> list[Any]:
        async with self._lock:
            updated = append_value(await self.get(owner_id, namespace, key), value)
            await self.set(owner_id, namespace, key, updated)
            return updated

    async def delete(self, owner_id: str, namespace: str, key: str) -> bool:
        cursor = await self.db.execute(
            "DELETE FROM memory WHERE owner_id = ? AND namespace = ? AND key = ?",
            (owner_id, namespace, key),
        )
        await self.db.commit()
        return cursor.rowcount > 0
