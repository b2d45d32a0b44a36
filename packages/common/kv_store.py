"""
Durable key-value store with per-record TTL

Backs the normalization cache and the LLM usage records. Documents are JSON
objects keyed by a string id inside a namespace (one table per namespace in
PostgreSQL, one dict per namespace in memory).

Implementations:
- PostgresKeyValueStore: SQLAlchemy async + raw SQL over JSONB tables
- MemoryKeyValueStore: process-local, for development and tests
"""
import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import text

from packages.common.database import DatabaseSessionManager

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyValueStore(ABC):
    """
    Document store interface.

    - get(): returns the document or None (expired documents are misses)
    - put(): upserts the document; ttl_seconds=None keeps it forever
    - top(): highest documents by a numeric field, descending
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def put(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def top(self, limit: int, order_field: str) -> List[Dict[str, Any]]:
        pass


class MemoryKeyValueStore(KeyValueStore):
    """In-process store. Expiry is checked lazily on read."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._data: Dict[str, Tuple[Dict[str, Any], Optional[datetime]]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _expired(self, expires_at: Optional[datetime]) -> bool:
        return expires_at is not None and expires_at <= self._clock()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            record = self._data.get(key)
            if record is None:
                return None
            value, expires_at = record
            if self._expired(expires_at):
                del self._data[key]
                return None
            # Callers get a copy; stored documents are never shared
            return json.loads(json.dumps(value))

    async def put(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        async with self._lock:
            self._data[key] = (json.loads(json.dumps(value, default=str)), expires_at)

    async def top(self, limit: int, order_field: str) -> List[Dict[str, Any]]:
        async with self._lock:
            live = [
                value for value, expires_at in self._data.values()
                if not self._expired(expires_at)
            ]
        live.sort(key=lambda doc: doc.get(order_field) or 0, reverse=True)
        return [json.loads(json.dumps(doc)) for doc in live[:limit]]

    def __len__(self) -> int:
        return len(self._data)


class PostgresKeyValueStore(KeyValueStore):
    """
    JSONB-backed store in the `pipeline` schema.

    Table layout (see migration 001_pipeline_stores):
        key TEXT PRIMARY KEY, doc JSONB, expires_at TIMESTAMPTZ, updated_at TIMESTAMPTZ
    """

    ALLOWED_TABLES = {"normalization_cache", "llm_usage"}

    def __init__(self, db: DatabaseSessionManager, table: str):
        if table not in self.ALLOWED_TABLES:
            raise ValueError(f"Unknown key-value table: {table}")
        self.db = db
        self.table = f"pipeline.{table}"

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        query = text(f"""
            SELECT doc
            FROM {self.table}
            WHERE key = :key
              AND (expires_at IS NULL OR expires_at > NOW())
        """)

        async with self.db.session() as session:
            result = await session.execute(query, {"key": key})
            row = result.fetchone()

        if row is None:
            return None
        doc = row.doc
        # asyncpg returns JSONB as str unless a codec is registered
        return json.loads(doc) if isinstance(doc, str) else doc

    async def put(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        expires_at = _utcnow() + timedelta(seconds=ttl_seconds) if ttl_seconds else None

        query = text(f"""
            INSERT INTO {self.table} (key, doc, expires_at, updated_at)
            VALUES (:key, CAST(:doc AS JSONB), :expires_at, NOW())
            ON CONFLICT (key) DO UPDATE SET
                doc = EXCLUDED.doc,
                expires_at = EXCLUDED.expires_at,
                updated_at = NOW()
        """)

        async with self.db.session() as session:
            await session.execute(query, {
                "key": key,
                "doc": json.dumps(value, default=str),
                "expires_at": expires_at,
            })

    async def top(self, limit: int, order_field: str) -> List[Dict[str, Any]]:
        query = text(f"""
            SELECT doc
            FROM {self.table}
            WHERE expires_at IS NULL OR expires_at > NOW()
            ORDER BY COALESCE((doc ->> :order_field)::numeric, 0) DESC
            LIMIT :limit
        """)

        async with self.db.session() as session:
            result = await session.execute(query, {"order_field": order_field, "limit": limit})
            rows = result.fetchall()

        return [json.loads(row.doc) if isinstance(row.doc, str) else row.doc for row in rows]
