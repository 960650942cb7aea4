"""Key/value state storage with SQLite."""

import json
from pathlib import Path
from typing import Any

import aiosqlite

from skillshelf.config import get_config
from skillshelf.logging import get_logger

log = get_logger(__name__)


class KeyValueStore:
    """JSON values keyed by string, persisted in SQLite."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.store.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        # Ensure directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> None:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            await self._db.commit()

    async def get(self, key: str) -> Any:
        """Return the decoded value for ``key``, or None when absent."""
        await self._ensure_db()

        async with self._db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()

        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            log.warning("Discarding undecodable store value", key=key)
            return None

    async def set(self, key: str, value: Any) -> None:
        """Store ``value`` (JSON-encoded) under ``key``."""
        await self._ensure_db()

        await self._db.execute(
            "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
            (key, json.dumps(value)),
        )
        await self._db.commit()

    async def delete(self, key: str) -> bool:
        """Delete ``key``.

        Returns:
            True if deleted, False if not found
        """
        await self._ensure_db()

        cursor = await self._db.execute("DELETE FROM kv WHERE key = ?", (key,))
        await self._db.commit()

        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


# Global store
_store: KeyValueStore | None = None


def get_store() -> KeyValueStore:
    """Get the global key/value store."""
    global _store
    if _store is None:
        _store = KeyValueStore()
    return _store


def set_store(store: KeyValueStore) -> None:
    """Set the global key/value store."""
    global _store
    _store = store
