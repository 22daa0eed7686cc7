"""SQLite-backed key/value account data for the bridge.

Holds small bits of state that must survive restarts, such as which avatar
URL was last uploaded for the bridge bot.  Values are opaque strings grouped
by an object ID (e.g. ``"bridge"``).

Uses ``aiosqlite`` with WAL mode for crash-safe, single-process access.
"""

from __future__ import annotations

import logging
import time

import aiosqlite

log = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS account_data (
    object_id  TEXT NOT NULL,
    key        TEXT NOT NULL,
    value      TEXT NOT NULL,
    updated_at REAL NOT NULL,
    PRIMARY KEY (object_id, key)
);
"""


class AccountDataStore:
    """Async SQLite store for per-object key/value data.

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"`` for
            in-memory use (tests).
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the database and create the schema."""
        self._db = await aiosqlite.connect(self._db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        log.info("Account data database opened: %s", self._db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def get_account_data(self, object_id: str) -> dict[str, str]:
        """Return every key/value pair stored for *object_id*."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT key, value FROM account_data WHERE object_id = ?",
            (object_id,),
        )
        return {key: value for key, value in await cursor.fetchall()}

    async def set_account_data(self, object_id: str, data: dict[str, str]) -> None:
        """Replace all data stored for *object_id* with *data*."""
        assert self._db is not None
        now = time.time()
        await self._db.execute(
            "DELETE FROM account_data WHERE object_id = ?",
            (object_id,),
        )
        await self._db.executemany(
            "INSERT INTO account_data (object_id, key, value, updated_at) "
            "VALUES (?, ?, ?, ?)",
            [(object_id, key, str(value), now) for key, value in data.items()],
        )
        await self._db.commit()
