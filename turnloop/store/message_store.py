"""Append-only message persistence with SQLite storage."""

import asyncio
import json
from pathlib import Path

import aiosqlite

from turnloop.config import get_config
from turnloop.logging import get_logger
from turnloop.messages import TurnMessage

log = get_logger(__name__)


class MessageStore:
    """Per-task message history backed by SQLite.

    Writes are serialized through an ``asyncio.Lock`` so several loops can
    share one store.
    """

    def __init__(self, db_path: Path | str | None = None):
        """Initialize message store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            self.db_path = get_config().resolved_messages_db()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_task_seq ON messages(task_id, seq)"
            )
            await self._db.commit()
        return self._db

    async def append(self, task_id: str, message: TurnMessage) -> None:
        """Append one message to a task's history."""
        async with self._lock:
            db = await self._ensure_db()
            await db.execute(
                """
                INSERT INTO messages (task_id, message_id, role, payload, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    task_id,
                    message.id,
                    message.role,
                    json.dumps(message.to_dict()),
                    message.timestamp,
                ),
            )
            await db.commit()
        log.debug("Message appended", task_id=task_id, role=message.role, message_id=message.id)

    async def read_all(self, task_id: str) -> list[TurnMessage]:
        """Return a task's full history in append order."""
        db = await self._ensure_db()
        async with db.execute(
            "SELECT payload FROM messages WHERE task_id = ? ORDER BY seq ASC",
            (task_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [TurnMessage.from_dict(json.loads(row[0])) for row in rows]

    async def delete_task(self, task_id: str) -> int:
        """Delete a task's history; returns the number of removed messages."""
        async with self._lock:
            db = await self._ensure_db()
            cursor = await db.execute("DELETE FROM messages WHERE task_id = ?", (task_id,))
            await db.commit()
        return cursor.rowcount

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
