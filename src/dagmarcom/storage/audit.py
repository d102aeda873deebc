"""Append-only audit log of inbound/outbound payloads and errors."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Optional

import aiosqlite

from dagmarcom.log import get_logger
from dagmarcom.storage.database import Database
from dagmarcom.storage.models import AuditEntry

logger = get_logger(__name__)


class AuditLog:
    """Fire-and-forget writer for the ``logs`` table.

    ``record`` never raises and never blocks the caller: the insert runs as a
    background task and a failed write is only logged.
    """

    def __init__(self, db: Database):
        self._db = db
        self._pending: set[asyncio.Task[None]] = set()

    def record(self, identity: Optional[str], direction: str, payload: Any) -> None:
        entry = AuditEntry(identity=identity or None, direction=str(direction), payload=payload)
        try:
            task = asyncio.get_running_loop().create_task(self._write(entry))
        except RuntimeError:
            logger.warning("audit_no_event_loop", direction=entry.direction)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, entry: AuditEntry) -> None:
        try:
            await self._db.conn.execute(
                "INSERT INTO logs (phone, direction, payload, created_at) VALUES (?, ?, ?, ?)",
                (
                    entry.identity,
                    entry.direction,
                    json.dumps(entry.payload, ensure_ascii=False, default=str),
                    entry.created_at.isoformat(timespec="microseconds"),
                ),
            )
            await self._db.conn.commit()
        except (aiosqlite.Error, RuntimeError, TypeError, ValueError) as e:
            logger.error("audit_insert_failed", direction=entry.direction, error=str(e))

    async def flush(self) -> None:
        """Wait for every queued write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def entries(
        self, identity: Optional[str] = None, direction: Optional[str] = None, limit: int = 200
    ) -> list[AuditEntry]:
        """Most recent entries first, optionally filtered."""
        clauses: list[str] = []
        params: list[Any] = []
        if identity:
            clauses.append("phone = ?")
            params.append(identity)
        if direction:
            clauses.append("direction = ?")
            params.append(str(direction))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._db.conn.execute(
            f"SELECT * FROM logs {where} ORDER BY created_at DESC, id DESC LIMIT ?",
            (*params, limit),
        )
        rows = await cursor.fetchall()
        return [
            AuditEntry(
                id=row["id"],
                identity=row["phone"],
                direction=row["direction"],
                payload=json.loads(row["payload"]),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    async def purge_expired(self, cutoff: datetime) -> int:
        cursor = await self._db.conn.execute(
            "DELETE FROM logs WHERE created_at < ?",
            (cutoff.isoformat(timespec="microseconds"),),
        )
        await self._db.conn.commit()
        return cursor.rowcount

