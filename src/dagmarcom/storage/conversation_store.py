"""Conversation store: per-phone session rows and the durable inbound queue."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from dagmarcom.log import get_logger
from dagmarcom.storage.database import Database
from dagmarcom.storage.models import PendingMessage, Session

logger = get_logger(__name__)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class ConversationStore:
    """CRUD over the ``sessions`` and ``message_queue`` tables.

    Every statement is scoped to a single identity, so concurrent work on
    different phone numbers never touches the same rows.
    """

    def __init__(self, db: Database):
        self._db = db

    async def ensure_session(self, identity: str) -> Session:
        """Return the session for *identity*, creating a zero-valued one if needed."""
        await self._db.conn.execute(
            """INSERT INTO sessions (phone, response_count, processing)
               VALUES (?, 0, 0)
               ON CONFLICT(phone) DO NOTHING""",
            (identity,),
        )
        await self._db.conn.commit()
        cursor = await self._db.conn.execute(
            "SELECT * FROM sessions WHERE phone = ?", (identity,)
        )
        row = await cursor.fetchone()
        return self._row_to_session(row)

    async def enqueue_pending(
        self, identity: str, body: str, received_at: datetime
    ) -> PendingMessage:
        """Append an inbound message to the queue."""
        cursor = await self._db.conn.execute(
            "INSERT INTO message_queue (phone, body, received_at) VALUES (?, ?, ?)",
            (identity, body, _format_ts(received_at)),
        )
        await self._db.conn.commit()
        return PendingMessage(
            identity=identity,
            body=body,
            received_at=received_at,
            id=cursor.lastrowid,
        )

    async def fetch_unprocessed(self, identity: str) -> list[PendingMessage]:
        """Unprocessed messages for *identity*, oldest first."""
        cursor = await self._db.conn.execute(
            """SELECT * FROM message_queue
               WHERE phone = ? AND processed = 0
               ORDER BY received_at ASC, id ASC""",
            (identity,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_pending(row) for row in rows]

    async def mark_processed(self, identity: str, through_id: int) -> int:
        """Mark the drained batch as processed.

        Only rows up to *through_id* are touched; a message that arrived after
        the batch was read stays pending for the next drain iteration.
        """
        cursor = await self._db.conn.execute(
            """UPDATE message_queue SET processed = 1
               WHERE phone = ? AND processed = 0 AND id <= ?""",
            (identity, through_id),
        )
        await self._db.conn.commit()
        return cursor.rowcount

    async def update_session(
        self,
        identity: str,
        token: Optional[str],
        responded_at: datetime,
        increment_turn: bool = True,
    ) -> None:
        """Record a delivered reply in a single UPDATE."""
        await self._db.conn.execute(
            """UPDATE sessions
               SET last_response_id = ?,
                   last_response_at = ?,
                   response_count = response_count + ?
               WHERE phone = ?""",
            (token or None, _format_ts(responded_at), 1 if increment_turn else 0, identity),
        )
        await self._db.conn.commit()

    async def reset_session(self, identity: str) -> None:
        """Drop the continuation token and turn counter after inactivity."""
        await self._db.conn.execute(
            """UPDATE sessions
               SET last_response_id = NULL, last_response_at = NULL, response_count = 0
               WHERE phone = ?""",
            (identity,),
        )
        await self._db.conn.commit()
        logger.info("session_reset", identity=identity)

    async def delete_identity(self, identity: str) -> dict[str, int]:
        """Delete everything stored for *identity*. Returns deleted row counts."""
        counts: dict[str, int] = {}
        for table in ("message_queue", "logs", "sessions"):
            cursor = await self._db.conn.execute(
                f"DELETE FROM {table} WHERE phone = ?", (identity,)
            )
            counts[table] = cursor.rowcount
        await self._db.conn.commit()
        logger.info("identity_data_deleted", identity=identity, **counts)
        return counts

    async def purge_expired(self, cutoff: datetime) -> dict[str, int]:
        """Delete queue rows received and sessions idle since before *cutoff*."""
        queue = await self._db.conn.execute(
            "DELETE FROM message_queue WHERE received_at < ?", (_format_ts(cutoff),)
        )
        sessions = await self._db.conn.execute(
            """DELETE FROM sessions
               WHERE last_response_at IS NOT NULL AND last_response_at < ?""",
            (_format_ts(cutoff),),
        )
        await self._db.conn.commit()
        return {"message_queue": queue.rowcount, "sessions": sessions.rowcount}

    @staticmethod
    def _row_to_session(row) -> Session:
        return Session(
            identity=row["phone"],
            last_continuation_token=row["last_response_id"],
            last_response_at=_parse_ts(row["last_response_at"]),
            turn_count=row["response_count"],
            processing=bool(row["processing"]),
        )

    @staticmethod
    def _row_to_pending(row) -> PendingMessage:
        return PendingMessage(
            id=row["id"],
            identity=row["phone"],
            body=row["body"],
            received_at=datetime.fromisoformat(row["received_at"]),
            processed=bool(row["processed"]),
        )
