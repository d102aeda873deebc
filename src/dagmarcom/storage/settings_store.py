"""Reply settings persisted as JSON values in the ``settings`` table."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel

from dagmarcom.log import get_logger
from dagmarcom.storage.database import Database

logger = get_logger(__name__)


class ReplySettings(BaseModel):
    """Snapshot of the operator-editable reply settings.

    Every prompt field comes in ``first``/``next``/``always`` flavours, picked
    per turn by :func:`dagmarcom.core.prompt.select_fragment`.
    """

    auto_enabled: bool = True
    instructions_first: str = ""
    instructions_next: str = ""
    instructions_always: str = ""
    role_first: str = ""
    role_next: str = ""
    role_always: str = ""
    context_first: str = ""
    context_next: str = ""
    context_always: str = ""
    input_suffix_first: str = ""
    input_suffix_next: str = ""
    input_suffix_always: str = ""
    output_prefix_first: str = ""
    output_prefix_next: str = ""
    output_prefix_always: str = ""


class SettingsStore:
    """Read-through accessor; every call hits the database, nothing is cached."""

    def __init__(self, db: Database):
        self._db = db

    async def get_snapshot(self) -> ReplySettings:
        cursor = await self._db.conn.execute("SELECT key, value FROM settings")
        rows = await cursor.fetchall()
        known = ReplySettings.model_fields
        values: dict[str, Any] = {}
        for row in rows:
            if row["key"] not in known:
                continue
            try:
                values[row["key"]] = json.loads(row["value"])
            except json.JSONDecodeError:
                values[row["key"]] = row["value"]
        return ReplySettings(**values)

    async def update(self, values: dict[str, Any]) -> ReplySettings:
        """Persist the known keys of *values* and return the new snapshot.

        Unknown keys are ignored; values are validated against ReplySettings
        before anything is written.
        """
        current = await self.get_snapshot()
        changes = {k: v for k, v in values.items() if k in ReplySettings.model_fields}
        validated = ReplySettings(**{**current.model_dump(), **changes})
        for key in changes:
            await self._db.conn.execute(
                """INSERT INTO settings (key, value) VALUES (?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
                (key, json.dumps(getattr(validated, key), ensure_ascii=False)),
            )
        await self._db.conn.commit()
        if changes:
            logger.info("settings_saved", keys=sorted(changes))
        return validated
