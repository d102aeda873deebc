"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """Per-identity conversation state."""

    identity: str
    last_continuation_token: Optional[str] = None
    last_response_at: Optional[datetime] = None
    turn_count: int = 0
    processing: bool = False


@dataclass
class PendingMessage:
    identity: str
    body: str
    received_at: datetime
    processed: bool = False
    id: Optional[int] = None


@dataclass
class AuditEntry:
    direction: str
    payload: Any
    identity: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None
