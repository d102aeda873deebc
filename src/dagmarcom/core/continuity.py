"""Decide whether a conversation continues or starts fresh after inactivity."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import StrEnum
from typing import Optional
from urllib.parse import urlencode

from dagmarcom.config import DEFAULT_RETENTION_NOTICE, ConversationConfig
from dagmarcom.storage.models import Session

DEFAULT_INACTIVITY_WINDOW = timedelta(hours=8)
DEFAULT_RETENTION_DAYS = 30


class ContinuityState(StrEnum):
    FRESH = "fresh"
    CONTINUING = "continuing"


class ContinuityPolicy:
    """Inactivity-window rules for reusing the model's continuation token.

    A session is CONTINUING while it holds a token and its last reply is no
    older than the window. Once the window lapses the dispatcher sends the
    retention notice, clears the session and proceeds FRESH. FRESH becomes
    CONTINUING implicitly when a reply is stored with a token.
    """

    def __init__(
        self,
        inactivity_window: timedelta = DEFAULT_INACTIVITY_WINDOW,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        delete_base_url: str = "",
        notice_template: str = DEFAULT_RETENTION_NOTICE,
    ):
        self.inactivity_window = inactivity_window
        self.retention_days = retention_days
        self._delete_base_url = delete_base_url
        self._notice_template = notice_template

    @classmethod
    def from_config(cls, config: ConversationConfig) -> ContinuityPolicy:
        return cls(
            inactivity_window=timedelta(hours=config.inactivity_hours),
            retention_days=config.retention_days,
            delete_base_url=config.delete_base_url,
            notice_template=config.retention_notice,
        )

    def _within_window(self, session: Session, now: datetime) -> bool:
        if session.last_response_at is None:
            return False
        return now - session.last_response_at <= self.inactivity_window

    def state(self, session: Session, now: datetime) -> ContinuityState:
        if session.last_continuation_token and self._within_window(session, now):
            return ContinuityState.CONTINUING
        return ContinuityState.FRESH

    def should_reset(self, session: Session, now: datetime) -> bool:
        """True when a token is held but the conversation went quiet too long."""
        return (
            bool(session.last_continuation_token)
            and session.last_response_at is not None
            and not self._within_window(session, now)
        )

    def resolve_token(self, session: Session, now: datetime) -> Optional[str]:
        if self.state(session, now) is ContinuityState.CONTINUING:
            return session.last_continuation_token
        return None

    def deletion_link(self, identity: str) -> str:
        return f"{self._delete_base_url}?{urlencode({'phone': identity})}"

    def retention_notice(self, identity: str) -> str:
        hours = self.inactivity_window.total_seconds() / 3600
        return self._notice_template.format(
            hours=f"{hours:g}",
            retention_days=self.retention_days,
            delete_url=self.deletion_link(identity),
        )
