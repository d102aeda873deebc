"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio

from dagmarcom.ai.client import AIClient, AIProviderError, AIResponse
from dagmarcom.core.continuity import ContinuityPolicy
from dagmarcom.core.dispatcher import QueueDispatcher
from dagmarcom.messenger.base import DeliveryError, OutboundChannel
from dagmarcom.storage.audit import AuditLog
from dagmarcom.storage.conversation_store import ConversationStore
from dagmarcom.storage.database import Database
from dagmarcom.storage.settings_store import SettingsStore

FALLBACK = "Sorry, try again later."


class FakeAIClient(AIClient):
    """Records every call; replies with queued texts or ``reply N``."""

    def __init__(self, replies: Optional[list[str]] = None):
        self.calls: list[dict] = []
        self.replies = list(replies or [])
        self.fail = False
        self.gate: Optional[asyncio.Event] = None

    @property
    def model_name(self) -> str:
        return "fake-model"

    async def complete_turn(self, instructions, developer_content, user_input, continuation_token=None):
        self.calls.append(
            {
                "instructions": instructions,
                "developer_content": developer_content,
                "user_input": user_input,
                "continuation_token": continuation_token,
            }
        )
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise AIProviderError("OpenAI API error 500")
        n = len(self.calls)
        text = self.replies.pop(0) if self.replies else f"reply {n}"
        return AIResponse(text=text, continuation_token=f"resp_{n}")


class FakeChannel(OutboundChannel):
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    @property
    def channel_name(self) -> str:
        return "fake"

    async def send_message(self, recipient: str, text: str) -> None:
        self.sent.append((recipient, text))
        if self.fail:
            raise DeliveryError("WhatsApp API error 503")


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest_asyncio.fixture
async def db():
    """Create in-memory database for testing."""
    database = Database(":memory:")
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def store(db):
    return ConversationStore(db)


@pytest.fixture
def settings(db):
    return SettingsStore(db)


@pytest_asyncio.fixture
async def audit(db):
    log = AuditLog(db)
    yield log
    await log.flush()


@pytest.fixture
def ai_client():
    return FakeAIClient()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    return ContinuityPolicy(
        inactivity_window=timedelta(hours=8),
        retention_days=30,
        delete_base_url="https://example.test/delete",
    )


@pytest.fixture
def dispatcher(store, settings, ai_client, channel, audit, policy, clock):
    return QueueDispatcher(
        store=store,
        settings=settings,
        ai_client=ai_client,
        channel=channel,
        audit=audit,
        policy=policy,
        fallback_message=FALLBACK,
        clock=clock,
    )
