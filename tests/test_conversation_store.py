"""Tests for ConversationStore."""

import asyncio
from datetime import datetime, timedelta, timezone

PHONE = "+420700000001"
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


async def _count(db, sql, *params):
    cursor = await db.conn.execute(sql, params)
    row = await cursor.fetchone()
    return row[0]


class TestSessions:
    async def test_ensure_session_creates_zero_valued_row(self, store):
        session = await store.ensure_session(PHONE)
        assert session.identity == PHONE
        assert session.last_continuation_token is None
        assert session.last_response_at is None
        assert session.turn_count == 0
        assert session.processing is False

    async def test_concurrent_ensure_session_creates_one_row(self, store, db):
        first, second = await asyncio.gather(store.ensure_session(PHONE), store.ensure_session(PHONE))
        assert first == second
        assert await _count(db, "SELECT count(*) FROM sessions WHERE phone = ?", PHONE) == 1

    async def test_update_session_increments_turn(self, store):
        await store.ensure_session(PHONE)
        await store.update_session(PHONE, token="resp_1", responded_at=T0)
        await store.update_session(PHONE, token="resp_2", responded_at=T0 + timedelta(minutes=5))

        session = await store.ensure_session(PHONE)
        assert session.last_continuation_token == "resp_2"
        assert session.last_response_at == T0 + timedelta(minutes=5)
        assert session.turn_count == 2

    async def test_update_session_with_empty_token_stores_null(self, store):
        await store.ensure_session(PHONE)
        await store.update_session(PHONE, token="", responded_at=T0)
        session = await store.ensure_session(PHONE)
        assert session.last_continuation_token is None
        assert session.turn_count == 1

    async def test_reset_session(self, store):
        await store.ensure_session(PHONE)
        await store.update_session(PHONE, token="resp_1", responded_at=T0)
        await store.reset_session(PHONE)

        session = await store.ensure_session(PHONE)
        assert session.last_continuation_token is None
        assert session.last_response_at is None
        assert session.turn_count == 0


class TestQueue:
    async def test_fetch_unprocessed_orders_by_receipt(self, store):
        await store.enqueue_pending(PHONE, "second", T0 + timedelta(seconds=2))
        await store.enqueue_pending(PHONE, "first", T0 + timedelta(seconds=1))
        await store.enqueue_pending("+420700000002", "other", T0)

        pending = await store.fetch_unprocessed(PHONE)
        assert [p.body for p in pending] == ["first", "second"]
        assert all(not p.processed for p in pending)

    async def test_fetch_unprocessed_empty(self, store):
        assert await store.fetch_unprocessed(PHONE) == []

    async def test_mark_processed_leaves_later_messages(self, store):
        first = await store.enqueue_pending(PHONE, "m1", T0)
        batch = await store.fetch_unprocessed(PHONE)
        await store.enqueue_pending(PHONE, "m2", T0 + timedelta(seconds=1))

        marked = await store.mark_processed(PHONE, max(p.id for p in batch))

        assert marked == 1
        remaining = await store.fetch_unprocessed(PHONE)
        assert [p.body for p in remaining] == ["m2"]
        assert first.id == batch[0].id

    async def test_delete_identity(self, store, audit, db):
        await store.enqueue_pending(PHONE, "m1", T0)
        await store.ensure_session(PHONE)
        audit.record(PHONE, "IN", {"text": "m1"})
        audit.record("+420700000002", "IN", {"text": "keep"})
        await audit.flush()

        counts = await store.delete_identity(PHONE)

        assert counts == {"message_queue": 1, "logs": 1, "sessions": 1}
        assert await _count(db, "SELECT count(*) FROM logs") == 1

    async def test_purge_expired(self, store, db):
        await store.enqueue_pending(PHONE, "old", T0 - timedelta(days=40))
        await store.enqueue_pending(PHONE, "new", T0)
        await store.ensure_session(PHONE)
        await store.update_session(PHONE, token="resp_1", responded_at=T0 - timedelta(days=31))
        await store.ensure_session("+420700000002")

        deleted = await store.purge_expired(T0 - timedelta(days=30))

        assert deleted == {"message_queue": 1, "sessions": 1}
        assert [p.body for p in await store.fetch_unprocessed(PHONE)] == ["new"]
        assert await _count(db, "SELECT count(*) FROM sessions") == 1
