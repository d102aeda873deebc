"""Tests for the per-phone queue dispatcher."""

import asyncio
from datetime import timedelta

import aiosqlite

from conftest import FALLBACK

PHONE = "+420700000001"


async def _wait_for_calls(ai_client, count, timeout=2.0):
    async def _poll():
        while len(ai_client.calls) < count:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


async def _enqueue_batch(store, clock, bodies):
    for body in bodies:
        await store.enqueue_pending(PHONE, body, clock())
        clock.advance(seconds=1)


class TestSingleTurn:
    async def test_enqueue_message_replies_and_records_session(
        self, dispatcher, ai_client, channel, store, clock
    ):
        task = await dispatcher.enqueue_message(PHONE, "Do you have parking?")
        await task

        assert len(ai_client.calls) == 1
        assert ai_client.calls[0]["user_input"] == "Do you have parking?"
        assert ai_client.calls[0]["continuation_token"] is None
        assert channel.sent == [(PHONE, "reply 1")]

        session = await store.ensure_session(PHONE)
        assert session.turn_count == 1
        assert session.last_continuation_token == "resp_1"
        assert session.last_response_at == clock.now
        assert await store.fetch_unprocessed(PHONE) == []

    async def test_second_turn_reuses_token(self, dispatcher, ai_client, clock):
        await (await dispatcher.enqueue_message(PHONE, "hello"))
        clock.advance(minutes=10)
        await (await dispatcher.enqueue_message(PHONE, "and breakfast?"))

        assert [c["continuation_token"] for c in ai_client.calls] == [None, "resp_1"]

    async def test_batch_is_joined_in_arrival_order(self, dispatcher, ai_client, store, clock):
        await _enqueue_batch(store, clock, ["m1", "m2", "m3"])

        await dispatcher.process_queue(PHONE)

        assert len(ai_client.calls) == 1
        assert ai_client.calls[0]["user_input"] == "m1\n---\nm2\n---\nm3"

    async def test_audit_trail(self, dispatcher, audit):
        await (await dispatcher.enqueue_message(PHONE, "hi"))
        await audit.flush()

        directions = {entry.direction for entry in await audit.entries(identity=PHONE)}
        assert {"IN", "OPENAI_REQ", "OPENAI_RES"} <= directions


class TestPromptSelection:
    async def test_output_prefixes_per_turn(self, dispatcher, ai_client, channel, settings, clock):
        await settings.update(
            {"output_prefix_first": "A", "output_prefix_next": "B", "output_prefix_always": "C"}
        )
        ai_client.replies = ["X", "Y"]

        await (await dispatcher.enqueue_message(PHONE, "one"))
        clock.advance(minutes=1)
        await (await dispatcher.enqueue_message(PHONE, "two"))

        assert [text for _, text in channel.sent] == ["AXC", "BYC"]

    async def test_instruction_fragments_follow_turn_count(self, dispatcher, ai_client, settings, clock):
        await settings.update(
            {
                "instructions_first": "Greet the guest.",
                "instructions_next": "Skip greetings.",
                "instructions_always": "Answer in Czech.",
                "role_always": "Hotel concierge",
                "context_first": "Hotel Chodov",
                "input_suffix_always": "\n\n---\nBe brief.",
            }
        )

        await (await dispatcher.enqueue_message(PHONE, "hi"))
        clock.advance(minutes=1)
        await (await dispatcher.enqueue_message(PHONE, "pool?"))

        first, second = ai_client.calls
        assert first["instructions"] == "Greet the guest.\nAnswer in Czech."
        assert second["instructions"] == "Skip greetings.\nAnswer in Czech."
        assert first["developer_content"] == "Hotel concierge"
        assert first["user_input"] == "Hotel Chodov\n\nhi---\nBe brief."
        assert second["user_input"] == "pool?---\nBe brief."


class TestContinuity:
    async def test_token_reused_within_window(self, dispatcher, ai_client, channel, store, clock):
        await store.ensure_session(PHONE)
        await store.update_session(PHONE, token="resp_old", responded_at=clock.now - timedelta(hours=1))

        await (await dispatcher.enqueue_message(PHONE, "still there?"))

        assert ai_client.calls[0]["continuation_token"] == "resp_old"
        assert channel.sent == [(PHONE, "reply 1")]
        assert (await store.ensure_session(PHONE)).turn_count == 2

    async def test_expired_window_sends_one_notice_and_starts_fresh(
        self, dispatcher, ai_client, channel, store, settings, clock
    ):
        await settings.update({"output_prefix_first": "Welcome! ", "output_prefix_next": "Again: "})
        await store.ensure_session(PHONE)
        await store.update_session(PHONE, token="resp_old", responded_at=clock.now - timedelta(hours=9))
        await _enqueue_batch(store, clock, ["back again"])

        await dispatcher.process_queue(PHONE)

        assert ai_client.calls[0]["continuation_token"] is None
        notices = [text for _, text in channel.sent if "example.test/delete" in text]
        assert len(notices) == 1
        assert channel.sent[0][1] == notices[0]
        assert channel.sent[1] == (PHONE, "Welcome! reply 1")

        session = await store.ensure_session(PHONE)
        assert session.turn_count == 1
        assert session.last_continuation_token == "resp_1"


class TestFailures:
    async def test_ai_failure_consumes_batch_and_sends_fallback(
        self, dispatcher, ai_client, channel, store, audit
    ):
        ai_client.fail = True
        await (await dispatcher.enqueue_message(PHONE, "poison"))

        assert channel.sent == [(PHONE, FALLBACK)]
        assert await store.fetch_unprocessed(PHONE) == []
        session = await store.ensure_session(PHONE)
        assert session.turn_count == 0
        assert session.last_continuation_token is None

        await dispatcher.process_queue(PHONE)
        assert len(ai_client.calls) == 1

        await audit.flush()
        errors = await audit.entries(identity=PHONE, direction="ERROR")
        assert len(errors) == 1

    async def test_ai_failure_then_next_batch_proceeds(self, dispatcher, ai_client, store):
        ai_client.fail = True
        await (await dispatcher.enqueue_message(PHONE, "first"))
        ai_client.fail = False
        await (await dispatcher.enqueue_message(PHONE, "second"))

        assert [c["user_input"] for c in ai_client.calls] == ["first", "second"]
        assert (await store.ensure_session(PHONE)).turn_count == 1

    async def test_delivery_failure_still_completes_turn(self, dispatcher, channel, store):
        channel.fail = True
        await (await dispatcher.enqueue_message(PHONE, "hello"))

        assert channel.sent == [(PHONE, "reply 1")]
        assert await store.fetch_unprocessed(PHONE) == []
        assert (await store.ensure_session(PHONE)).turn_count == 1

    async def test_store_error_is_logged_and_lock_released(
        self, dispatcher, ai_client, store, clock, monkeypatch
    ):
        await _enqueue_batch(store, clock, ["m1"])

        async def _broken(identity):
            raise aiosqlite.OperationalError("database is locked")

        monkeypatch.setattr(store, "fetch_unprocessed", _broken)
        await dispatcher.process_queue(PHONE)

        assert not dispatcher.is_draining(PHONE)
        assert ai_client.calls == []

        monkeypatch.undo()
        assert [p.body for p in await store.fetch_unprocessed(PHONE)] == ["m1"]

    async def test_auto_reply_disabled_leaves_queue_intact(self, dispatcher, ai_client, store, settings):
        await settings.update({"auto_enabled": False})

        await (await dispatcher.enqueue_message(PHONE, "anyone?"))

        assert ai_client.calls == []
        pending = await store.fetch_unprocessed(PHONE)
        assert [p.body for p in pending] == ["anyone?"]
        assert not pending[0].processed

        await settings.update({"auto_enabled": True})
        await dispatcher.process_queue(PHONE)
        assert ai_client.calls[0]["user_input"] == "anyone?"


class TestExclusivity:
    async def test_concurrent_trigger_does_not_duplicate_turn(self, dispatcher, ai_client, channel):
        ai_client.gate = asyncio.Event()

        first = await dispatcher.enqueue_message(PHONE, "m1")
        await _wait_for_calls(ai_client, 1)
        assert dispatcher.is_draining(PHONE)

        second = await dispatcher.enqueue_message(PHONE, "m2")
        await second
        assert len(ai_client.calls) == 1

        ai_client.gate.set()
        await first
        await dispatcher.wait_idle()

        assert [c["user_input"] for c in ai_client.calls] == ["m1", "m2"]
        assert [text for _, text in channel.sent] == ["reply 1", "reply 2"]
        assert not dispatcher.is_draining(PHONE)

    async def test_trigger_during_final_empty_read_is_not_lost(
        self, dispatcher, ai_client, store, clock, monkeypatch
    ):
        original_fetch = store.fetch_unprocessed
        triggered = False

        async def _fetch_then_race(identity):
            nonlocal triggered
            pending = await original_fetch(identity)
            if not pending and not triggered:
                triggered = True
                await store.enqueue_pending(identity, "late", clock())
                # Short-circuits: the drain in progress owns the identity.
                await dispatcher.process_queue(identity)
            return pending

        monkeypatch.setattr(store, "fetch_unprocessed", _fetch_then_race)

        await dispatcher.process_queue(PHONE)

        assert triggered
        assert [c["user_input"] for c in ai_client.calls] == ["late"]
        assert not dispatcher.is_draining(PHONE)
        assert await original_fetch(PHONE) == []

    async def test_other_identities_proceed_independently(self, dispatcher, ai_client, channel):
        ai_client.gate = asyncio.Event()

        await dispatcher.enqueue_message(PHONE, "slow")
        await dispatcher.enqueue_message("+420700000002", "also slow")
        await _wait_for_calls(ai_client, 2)

        ai_client.gate.set()
        await dispatcher.wait_idle()

        assert sorted(recipient for recipient, _ in channel.sent) == [PHONE, "+420700000002"]
