"""Per-phone message queue: drains pending messages into one AI turn at a time."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable

from dagmarcom.ai.client import AIClient, AIProviderError
from dagmarcom.config import DEFAULT_FALLBACK_MESSAGE
from dagmarcom.core.continuity import ContinuityPolicy
from dagmarcom.core.prompt import build_outbound_text, build_user_input, select_fragment
from dagmarcom.core.types import Direction
from dagmarcom.log import get_logger
from dagmarcom.messenger.base import OutboundChannel
from dagmarcom.storage.audit import AuditLog
from dagmarcom.storage.conversation_store import ConversationStore
from dagmarcom.storage.models import PendingMessage, Session, utcnow
from dagmarcom.storage.settings_store import ReplySettings, SettingsStore

logger = get_logger(__name__)


class QueueDispatcher:
    """Serialises AI turns per identity and batches messages that pile up.

    Exclusion is an in-memory set of identities with a drain in flight, so
    the dispatcher is only correct when a single process owns the database.
    The set is empty after a restart; pending rows survive in the store and
    are picked up by the next trigger for that identity.
    """

    def __init__(
        self,
        store: ConversationStore,
        settings: SettingsStore,
        ai_client: AIClient,
        channel: OutboundChannel,
        audit: AuditLog,
        policy: ContinuityPolicy,
        fallback_message: str = DEFAULT_FALLBACK_MESSAGE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._settings = settings
        self._ai_client = ai_client
        self._channel = channel
        self._audit = audit
        self._policy = policy
        self._fallback_message = fallback_message
        self._clock = clock
        self._active: set[str] = set()
        self._recheck: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    def is_draining(self, identity: str) -> bool:
        return identity in self._active

    async def enqueue_message(self, identity: str, text: str) -> asyncio.Task[None]:
        """Persist an inbound message and start draining in the background.

        Returns as soon as the message is stored; the returned task finishes
        when the drain it triggered (possibly a no-op) is done.
        """
        await self._store.enqueue_pending(identity, text, self._clock())
        task = asyncio.create_task(self.process_queue(identity))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until every background drain has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def process_queue(self, identity: str) -> None:
        """Drain all pending messages for *identity*, one batch per AI turn."""
        if identity in self._active:
            # The running drain re-reads the queue before it exits.
            self._recheck.add(identity)
            logger.debug("queue_already_draining", identity=identity)
            return
        self._active.add(identity)

        try:
            while True:
                self._recheck.discard(identity)
                pending = await self._store.fetch_unprocessed(identity)
                if not pending:
                    if identity in self._recheck:
                        continue
                    break

                session = await self._store.ensure_session(identity)
                now = self._clock()
                if self._policy.should_reset(session, now):
                    await self._send_retention_notice(identity)
                    await self._store.reset_session(identity)
                    session = await self._store.ensure_session(identity)

                settings = await self._settings.get_snapshot()
                if not settings.auto_enabled:
                    logger.info("auto_reply_disabled", identity=identity, pending=len(pending))
                    break

                await self._run_turn(identity, session, settings, pending, now)
        except Exception as e:
            logger.error("queue_processing_failed", identity=identity, error=str(e), exc_info=True)
        finally:
            self._active.discard(identity)
            self._recheck.discard(identity)

    async def _run_turn(
        self,
        identity: str,
        session: Session,
        settings: ReplySettings,
        pending: list[PendingMessage],
        now: datetime,
    ) -> None:
        turn = session.turn_count
        instructions = select_fragment(
            turn, settings.instructions_first, settings.instructions_next, settings.instructions_always
        )
        developer_content = select_fragment(
            turn, settings.role_first, settings.role_next, settings.role_always
        )
        context = select_fragment(
            turn, settings.context_first, settings.context_next, settings.context_always
        )
        input_suffix = select_fragment(
            turn, settings.input_suffix_first, settings.input_suffix_next, settings.input_suffix_always
        )
        user_input = build_user_input(context, (p.body for p in pending), input_suffix)
        token = self._policy.resolve_token(session, now)
        through_id = max(p.id for p in pending if p.id is not None)

        self._audit.record(
            identity,
            Direction.IN,
            {"userInput": user_input, "developerContent": developer_content, "responseId": token},
        )
        self._audit.record(
            identity,
            Direction.OPENAI_REQ,
            {"model": self._ai_client.model_name, "batch": len(pending), "turn": turn},
        )

        try:
            reply = await self._ai_client.complete_turn(
                instructions=instructions,
                developer_content=developer_content,
                user_input=user_input,
                continuation_token=token,
            )
        except AIProviderError as e:
            logger.error("ai_turn_failed", identity=identity, batch=len(pending), error=str(e))
            self._audit.record(identity, Direction.ERROR, {"error": str(e), "batch": len(pending)})
            await self._safe_send(identity, self._fallback_message)
            # The failed batch is consumed, never retried.
            await self._store.mark_processed(identity, through_id)
            return

        self._audit.record(
            identity,
            Direction.OPENAI_RES,
            {"responseId": reply.continuation_token, "text": reply.text},
        )
        outbound = build_outbound_text(
            turn,
            settings.output_prefix_first,
            settings.output_prefix_next,
            settings.output_prefix_always,
            reply.text,
        )
        await self._safe_send(identity, outbound)

        await self._store.mark_processed(identity, through_id)
        await self._store.update_session(
            identity,
            token=reply.continuation_token,
            responded_at=self._clock(),
            increment_turn=True,
        )
        logger.info(
            "ai_turn_completed",
            identity=identity,
            turn=turn + 1,
            batch=len(pending),
            continued=token is not None,
        )

    async def _send_retention_notice(self, identity: str) -> None:
        await self._safe_send(identity, self._policy.retention_notice(identity))
        self._audit.record(identity, Direction.OUT, {"retentionNotice": True, "phone": identity})
        logger.info("retention_notice_sent", identity=identity)

    async def _safe_send(self, identity: str, text: str) -> None:
        """Send via the outbound channel; a failed delivery is logged, not raised."""
        try:
            await self._channel.send_message(identity, text)
        except Exception as e:
            logger.error(
                "outbound_send_failed",
                identity=identity,
                channel=self._channel.channel_name,
                error=str(e),
            )
