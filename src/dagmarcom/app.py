"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

import asyncio

import uvicorn

from dagmarcom.ai.client import AIClient, OpenAIClient
from dagmarcom.api.webhook import create_api
from dagmarcom.config import AppConfig
from dagmarcom.core.continuity import ContinuityPolicy
from dagmarcom.core.dispatcher import QueueDispatcher
from dagmarcom.log import get_logger
from dagmarcom.messenger.email_adapter import EmailSender, EmailService
from dagmarcom.messenger.whatsapp import WhatsAppSender
from dagmarcom.services.scheduler import SchedulerService
from dagmarcom.storage.audit import AuditLog
from dagmarcom.storage.conversation_store import ConversationStore
from dagmarcom.storage.database import Database
from dagmarcom.storage.settings_store import SettingsStore

logger = get_logger(__name__)

SHUTDOWN_DRAIN_TIMEOUT = 30


class DagmarApp:
    """Top-level application orchestrator.

    Assumes it is the only process using the database; see QueueDispatcher.
    """

    def __init__(self, config: AppConfig):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.store = ConversationStore(self.db)
        self.settings = SettingsStore(self.db)
        self.audit = AuditLog(self.db)
        self.ai_client = self._create_ai_client()
        self.whatsapp = WhatsAppSender(config.whatsapp, self.audit)
        self.dispatcher = QueueDispatcher(
            store=self.store,
            settings=self.settings,
            ai_client=self.ai_client,
            channel=self.whatsapp,
            audit=self.audit,
            policy=ContinuityPolicy.from_config(config.conversation),
            fallback_message=config.conversation.fallback_message,
        )
        self.email_service = EmailService(
            config.email,
            settings=self.settings,
            ai_client=self.ai_client,
            sender=EmailSender(config.email),
            audit=self.audit,
        )
        self.scheduler = SchedulerService(config.scheduler)
        self.api = create_api(self.dispatcher, self.store, self.audit, config.whatsapp)

    async def start(self) -> None:
        """Initialize storage and background jobs."""
        # 1. Database
        await self.db.initialize()

        # 2. Maintenance jobs
        self.scheduler.schedule_cleanup(
            self.store, self.audit, self.config.conversation.retention_days
        )
        if self.config.email.enabled:
            self.scheduler.schedule_email_polling(self.email_service, self.config.email.poll_minutes)
        await self.scheduler.start()

        if not self.config.whatsapp.configured:
            logger.warning("whatsapp_dry_run", hint="set whatsapp.token and whatsapp.phone_number_id")
        logger.info(
            "dagmarcom_started",
            model=self.ai_client.model_name,
            email_enabled=self.config.email.enabled,
        )

    async def serve(self) -> None:
        """Serve the HTTP API until uvicorn receives a shutdown signal."""
        server = uvicorn.Server(
            uvicorn.Config(
                self.api,
                host=self.config.server.host,
                port=self.config.server.port,
                log_config=None,
                lifespan="off",
            )
        )
        await server.serve()

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        await self.scheduler.stop()
        try:
            await asyncio.wait_for(self.dispatcher.wait_idle(), timeout=SHUTDOWN_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("shutdown_drain_timeout", timeout=SHUTDOWN_DRAIN_TIMEOUT)
        await self.audit.flush()
        await self.whatsapp.close()
        await self.db.close()
        logger.info("dagmarcom_stopped")

    def _create_ai_client(self) -> AIClient:
        if not self.config.openai:
            raise ValueError("No 'openai' section in config")
        return OpenAIClient(self.config.openai)
