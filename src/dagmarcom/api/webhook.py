"""Inbound HTTP surface: health check, WhatsApp webhook, self-service deletion."""

from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from dagmarcom.config import WhatsAppConfig
from dagmarcom.core.dispatcher import QueueDispatcher
from dagmarcom.core.types import Direction
from dagmarcom.log import get_logger
from dagmarcom.messenger.whatsapp import extract_whatsapp_message
from dagmarcom.storage.audit import AuditLog
from dagmarcom.storage.conversation_store import ConversationStore

logger = get_logger(__name__)


def create_api(
    dispatcher: QueueDispatcher,
    store: ConversationStore,
    audit: AuditLog,
    whatsapp_config: WhatsAppConfig,
) -> FastAPI:
    """Build the FastAPI app. Settings CRUD and the admin UI live elsewhere."""
    app = FastAPI(title="DagmarCom", version="0.1.0")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}

    @app.get("/webhook/whatsapp", response_class=PlainTextResponse)
    async def whatsapp_verify(
        hub_mode: str = Query(default="", alias="hub.mode"),
        hub_verify_token: str = Query(default="", alias="hub.verify_token"),
        hub_challenge: str = Query(default="", alias="hub.challenge"),
    ) -> str:
        expected = whatsapp_config.verify_token
        if hub_mode == "subscribe" and expected and hmac.compare_digest(hub_verify_token, expected):
            return hub_challenge
        raise HTTPException(status_code=403, detail="invalid verify token")

    @app.post("/webhook/whatsapp")
    async def whatsapp_webhook(request: Request) -> Any:
        try:
            body = await request.json()
        except ValueError:
            body = None
        try:
            phone, text = extract_whatsapp_message(body)
            # Every payload is audited, status callbacks included.
            audit.record(phone, Direction.IN, body)

            if not phone or not text:
                logger.debug("webhook_without_message", body=body)
                return {"ok": True, "ignored": True}

            await dispatcher.enqueue_message(phone, text)
            return {"ok": True, "queued": True}
        except Exception as e:
            logger.error("webhook_error", error=str(e), exc_info=True)
            return JSONResponse(status_code=500, content={"error": "internal_error"})

    @app.get("/delete", response_class=PlainTextResponse)
    async def delete_data(phone: str = Query(default="")) -> str:
        if not phone:
            raise HTTPException(status_code=400, detail="phone required")
        await store.delete_identity(phone)
        return "Data byla smazana."

    return app
