"""WhatsApp Cloud API channel: outbound sender and webhook payload parsing."""

from __future__ import annotations

from typing import Any, Optional

import httpx

from dagmarcom.config import WhatsAppConfig
from dagmarcom.core.types import Channel, Direction
from dagmarcom.log import get_logger
from dagmarcom.messenger.base import DeliveryError, OutboundChannel
from dagmarcom.storage.audit import AuditLog

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"


def extract_whatsapp_message(payload: Any) -> tuple[Optional[str], Optional[str]]:
    """Pull ``(phone, text)`` out of a Meta webhook payload.

    Only the first text message of the first change is considered. Flat test
    payloads ``{"phone": ..., "text": ...}`` are accepted as well. Status
    callbacks (delivered/read receipts) yield ``(None, None)``.
    """
    if not isinstance(payload, dict):
        return None, None

    message: dict[str, Any] = {}
    entries = payload.get("entry")
    if isinstance(entries, list) and entries and isinstance(entries[0], dict):
        changes = entries[0].get("changes")
        if isinstance(changes, list) and changes and isinstance(changes[0], dict):
            value = changes[0].get("value") or {}
            messages = value.get("messages") if isinstance(value, dict) else None
            if isinstance(messages, list) and messages and isinstance(messages[0], dict):
                message = messages[0]

    text_block = message.get("text")
    phone = message.get("from") or payload.get("phone")
    text = (text_block.get("body") if isinstance(text_block, dict) else None) or payload.get("text")
    return _non_empty_str(phone), _non_empty_str(text)


def _non_empty_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


class WhatsAppSender(OutboundChannel):
    """Sends text messages through the Graph API ``/messages`` endpoint.

    Without a token or phone number id the sender runs dry: the message is
    logged and audited but not sent.
    """

    def __init__(
        self,
        config: WhatsAppConfig,
        audit: AuditLog,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config
        self._audit = audit
        self._client = client or httpx.AsyncClient(base_url=GRAPH_BASE_URL, timeout=config.timeout)

    @property
    def channel_name(self) -> str:
        return Channel.WHATSAPP

    async def send_message(self, recipient: str, text: str) -> dict[str, Any]:
        if not self._config.configured:
            logger.warning("whatsapp_credentials_missing", phone=recipient, text=text)
            self._audit.record(recipient, Direction.OUT, {"text": text, "dryRun": True})
            return {"dryRun": True}

        payload = {
            "messaging_product": "whatsapp",
            "to": recipient,
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        try:
            response = await self._client.post(
                f"/{self._config.api_version}/{self._config.phone_number_id}/messages",
                json=payload,
                headers={"Authorization": f"Bearer {self._config.token}"},
            )
        except httpx.RequestError as e:
            logger.error("whatsapp_transport_error", phone=recipient, error=str(e))
            raise DeliveryError(f"WhatsApp transport error: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}
        self._audit.record(
            recipient,
            Direction.OUT,
            {"payload": payload, "response": data, "status": response.status_code},
        )

        if response.is_error:
            raise DeliveryError(f"WhatsApp API error {response.status_code}")
        logger.info("whatsapp_message_sent", phone=recipient, status=response.status_code)
        return data

    async def close(self) -> None:
        await self._client.aclose()
