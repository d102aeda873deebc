"""Email channel: SMTP sender and the IMAP inbox auto-reply pass.

The stdlib ``imaplib``/``smtplib`` clients are blocking, so every network
call runs in a worker thread via ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import imaplib
import smtplib
import time
from dataclasses import dataclass
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import make_msgid, parseaddr
from typing import Optional

from dagmarcom.ai.client import AIClient, AIProviderError
from dagmarcom.config import EmailConfig
from dagmarcom.core.types import Channel, Direction
from dagmarcom.log import get_logger
from dagmarcom.messenger.base import DeliveryError, OutboundChannel
from dagmarcom.storage.audit import AuditLog
from dagmarcom.storage.settings_store import ReplySettings, SettingsStore

logger = get_logger(__name__)

BAD_WORDS = ("viagra", "casino", "loan", "crypto", "bitcoins", "porn")
BAD_DOMAINS = (".ru", ".cn", ".su")
SPAM_SCORE_LIMIT = 5.0


@dataclass
class InboundEmail:
    uid: str
    sender: str
    sender_address: str
    subject: str
    body: str
    message_id: Optional[str] = None
    spam_score: float = 0.0


def parse_email(uid: str, raw: bytes) -> InboundEmail:
    msg = BytesParser(policy=policy.default).parsebytes(raw)
    body_part = msg.get_body(preferencelist=("plain", "html"))
    body = body_part.get_content() if body_part is not None else ""
    try:
        spam_score = float(msg.get("spam-score", 0) or 0)
    except ValueError:
        spam_score = 0.0
    sender = str(msg.get("from", "") or "")
    return InboundEmail(
        uid=uid,
        sender=sender,
        sender_address=parseaddr(sender)[1],
        subject=str(msg.get("subject", "") or ""),
        body=body,
        message_id=msg.get("message-id"),
        spam_score=spam_score,
    )


def is_spam(mail: InboundEmail) -> bool:
    subject = mail.subject.lower()
    body = mail.body.lower()
    sender = mail.sender_address.lower()
    if any(word in subject or word in body for word in BAD_WORDS):
        return True
    if any(sender.endswith(domain) for domain in BAD_DOMAINS):
        return True
    return mail.spam_score > SPAM_SCORE_LIMIT


def _next_or_first(next_value: str, first_value: str) -> str:
    return next_value or first_value or ""


def build_email_prompt(mail: InboundEmail, settings: ReplySettings) -> tuple[str, str, str]:
    """Return ``(instructions, developer_content, user_input)`` for an email.

    Emails have no session, so the ``next`` fragments are preferred and the
    ``first`` ones serve as fallback.
    """
    instructions = _next_or_first(settings.instructions_next, settings.instructions_first)
    developer_content = "\n".join(
        [
            _next_or_first(settings.role_next, settings.role_first),
            _next_or_first(settings.context_next, settings.context_first),
        ]
    ).strip()
    user_input = f"Od: {mail.sender}\nPredmet: {mail.subject}\n\n{mail.body}"
    return instructions, developer_content, user_input


def wrap_email_reply(settings: ReplySettings, ai_text: str) -> str:
    prefix = _next_or_first(settings.output_prefix_next, settings.output_prefix_first)
    return f"{prefix}{ai_text}{settings.output_prefix_always}"


def reply_subject(subject: str) -> str:
    return subject if subject.lower().startswith("re:") else f"Re: {subject}"


class EmailSender(OutboundChannel):
    """SMTP sender. Port 465 uses implicit TLS, anything else STARTTLS."""

    def __init__(self, config: EmailConfig):
        self._config = config

    @property
    def channel_name(self) -> str:
        return Channel.EMAIL

    @property
    def from_address(self) -> str:
        return self._config.smtp_user or self._config.imap_user

    def build_message(
        self,
        recipient: str,
        subject: str,
        text: str,
        in_reply_to: Optional[str] = None,
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.from_address
        msg["To"] = recipient
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        if in_reply_to:
            msg["In-Reply-To"] = in_reply_to
            msg["References"] = in_reply_to
        msg.set_content(text)
        return msg

    async def send_message(self, recipient: str, text: str) -> None:
        await self.send_email(self.build_message(recipient, "DagmarCom", text))

    async def send_email(self, msg: EmailMessage) -> None:
        if not self._config.smtp_host:
            raise DeliveryError("SMTP host not configured")
        try:
            await asyncio.to_thread(self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("smtp_send_failed", to=msg["To"], error=str(e))
            raise DeliveryError(f"SMTP error: {e}") from e
        logger.info("email_sent", to=msg["To"], subject=msg["Subject"])

    def _send_sync(self, msg: EmailMessage) -> None:
        cfg = self._config
        if cfg.smtp_port == 465:
            smtp: smtplib.SMTP = smtplib.SMTP_SSL(cfg.smtp_host, cfg.smtp_port, timeout=cfg.timeout)
        else:
            smtp = smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=cfg.timeout)
        with smtp:
            if cfg.smtp_port != 465:
                smtp.starttls()
            if cfg.smtp_user:
                smtp.login(cfg.smtp_user, cfg.smtp_pass)
            smtp.send_message(msg)


class EmailService:
    """One pass over the unseen inbox: filter spam, draft AI replies, send or store drafts."""

    def __init__(
        self,
        config: EmailConfig,
        settings: SettingsStore,
        ai_client: AIClient,
        sender: EmailSender,
        audit: AuditLog,
    ):
        self._config = config
        self._settings = settings
        self._ai_client = ai_client
        self._sender = sender
        self._audit = audit
        self._lock = asyncio.Lock()

    async def process_inbox(self) -> dict[str, int]:
        """Handle every unseen message once. Returns counts per outcome."""
        counts = {"spam": 0, "sent": 0, "draft": 0, "error": 0}
        if not self._config.enabled:
            logger.info("email_auto_reply_disabled")
            return counts
        if self._lock.locked():
            logger.debug("email_pass_already_running")
            return counts

        async with self._lock:
            settings = await self._settings.get_snapshot()
            imap = await asyncio.to_thread(self._connect)
            try:
                messages = await asyncio.to_thread(self._fetch_unseen, imap)
                for uid, raw in messages:
                    outcome = await self._handle(imap, uid, raw, settings)
                    counts[outcome] += 1
            finally:
                await asyncio.to_thread(self._logout, imap)

        logger.info("email_pass_done", **counts)
        return counts

    async def _handle(
        self, imap: imaplib.IMAP4, uid: str, raw: bytes, settings: ReplySettings
    ) -> str:
        try:
            mail = parse_email(uid, raw)
        except (LookupError, ValueError) as e:
            # Already marked \Seen by the fetch; the rest of the pass goes on.
            logger.error("email_parse_failed", uid=uid, error=str(e))
            self._audit.record(None, Direction.EMAIL_ERROR, {"uid": uid, "error": str(e)})
            return "error"

        cfg = self._config
        try:
            if is_spam(mail):
                await asyncio.to_thread(self._move, imap, mail.uid, cfg.imap_spam)
                self._audit.record(mail.sender_address, Direction.EMAIL_SPAM, {"subject": mail.subject})
                logger.warning("email_marked_spam", subject=mail.subject)
                return "spam"

            instructions, developer_content, user_input = build_email_prompt(mail, settings)
            reply = await self._ai_client.complete_turn(
                instructions=instructions,
                developer_content=developer_content,
                user_input=user_input,
                continuation_token=None,
            )
            message = self._sender.build_message(
                mail.sender,
                reply_subject(mail.subject),
                wrap_email_reply(settings, reply.text),
                in_reply_to=mail.message_id,
            )

            if cfg.send_mode == "send":
                await self._sender.send_email(message)
                await asyncio.to_thread(self._move, imap, mail.uid, cfg.imap_sent)
                self._audit.record(
                    mail.sender_address, Direction.EMAIL_SENT, {"subject": message["Subject"]}
                )
                return "sent"

            await asyncio.to_thread(self._append_draft, imap, message)
            self._audit.record(mail.sender_address, Direction.EMAIL_DRAFT, {"subject": message["Subject"]})
            return "draft"
        except (AIProviderError, DeliveryError, imaplib.IMAP4.error, OSError) as e:
            logger.error("email_reply_failed", subject=mail.subject, error=str(e))
            self._audit.record(
                mail.sender_address, Direction.EMAIL_ERROR, {"subject": mail.subject, "error": str(e)}
            )
            return "error"

    def _connect(self) -> imaplib.IMAP4:
        cfg = self._config
        if not cfg.imap_host:
            raise DeliveryError("IMAP host not configured")
        if cfg.imap_port == 993:
            imap: imaplib.IMAP4 = imaplib.IMAP4_SSL(cfg.imap_host, cfg.imap_port, timeout=cfg.timeout)
        else:
            imap = imaplib.IMAP4(cfg.imap_host, cfg.imap_port, timeout=cfg.timeout)
        imap.login(cfg.imap_user, cfg.imap_pass)
        imap.select(cfg.imap_inbox)
        return imap

    def _fetch_unseen(self, imap: imaplib.IMAP4) -> list[tuple[str, bytes]]:
        _, data = imap.uid("SEARCH", None, "UNSEEN")
        uids = data[0].split() if data and data[0] else []
        messages: list[tuple[str, bytes]] = []
        for uid in uids:
            # RFC822 (not BODY.PEEK) sets \Seen, so each mail is handled once.
            _, fetched = imap.uid("FETCH", uid, "(RFC822)")
            for item in fetched:
                if isinstance(item, tuple):
                    messages.append((uid.decode(), item[1]))
                    break
        return messages

    def _move(self, imap: imaplib.IMAP4, uid: str, folder: str) -> None:
        if "MOVE" in imap.capabilities:
            imap.uid("MOVE", uid, folder)
            return
        imap.uid("COPY", uid, folder)
        imap.uid("STORE", uid, "+FLAGS", r"(\Deleted)")
        imap.expunge()

    def _append_draft(self, imap: imaplib.IMAP4, message: EmailMessage) -> None:
        imap.append(
            self._config.imap_drafts,
            r"(\Draft)",
            imaplib.Time2Internaldate(time.time()),
            message.as_bytes(),
        )

    @staticmethod
    def _logout(imap: imaplib.IMAP4) -> None:
        try:
            imap.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.warning("imap_logout_failed", error=str(e))

