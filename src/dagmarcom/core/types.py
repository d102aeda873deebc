"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class Channel(StrEnum):
    WHATSAPP = "whatsapp"
    EMAIL = "email"


class Direction(StrEnum):
    """Audit log direction tags."""

    IN = "IN"
    OUT = "OUT"
    OPENAI_REQ = "OPENAI_REQ"
    OPENAI_RES = "OPENAI_RES"
    ERROR = "ERROR"
    EMAIL_SPAM = "EMAIL_SPAM"
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_DRAFT = "EMAIL_DRAFT"
    EMAIL_ERROR = "EMAIL_ERROR"
