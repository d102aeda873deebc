"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

DEFAULT_FALLBACK_MESSAGE = (
    "Omlouvame se, automaticka odpoved se ted nepodarila odeslat. "
    "Zkuste to prosim znovu pozdeji."
)

DEFAULT_RETENTION_NOTICE = (
    "Chat byl po {hours} hodinach uzavren. Informace z konverzace uchovavame "
    "{retention_days} dni pro audit a bezpecnost. Pokud chcete okamzite smazat "
    "vsechny ulozene udaje, kliknete na: {delete_url}"
)


class OpenAIConfig(BaseModel):
    api_key: str
    model: str = "gpt-4.1"
    base_url: Optional[str] = None
    max_retries: int = 2
    timeout: int = 60


class WhatsAppConfig(BaseModel):
    token: str = ""
    phone_number_id: str = ""
    api_version: str = "v18.0"
    verify_token: str = ""
    timeout: float = 15.0

    @property
    def configured(self) -> bool:
        return bool(self.token and self.phone_number_id)


class EmailConfig(BaseModel):
    enabled: bool = False
    send_mode: Literal["draft", "send"] = "draft"
    poll_minutes: int = 5
    imap_host: str = ""
    imap_port: int = 993
    imap_user: str = ""
    imap_pass: str = ""
    imap_inbox: str = "INBOX"
    imap_spam: str = "SPAM"
    imap_sent: str = "Sent"
    imap_drafts: str = "Drafts"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    timeout: int = 30


class ConversationConfig(BaseModel):
    inactivity_hours: float = 8
    retention_days: int = 30
    delete_base_url: str = "https://api.hcasc.cz/delete"
    fallback_message: str = DEFAULT_FALLBACK_MESSAGE
    retention_notice: str = DEFAULT_RETENTION_NOTICE

    @field_validator("retention_notice")
    @classmethod
    def check_notice_placeholders(cls, value: str) -> str:
        try:
            value.format(hours="8", retention_days=30, delete_url="https://example.invalid")
        except (KeyError, IndexError, ValueError, AttributeError) as e:
            raise ValueError(
                f"retention_notice may only use {{hours}}, {{retention_days}} and {{delete_url}}: {e!r}"
            ) from e
        return value


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 9001


class SchedulerConfig(BaseModel):
    timezone: str = "Europe/Prague"
    cleanup_cron: str = "30 3 * * *"


class StorageConfig(BaseModel):
    db_path: str = "./data/dagmarcom.db"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    log_file: Optional[str] = None
    data_dir: str = "./data"
    openai: Optional[OpenAIConfig] = None
    whatsapp: WhatsAppConfig = Field(default_factory=WhatsAppConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        return os.environ.get(var_name, "")

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation.

    Unset variables interpolate to an empty string so optional credentials
    (WhatsApp token, SMTP password) can be left out of the environment.
    """
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # First pass: extract data_dir for self-referencing
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    # Second pass: interpolate all env vars
    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
