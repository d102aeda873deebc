"""Tests for logging setup."""

import json

import pytest
import structlog

from dagmarcom.log import get_logger, setup_logging


@pytest.fixture(autouse=True)
def _restore_structlog():
    yield
    structlog.reset_defaults()


def test_log_file_gets_json_lines(tmp_path):
    path = tmp_path / "logs" / "app.log"
    setup_logging("INFO", "console", log_file=str(path))

    logger = get_logger("dagmarcom.test")
    logger.info("message_enqueued", identity="+420700000001", text="Dobrý den")
    logger.debug("too_verbose")

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["event"] == "message_enqueued"
    assert record["level"] == "info"
    assert record["text"] == "Dobrý den"
    assert record["timestamp"].endswith("Z")


def test_json_to_stderr(capsys):
    setup_logging("DEBUG", "json")

    get_logger("dagmarcom.test").warning("whatsapp_dry_run", hint="set token")

    record = json.loads(capsys.readouterr().err.strip())
    assert record["event"] == "whatsapp_dry_run"
    assert record["hint"] == "set token"
