"""CLI entry point for dagmarcom."""

from __future__ import annotations

import argparse
import asyncio
import sys

from dagmarcom.app import DagmarApp
from dagmarcom.config import AppConfig, load_config
from dagmarcom.log import setup_logging
from dagmarcom.services.scheduler import run_retention_cleanup
from dagmarcom.storage.audit import AuditLog
from dagmarcom.storage.conversation_store import ConversationStore
from dagmarcom.storage.database import Database


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="dagmarcom",
        description="WhatsApp and email auto-reply relay backed by OpenAI",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    for name, help_text in (
        ("start", "Start the webhook server and background jobs"),
        ("config-check", "Validate configuration"),
        ("process-email", "Run one pass over the email inbox and exit"),
        ("cleanup", "Delete data older than the retention period and exit"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
        sub.add_argument("-e", "--env", default=".env", help="Path to .env file")

    args = parser.parse_args()

    if args.command is None:
        # Default to start
        args.command = "start"
        args.config = "config.yaml"
        args.env = ".env"

    if args.command == "config-check":
        _check_config(args.config, args.env)
        return

    config = _load_or_exit(args.config, args.env)
    setup_logging(config.log_level, config.log_format, config.log_file)

    if args.command == "process-email":
        _run_once(config, _process_email)
    elif args.command == "cleanup":
        _run_once(config, _cleanup)
    elif args.command == "start":
        _run(config)


def _load_or_exit(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'python install.py' first or copy config.example.yaml to config.yaml")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load_or_exit(config_path, env_path)
    print(f"Configuration valid: {config_path}")
    print(f"  Storage: {config.storage.db_path}")
    print(f"  OpenAI: {config.openai.model if config.openai else '(missing)'}")
    print(f"  WhatsApp: {'configured' if config.whatsapp.configured else 'dry run'}")
    print(f"  Email: {'enabled (' + config.email.send_mode + ')' if config.email.enabled else 'disabled'}")
    print(
        f"  Conversation: reset after {config.conversation.inactivity_hours:g}h, "
        f"retention {config.conversation.retention_days} days"
    )
    print(f"  Server: {config.server.host}:{config.server.port}")
    if not config.openai:
        sys.exit(1)


async def _process_email(config: AppConfig) -> None:
    app = DagmarApp(config)
    await app.db.initialize()
    try:
        counts = await app.email_service.process_inbox()
        print(f"Email pass done: {counts}")
    finally:
        await app.audit.flush()
        await app.whatsapp.close()
        await app.db.close()


async def _cleanup(config: AppConfig) -> None:
    db = Database(config.storage.db_path)
    await db.initialize()
    try:
        deleted = await run_retention_cleanup(
            ConversationStore(db), AuditLog(db), config.conversation.retention_days
        )
        print(f"Cleanup done: {deleted}")
    finally:
        await db.close()


def _run_once(config: AppConfig, job) -> None:
    try:
        asyncio.run(job(config))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _run(config: AppConfig) -> None:
    """Start the application and serve until interrupted."""
    try:
        app = DagmarApp(config)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    async def _async_main() -> None:
        await app.start()
        try:
            await app.serve()
        finally:
            await app.stop()

    try:
        asyncio.run(_async_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
