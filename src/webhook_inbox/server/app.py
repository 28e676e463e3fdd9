import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from loguru import logger

from webhook_inbox.common.config import InboxConfig
from webhook_inbox.common.log import configure_logging
from webhook_inbox.server.server import run_server
from webhook_inbox.server.service import WebhookService
from webhook_inbox.server.websocket import BroadcastHub


def load_config_from_file(config_path: str) -> InboxConfig:
    """Load configuration from a YAML file."""
    file_path = Path(config_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(file_path, "r") as f:
        config_data = yaml.safe_load(f) or {}

    return InboxConfig.model_validate(config_data)


def load_config(config_path: Optional[str] = None) -> InboxConfig:
    """Load from a YAML file when given, otherwise from ``WEBHOOK_INBOX_*`` environment variables."""
    if config_path:
        return load_config_from_file(config_path)
    return InboxConfig()


def setup_app(config: InboxConfig) -> InboxConfig:
    """Configure logging and check the config before anything connects."""
    configure_logging(config.log_level)
    config.validate_storage_config()
    logger.info(f"Webhook Inbox initialized with {config.storage.primary.type.value} storage")
    return config


async def run_cleanup(config: InboxConfig, days: int) -> int:
    service = WebhookService(config, BroadcastHub())
    await service.initialize()
    try:
        return await service.cleanup_old_messages(days)
    finally:
        await service.close()


@click.group()
def cli():
    """Webhook Inbox CLI"""
    pass


@cli.command("serve")
@click.option(
    "--config",
    "-c",
    required=False,
    help="Path to configuration file",
)
def serve(config: Optional[str]):
    """Start the inbox server."""
    try:
        config_obj = setup_app(load_config(config))
        run_server(config_obj)
    except Exception as e:
        logger.error(f"Failed to start webhook inbox: {e}")
        sys.exit(1)


@cli.command("cleanup")
@click.option(
    "--config",
    "-c",
    required=False,
    help="Path to configuration file",
)
@click.option(
    "--days",
    default=30,
    show_default=True,
    type=click.IntRange(min=1),
    help="Delete messages received more than this many days ago",
)
def cleanup(config: Optional[str], days: int):
    """Delete old webhook messages and exit."""
    try:
        config_obj = setup_app(load_config(config))
        deleted = asyncio.run(run_cleanup(config_obj, days))
    except Exception as e:
        logger.error(f"Cleanup failed: {e}")
        sys.exit(1)

    click.echo(f"Cleaned up {deleted} old messages")


if __name__ == "__main__":
    cli()
