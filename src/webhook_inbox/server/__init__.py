"""HTTP, WebSocket and CLI surface of the webhook inbox."""

from webhook_inbox.server.server import create_app, run_server
from webhook_inbox.server.service import WebhookService
from webhook_inbox.server.websocket import BroadcastHub

__all__ = ["create_app", "run_server", "WebhookService", "BroadcastHub"]
