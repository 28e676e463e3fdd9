"""Webhook Inbox - stores notification webhooks and streams them to a dashboard."""

__version__ = "0.1.0"
