import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from webhook_inbox.common.config import InboxConfig
from webhook_inbox.common.errors import SignatureInvalidError, ValidationError
from webhook_inbox.common.metrics import metrics
from webhook_inbox.common.models import (
    NotificationType,
    StorageStats,
    WebhookListResponse,
    WebhookMessage,
    WebhookPayload,
    WebhookQuery,
    WebhookRequest,
    normalize_updates,
)
from webhook_inbox.common.signing import verify_signature
from webhook_inbox.server.websocket import BroadcastHub
from webhook_inbox.storage import StorageAdapter, StorageAdapterFactory

KNOWN_TYPES = {notification_type.value for notification_type in NotificationType}


def parse_payload(body: bytes) -> WebhookPayload:
    """Decode and validate a raw webhook body."""
    try:
        content = json.loads(body)
    except ValueError:
        raise ValidationError("Invalid JSON payload")

    if not isinstance(content, dict):
        raise ValidationError("Webhook payload must be a JSON object")

    try:
        return WebhookPayload.model_validate(content)
    except PydanticValidationError as e:
        fields = sorted({str(error["loc"][0]) for error in e.errors() if error["loc"]})
        raise ValidationError(f"Missing or invalid fields: {', '.join(fields)}")


class WebhookService:
    """Ingestion and query operations over the configured storage, plus realtime fan-out."""

    def __init__(
        self,
        config: InboxConfig,
        hub: BroadcastHub,
        factory: Optional[StorageAdapterFactory] = None,
        storage: Optional[StorageAdapter] = None,
    ):
        self.config = config
        self.hub = hub
        self.factory = factory or StorageAdapterFactory()
        self._storage = storage
        self._owns_storage = storage is None
        self._initialized = False
        self._broadcast_tasks: Set[asyncio.Task] = set()

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def storage(self) -> StorageAdapter:
        if self._storage is None:
            raise RuntimeError("Storage not initialized")
        return self._storage

    async def initialize(self) -> None:
        if self._initialized:
            return

        if self._storage is not None:
            await self._storage.initialize()
        else:
            primary = self.config.storage.primary
            fallback = self.config.fallback_storage_config()
            if fallback is not None:
                self._storage = await self.factory.create_fallback_adapter(primary, fallback)
                logger.info(
                    f"Storage initialized with fallback: {primary.type.value} -> {fallback.type.value}"
                )
            else:
                self._storage = await self.factory.create_adapter(primary)
                logger.info(f"Storage initialized: {primary.type.value}")

        self._initialized = True

    def check_signature(self, body: bytes, signature: Optional[str]) -> None:
        secret = self.config.webhook_secret
        if not secret:
            return
        if not signature:
            if self.config.require_signature:
                raise SignatureInvalidError("Missing webhook signature")
            return
        if not verify_signature(secret, body, signature):
            raise SignatureInvalidError("Invalid webhook signature")

    async def ingest(
        self,
        body: bytes,
        *,
        user_agent: Optional[str] = None,
        source_ip: Optional[str] = None,
        signature: Optional[str] = None,
    ) -> WebhookMessage:
        """Verify, validate, persist and broadcast one raw webhook body."""
        try:
            self.check_signature(body, signature)
        except SignatureInvalidError:
            metrics.webhook_rejected_total.labels(reason="signature").inc()
            logger.warning(f"Rejected webhook with bad signature from {source_ip} ({user_agent})")
            raise

        try:
            payload = parse_payload(body)
        except ValidationError as e:
            metrics.webhook_rejected_total.labels(reason="validation").inc()
            logger.warning(f"Rejected invalid webhook from {source_ip}: {e}")
            raise

        request = WebhookRequest(
            **payload.model_dump(),
            user_agent=user_agent,
            source_ip=source_ip,
            signature=signature,
        )
        return await self.store_webhook_message(request)

    async def store_webhook_message(self, request: WebhookRequest) -> WebhookMessage:
        # New messages always start unprocessed
        message = await self.storage.store_message(request.model_copy(update={"processed": False}))

        label = message.type if message.type in KNOWN_TYPES else "other"
        metrics.webhook_received_total.labels(type=label).inc()
        logger.info(f"Webhook message stored: {message.id} ({message.type}) {message.title}")

        task = asyncio.create_task(self._broadcast(message))
        self._broadcast_tasks.add(task)
        task.add_done_callback(self._broadcast_tasks.discard)

        return message

    async def _broadcast(self, message: WebhookMessage) -> None:
        try:
            await self.hub.broadcast(message)
        except Exception as e:
            logger.error(f"Failed to broadcast webhook message {message.id}: {e}")

    async def flush_broadcasts(self) -> None:
        """Wait for every broadcast scheduled so far to finish."""
        if self._broadcast_tasks:
            await asyncio.gather(*list(self._broadcast_tasks), return_exceptions=True)

    async def get_messages(self, query: WebhookQuery) -> WebhookListResponse:
        return await self.storage.get_messages(query)

    async def search_messages(self, text: str, query: Optional[WebhookQuery] = None) -> WebhookListResponse:
        if not text or not text.strip():
            raise ValidationError("Search query is required")
        return await self.storage.search_messages(text.strip(), query)

    async def get_message_by_id(self, message_id: str) -> Optional[WebhookMessage]:
        return await self.storage.get_message_by_id(message_id)

    async def mark_as_processed(self, message_id: str) -> WebhookMessage:
        message = await self.storage.update_message(message_id, {"processed": True})
        logger.info(f"Webhook message marked as processed: {message_id}")
        return message

    async def update_message(self, message_id: str, updates: Dict[str, Any]) -> WebhookMessage:
        fields = normalize_updates(updates)
        if fields.get("processed") is False:
            raise ValidationError("Processed flag cannot be cleared")
        return await self.storage.update_message(message_id, fields)

    async def delete_message(self, message_id: str) -> None:
        await self.storage.delete_message(message_id)
        logger.info(f"Webhook message deleted: {message_id}")

    async def get_stats(self) -> StorageStats:
        return await self.storage.get_stats()

    async def cleanup_old_messages(self, older_than_days: int = 30) -> int:
        if older_than_days < 1:
            raise ValidationError("Days must be at least 1")
        deleted = await self.storage.cleanup_old_messages(older_than_days)
        logger.info(f"Cleaned up {deleted} webhook messages older than {older_than_days} days")
        return deleted

    async def get_health_status(self) -> Dict[str, Any]:
        storage_type = self.config.storage.primary.type.value
        last_check = datetime.now(timezone.utc).isoformat()
        initialized = self._initialized

        try:
            health = await self.storage.get_health_status()
        except Exception as e:
            logger.error(f"Storage health check failed: {e}")
            initialized = False
            storage = {
                "healthy": False,
                "type": storage_type,
                "status": "unhealthy",
                "details": {"error": str(e)},
                "lastCheck": last_check,
            }
        else:
            storage = {
                "healthy": health.is_healthy,
                "type": storage_type,
                "status": health.status.value,
                "details": health.details,
                "lastCheck": last_check,
            }

        fallback = self.config.fallback_storage_config()
        if fallback is not None:
            storage["fallbackType"] = fallback.type.value

        return {
            "storage": storage,
            "queue": self.get_queue_stats(),
            "initialized": initialized,
        }

    def get_queue_stats(self) -> Dict[str, Any]:
        # Messages are stored inline; there is no background queue to report on
        return {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "isActive": False}

    async def close(self) -> None:
        await self.flush_broadcasts()
        if self._storage is not None and not self._owns_storage:
            await self._storage.close()
        await self.factory.close_all_adapters()
        if self._owns_storage:
            self._storage = None
        self._initialized = False
        logger.info("Webhook service closed")
