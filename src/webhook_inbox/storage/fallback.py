import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from loguru import logger

from webhook_inbox.common.errors import BackendUnavailableError
from webhook_inbox.common.metrics import metrics
from webhook_inbox.common.models import (
    HealthState,
    StorageHealthStatus,
    StorageStats,
    WebhookListResponse,
    WebhookMessage,
    WebhookQuery,
    WebhookRequest,
)
from webhook_inbox.storage.base import StorageAdapter

T = TypeVar("T")


class FallbackStorageAdapter(StorageAdapter):
    """Runs every operation on the primary and repeats it on the fallback if the primary raises.

    Results are never merged: the caller gets exactly one backend's answer.
    """

    backend_name = "fallback"

    def __init__(self, primary: StorageAdapter, fallback: StorageAdapter):
        self.primary = primary
        self.fallback = fallback

    async def _with_fallback(self, operation: str, call: Callable[[StorageAdapter], Awaitable[T]]) -> T:
        try:
            return await call(self.primary)
        except Exception as e:
            logger.warning(
                f"Primary storage ({self.primary.backend_name}) failed during {operation}, "
                f"using fallback ({self.fallback.backend_name}): {e}"
            )
            metrics.storage_fallback_total.labels(operation=operation).inc()
            return await call(self.fallback)

    async def initialize(self) -> None:
        results = await asyncio.gather(
            self.primary.initialize(),
            self.fallback.initialize(),
            return_exceptions=True,
        )
        failures = self._log_failures("initialize", results)
        if len(failures) == 2:
            raise BackendUnavailableError(
                self.backend_name, "initialize", "neither primary nor fallback storage could be initialized"
            )

    async def store_message(self, data: WebhookRequest) -> WebhookMessage:
        return await self._with_fallback("store_message", lambda adapter: adapter.store_message(data))

    async def store_messages(self, data: List[WebhookRequest]) -> List[WebhookMessage]:
        return await self._with_fallback("store_messages", lambda adapter: adapter.store_messages(data))

    async def get_messages(self, query: WebhookQuery) -> WebhookListResponse:
        return await self._with_fallback("get_messages", lambda adapter: adapter.get_messages(query))

    async def get_message_by_id(self, message_id: str) -> Optional[WebhookMessage]:
        return await self._with_fallback(
            "get_message_by_id", lambda adapter: adapter.get_message_by_id(message_id)
        )

    async def update_message(self, message_id: str, updates: Dict[str, Any]) -> WebhookMessage:
        return await self._with_fallback(
            "update_message", lambda adapter: adapter.update_message(message_id, updates)
        )

    async def delete_message(self, message_id: str) -> None:
        await self._with_fallback("delete_message", lambda adapter: adapter.delete_message(message_id))

    async def get_stats(self) -> StorageStats:
        return await self._with_fallback("get_stats", lambda adapter: adapter.get_stats())

    async def search_messages(
        self, text: str, query: Optional[WebhookQuery] = None
    ) -> WebhookListResponse:
        return await self._with_fallback(
            "search_messages", lambda adapter: adapter.search_messages(text, query)
        )

    async def cleanup_old_messages(self, older_than_days: int) -> int:
        return await self._with_fallback(
            "cleanup_old_messages", lambda adapter: adapter.cleanup_old_messages(older_than_days)
        )

    async def get_health_status(self) -> StorageHealthStatus:
        results = await asyncio.gather(
            self.primary.get_health_status(),
            self.fallback.get_health_status(),
            return_exceptions=True,
        )
        primary, fallback = [
            result
            if isinstance(result, StorageHealthStatus)
            else StorageHealthStatus(status=HealthState.UNHEALTHY, details={"error": str(result)})
            for result in results
        ]

        # Degraded while at least one side can still take writes
        if primary.is_healthy and fallback.is_healthy:
            status = HealthState.HEALTHY
        elif primary.status == HealthState.UNHEALTHY and fallback.status == HealthState.UNHEALTHY:
            status = HealthState.UNHEALTHY
        else:
            status = HealthState.DEGRADED

        return StorageHealthStatus(
            status=status,
            details={
                "primary": {"backend": self.primary.backend_name, **primary.model_dump(mode="json")},
                "fallback": {"backend": self.fallback.backend_name, **fallback.model_dump(mode="json")},
            },
        )

    async def close(self) -> None:
        results = await asyncio.gather(
            self.primary.close(),
            self.fallback.close(),
            return_exceptions=True,
        )
        self._log_failures("close", results)

    def _log_failures(self, operation: str, results: List[Any]) -> List[BaseException]:
        failures = []
        for adapter, result in zip((self.primary, self.fallback), results):
            if isinstance(result, BaseException):
                logger.error(f"Storage {operation} failed for {adapter.backend_name}: {result}")
                failures.append(result)
        return failures
