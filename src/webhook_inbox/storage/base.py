import asyncio
import time
from abc import ABC, abstractmethod
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from webhook_inbox.common.errors import BackendUnavailableError
from webhook_inbox.common.metrics import metrics
from webhook_inbox.common.models import (
    StorageHealthStatus,
    StorageStats,
    WebhookListResponse,
    WebhookMessage,
    WebhookQuery,
    WebhookRequest,
)


class StorageAdapter(ABC):
    """Operations every message store backend supports.

    Implementations assign ``id`` and ``received_at`` on write, return the
    canonical ``WebhookMessage`` shape regardless of how they store it, and
    raise ``NotFoundError`` for updates or deletes of unknown ids. Driver
    errors and timeouts surface as ``BackendUnavailableError`` (see
    ``storage_operation``).
    """

    backend_name: str = "storage"
    # Driver exceptions translated into BackendUnavailableError
    backend_errors: Tuple[Type[BaseException], ...] = ()
    timeout: Optional[float] = None

    @abstractmethod
    async def initialize(self) -> None:
        """Create schema or index if absent. Safe to call more than once."""

    @abstractmethod
    async def store_message(self, data: WebhookRequest) -> WebhookMessage:
        pass

    @abstractmethod
    async def store_messages(self, data: List[WebhookRequest]) -> List[WebhookMessage]:
        pass

    @abstractmethod
    async def get_messages(self, query: WebhookQuery) -> WebhookListResponse:
        pass

    @abstractmethod
    async def get_message_by_id(self, message_id: str) -> Optional[WebhookMessage]:
        pass

    @abstractmethod
    async def update_message(self, message_id: str, updates: Dict[str, Any]) -> WebhookMessage:
        pass

    @abstractmethod
    async def delete_message(self, message_id: str) -> None:
        pass

    @abstractmethod
    async def get_stats(self) -> StorageStats:
        pass

    async def search_messages(
        self, text: str, query: Optional[WebhookQuery] = None
    ) -> WebhookListResponse:
        query = (query or WebhookQuery()).model_copy(update={"search": text})
        return await self.get_messages(query)

    @abstractmethod
    async def cleanup_old_messages(self, older_than_days: int) -> int:
        """Delete messages received more than ``older_than_days`` ago and return the count."""

    @abstractmethod
    async def get_health_status(self) -> StorageHealthStatus:
        """Check the backend. Never raises; failures are reported as unhealthy."""

    @abstractmethod
    async def close(self) -> None:
        pass


def storage_operation(name: str) -> Callable:
    """Bound a backend coroutine by the adapter timeout and normalise its failures.

    Timeouts and the adapter's ``backend_errors`` become ``BackendUnavailableError``;
    every call is counted and timed per backend and operation.
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            labels = {"backend": self.backend_name, "operation": name}
            metrics.storage_operation_total.labels(**labels).inc()
            start_time = time.time()
            try:
                return await asyncio.wait_for(func(self, *args, **kwargs), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                metrics.storage_operation_errors.labels(**labels).inc()
                raise BackendUnavailableError(
                    self.backend_name, name, f"timed out after {self.timeout}s"
                ) from e
            except self.backend_errors as e:
                metrics.storage_operation_errors.labels(**labels).inc()
                raise BackendUnavailableError(self.backend_name, name, str(e)) from e
            finally:
                metrics.storage_operation_latency.labels(**labels).observe(time.time() - start_time)

        return wrapper

    return decorator
