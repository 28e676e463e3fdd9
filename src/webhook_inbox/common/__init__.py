"""Common utilities and models for the webhook inbox."""

from webhook_inbox.common.config import (
    InboxConfig,
    MetricsConfig,
    StorageConfig,
    StorageSettings,
    StorageType,
    WebSocketConfig,
)
from webhook_inbox.common.errors import (
    BackendUnavailableError,
    ConflictError,
    NotFoundError,
    SignatureInvalidError,
    ValidationError,
    WebhookInboxError,
)
from webhook_inbox.common.models import (
    HealthState,
    NotificationType,
    StorageHealthStatus,
    StorageStats,
    TypeCount,
    WebhookListResponse,
    WebhookMessage,
    WebhookPayload,
    WebhookQuery,
    WebhookRequest,
)
from webhook_inbox.common.metrics import (
    MetricsRegistry,
    metrics,
    measure_time,
    start_metrics_server,
)

__all__ = [
    # Config
    "InboxConfig",
    "MetricsConfig",
    "StorageConfig",
    "StorageSettings",
    "StorageType",
    "WebSocketConfig",
    # Errors
    "BackendUnavailableError",
    "ConflictError",
    "NotFoundError",
    "SignatureInvalidError",
    "ValidationError",
    "WebhookInboxError",
    # Models
    "HealthState",
    "NotificationType",
    "StorageHealthStatus",
    "StorageStats",
    "TypeCount",
    "WebhookListResponse",
    "WebhookMessage",
    "WebhookPayload",
    "WebhookQuery",
    "WebhookRequest",
    # Metrics
    "MetricsRegistry",
    "metrics",
    "measure_time",
    "start_metrics_server",
]
