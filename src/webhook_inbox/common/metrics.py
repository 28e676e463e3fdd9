import time
from functools import wraps
from typing import Callable, Dict, Optional, Union

from loguru import logger
from prometheus_client import REGISTRY, Counter, Gauge, Histogram, start_http_server


class MetricsRegistry:
    def __init__(self, registry=None):
        # Use a provided registry or the default one
        self.registry = registry or REGISTRY

        # Ingestion metrics
        self.webhook_received_total = Counter(
            "webhook_inbox_received_total",
            "Total number of webhooks received",
            ["type"],
            registry=self.registry,
        )
        self.webhook_processing_time = Histogram(
            "webhook_inbox_processing_seconds",
            "Time spent ingesting webhooks",
            ["endpoint"],
            registry=self.registry,
        )
        self.webhook_rejected_total = Counter(
            "webhook_inbox_rejected_total",
            "Total number of webhooks rejected before storage",
            ["reason"],
            registry=self.registry,
        )

        # Storage metrics
        self.storage_operation_total = Counter(
            "webhook_inbox_storage_operation_total",
            "Total number of storage operations",
            ["backend", "operation"],
            registry=self.registry,
        )
        self.storage_operation_errors = Counter(
            "webhook_inbox_storage_operation_errors",
            "Total number of failed storage operations",
            ["backend", "operation"],
            registry=self.registry,
        )
        self.storage_operation_latency = Histogram(
            "webhook_inbox_storage_operation_seconds",
            "Time spent in storage operations",
            ["backend", "operation"],
            registry=self.registry,
        )
        self.storage_fallback_total = Counter(
            "webhook_inbox_storage_fallback_total",
            "Total number of operations served by the fallback backend",
            ["operation"],
            registry=self.registry,
        )

        # Realtime metrics
        self.websocket_connections = Gauge(
            "webhook_inbox_websocket_connections",
            "Number of live WebSocket connections",
            registry=self.registry,
        )
        self.broadcast_sent_total = Counter(
            "webhook_inbox_broadcast_sent_total",
            "Total number of webhook frames delivered to WebSocket clients",
            registry=self.registry,
        )
        self.broadcast_errors = Counter(
            "webhook_inbox_broadcast_errors",
            "Total number of failed WebSocket sends",
            registry=self.registry,
        )

        # Common metrics
        self.up = Gauge(
            "webhook_inbox_up",
            "Whether the webhook inbox service is up",
            ["component"],
            registry=self.registry,
        )


# Global metrics registry
metrics = MetricsRegistry()


def start_metrics_server(port: int = 9090, host: str = "127.0.0.1"):
    """Start the Prometheus metrics server."""
    start_http_server(port, host)


def measure_time(
    metric: Histogram, labels: Optional[Union[Dict[str, str], Callable]] = None
) -> Callable:
    """Decorator to measure the execution time of a coroutine."""

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            labels_dict = {}
            if callable(labels) and args:
                # Label factories receive the bound instance
                try:
                    labels_dict = labels(args[0])
                except Exception as e:
                    logger.error(f"Error getting labels from function: {e}")
            elif isinstance(labels, dict):
                labels_dict = labels

            start_time = time.time()
            try:
                return await func(*args, **kwargs)
            finally:
                duration = time.time() - start_time
                try:
                    metric.labels(**labels_dict).observe(duration)
                except Exception as e:
                    logger.error(f"Error recording metric: {e}")

        return wrapper

    return decorator
