"""Message storage backends for the webhook inbox."""

from webhook_inbox.storage.base import StorageAdapter, storage_operation
from webhook_inbox.storage.elastic import ElasticsearchStorageAdapter
from webhook_inbox.storage.factory import StorageAdapterFactory, build_adapter
from webhook_inbox.storage.fallback import FallbackStorageAdapter
from webhook_inbox.storage.sql import SQLAlchemyStorageAdapter

__all__ = [
    "StorageAdapter",
    "storage_operation",
    "ElasticsearchStorageAdapter",
    "FallbackStorageAdapter",
    "SQLAlchemyStorageAdapter",
    "StorageAdapterFactory",
    "build_adapter",
]
