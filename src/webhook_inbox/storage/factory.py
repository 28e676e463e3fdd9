import asyncio
from typing import Dict, List

from loguru import logger

from webhook_inbox.common.config import StorageConfig, StorageType
from webhook_inbox.common.errors import BackendUnavailableError
from webhook_inbox.storage.base import StorageAdapter
from webhook_inbox.storage.elastic import ElasticsearchStorageAdapter
from webhook_inbox.storage.fallback import FallbackStorageAdapter
from webhook_inbox.storage.sql import SQLAlchemyStorageAdapter


def build_adapter(config: StorageConfig) -> StorageAdapter:
    """Construct, without initializing, the adapter for a storage config."""
    if config.is_relational:
        return SQLAlchemyStorageAdapter(config)
    elif config.type == StorageType.ELASTICSEARCH:
        return ElasticsearchStorageAdapter(config)
    else:
        raise ValueError(f"Unsupported storage type: {config.type}")


class StorageAdapterFactory:
    """Process-lifetime registry holding one initialized adapter per distinct config."""

    def __init__(self):
        self._adapters: Dict[str, StorageAdapter] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Uninitialized stand-ins for backends that were down when a pair was built
        self._detached: List[StorageAdapter] = []

    @staticmethod
    def config_key(config: StorageConfig) -> str:
        return config.model_dump_json()

    @property
    def adapter_count(self) -> int:
        return len(self._adapters)

    async def create_adapter(self, config: StorageConfig) -> StorageAdapter:
        key = self.config_key(config)
        adapter = self._adapters.get(key)
        if adapter is not None:
            return adapter

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # A concurrent caller may have finished while we waited
            adapter = self._adapters.get(key)
            if adapter is not None:
                return adapter

            adapter = build_adapter(config)
            try:
                await adapter.initialize()
            except Exception as e:
                logger.error(f"Failed to initialize {config.type.value} storage: {e}")
                await adapter.close()
                raise

            self._adapters[key] = adapter
            logger.info(f"Storage adapter ready: {config.type.value}")
            return adapter

    async def create_fallback_adapter(
        self, primary_config: StorageConfig, fallback_config: StorageConfig
    ) -> FallbackStorageAdapter:
        """Build a failover pair that starts as long as either backend initializes.

        A side that fails to initialize is replaced by a fresh, uninitialized
        adapter: its calls fail at call time and the pair serves them from the
        other side. It is not cached, so a later ``create_adapter`` retries it.
        """
        configs = (primary_config, fallback_config)
        results = await asyncio.gather(
            *(self.create_adapter(config) for config in configs), return_exceptions=True
        )

        failures = [result for result in results if isinstance(result, BaseException)]
        if len(failures) == len(configs):
            raise BackendUnavailableError(
                "fallback",
                "initialize",
                "; ".join(f"{config.type.value}: {error}" for config, error in zip(configs, failures)),
            )

        adapters = []
        for config, result in zip(configs, results):
            if isinstance(result, BaseException):
                logger.warning(f"Starting without {config.type.value} storage, calls will fail over: {result}")
                result = build_adapter(config)
                self._detached.append(result)
            adapters.append(result)

        return FallbackStorageAdapter(*adapters)

    async def close_all_adapters(self) -> None:
        adapters = list(self._adapters.values()) + self._detached
        self._adapters.clear()
        self._detached = []
        self._locks.clear()

        results = await asyncio.gather(
            *(adapter.close() for adapter in adapters), return_exceptions=True
        )
        for adapter, result in zip(adapters, results):
            if isinstance(result, BaseException):
                logger.error(f"Error closing {adapter.backend_name} adapter: {result}")
