import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from elasticsearch import ApiError, AsyncElasticsearch, TransportError
from elasticsearch import NotFoundError as DocumentNotFound
from loguru import logger

from webhook_inbox.common.config import StorageConfig
from webhook_inbox.common.errors import BackendUnavailableError, NotFoundError
from webhook_inbox.common.models import (
    HealthState,
    StorageHealthStatus,
    StorageStats,
    TypeCount,
    WebhookListResponse,
    WebhookMessage,
    WebhookQuery,
    WebhookRequest,
    normalize_updates,
)
from webhook_inbox.storage.base import StorageAdapter, storage_operation

INDEX_SETTINGS = {
    "number_of_shards": 1,
    "number_of_replicas": 0,
    "analysis": {
        "analyzer": {
            "webhook_analyzer": {
                "type": "custom",
                "tokenizer": "standard",
                "filter": ["lowercase", "stop"],
            }
        }
    },
}

INDEX_MAPPINGS = {
    "properties": {
        "id": {"type": "keyword"},
        "type": {"type": "keyword"},
        "title": {
            "type": "text",
            "analyzer": "webhook_analyzer",
            "fields": {"keyword": {"type": "keyword"}},
        },
        "content": {"type": "text", "analyzer": "webhook_analyzer"},
        "values": {"type": "object", "enabled": False},
        "timestamp": {"type": "long"},
        "receivedAt": {"type": "date"},
        "userAgent": {"type": "text"},
        # Non-IP hosts (proxy names, test clients) are kept in _source but not indexed
        "sourceIp": {"type": "ip", "ignore_malformed": True},
        "signature": {"type": "keyword"},
        "processed": {"type": "boolean"},
    }
}

TYPE_BUCKETS = 50

CLUSTER_STATUS = {
    "green": HealthState.HEALTHY,
    "yellow": HealthState.DEGRADED,
    "red": HealthState.UNHEALTHY,
}


def build_query(query: WebhookQuery) -> Dict[str, Any]:
    """Translate list filters into an Elasticsearch bool query."""
    must: List[Dict[str, Any]] = []
    filters: List[Dict[str, Any]] = []

    if query.type:
        filters.append({"term": {"type": query.type}})
    if query.processed is not None:
        filters.append({"term": {"processed": query.processed}})
    if query.start_date or query.end_date:
        date_range = {}
        if query.start_date:
            date_range["gte"] = query.start_date.isoformat()
        if query.end_date:
            date_range["lte"] = query.end_date.isoformat()
        filters.append({"range": {"receivedAt": date_range}})
    if query.search:
        must.append(
            {
                "multi_match": {
                    "query": query.search,
                    "fields": ["title^2", "content", "type"],
                    "type": "best_fields",
                    "fuzziness": "AUTO",
                }
            }
        )

    if not must and not filters:
        return {"match_all": {}}
    return {"bool": {"must": must, "filter": filters}}


def _field_alias(name: str) -> str:
    return WebhookMessage.model_fields[name].alias or name


def _body(response: Any) -> Dict[str, Any]:
    """Plain dict behind an elasticsearch API response."""
    return getattr(response, "body", response)


class ElasticsearchStorageAdapter(StorageAdapter):
    """Search-engine message store. Writes refresh before returning so reads see them."""

    backend_name = "elasticsearch"
    backend_errors = (ApiError, TransportError)

    def __init__(self, config: StorageConfig, client: Optional[AsyncElasticsearch] = None):
        self.config = config
        self.index_name = config.index_name
        self.timeout = config.timeout
        self.client = client or self._create_client(config)
        self._initialized = False
        self._closed = False

    @staticmethod
    def _create_client(config: StorageConfig) -> AsyncElasticsearch:
        scheme = "https" if config.ssl else "http"
        node = config.connection_string or f"{scheme}://{config.host or 'localhost'}:{config.port or 9200}"

        client_kwargs: Dict[str, Any] = {
            "hosts": [node],
            "node_class": "aiohttp",
            "request_timeout": config.timeout,
            "max_retries": 3,
        }
        if config.username and config.password:
            client_kwargs["basic_auth"] = (config.username, config.password)

        return AsyncElasticsearch(**client_kwargs)

    @storage_operation("initialize")
    async def initialize(self) -> None:
        if self._initialized:
            return

        exists = await self.client.indices.exists(index=self.index_name)
        if not exists:
            await self._create_index()

        self._initialized = True
        logger.info(f"Elasticsearch storage initialized with index: {self.index_name}")

    async def _create_index(self) -> None:
        try:
            await self.client.indices.create(
                index=self.index_name,
                settings=INDEX_SETTINGS,
                mappings=INDEX_MAPPINGS,
            )
            logger.info(f"Created Elasticsearch index {self.index_name}")
        except ApiError as e:
            # Another process created it between exists() and create()
            if "resource_already_exists_exception" not in str(e):
                raise

    @storage_operation("store_message")
    async def store_message(self, data: WebhookRequest) -> WebhookMessage:
        message = WebhookMessage.from_request(str(uuid.uuid4()), datetime.now(timezone.utc), data)
        await self.client.index(
            index=self.index_name,
            id=message.id,
            document=message.to_wire(),
            refresh="wait_for",
        )
        return message

    @storage_operation("store_messages")
    async def store_messages(self, data: List[WebhookRequest]) -> List[WebhookMessage]:
        if not data:
            return []

        messages = []
        operations: List[Dict[str, Any]] = []
        for item in data:
            message = WebhookMessage.from_request(str(uuid.uuid4()), datetime.now(timezone.utc), item)
            operations.append({"index": {"_index": self.index_name, "_id": message.id}})
            operations.append(message.to_wire())
            messages.append(message)

        response = _body(await self.client.bulk(operations=operations, refresh="wait_for"))
        if response.get("errors"):
            failed = [
                item["index"]["_id"]
                for item in response.get("items", [])
                if item.get("index", {}).get("error")
            ]
            raise BackendUnavailableError(
                self.backend_name,
                "store_messages",
                f"{len(failed)} of {len(messages)} documents rejected: {', '.join(failed)}",
            )
        return messages

    @storage_operation("get_messages")
    async def get_messages(self, query: WebhookQuery) -> WebhookListResponse:
        response = await self.client.search(
            index=self.index_name,
            query=build_query(query),
            sort=[{"receivedAt": {"order": "desc"}}],
            from_=query.offset,
            size=query.page_size,
            track_total_hits=True,
        )

        hits = _body(response)["hits"]
        total = hits["total"]
        if isinstance(total, dict):
            total = total.get("value", 0)

        messages = [WebhookMessage.model_validate(hit["_source"]) for hit in hits["hits"]]
        return WebhookListResponse.build(messages, total or 0, query)

    async def _get_document(self, message_id: str) -> Optional[WebhookMessage]:
        try:
            response = await self.client.get(index=self.index_name, id=message_id)
        except DocumentNotFound:
            return None
        return WebhookMessage.model_validate(_body(response)["_source"])

    @storage_operation("get_message_by_id")
    async def get_message_by_id(self, message_id: str) -> Optional[WebhookMessage]:
        return await self._get_document(message_id)

    @storage_operation("update_message")
    async def update_message(self, message_id: str, updates: Dict[str, Any]) -> WebhookMessage:
        fields = normalize_updates(updates)
        doc = {_field_alias(name): value for name, value in fields.items()}

        try:
            await self.client.update(
                index=self.index_name,
                id=message_id,
                doc=doc,
                refresh="wait_for",
            )
        except DocumentNotFound:
            raise NotFoundError(message_id)

        updated = await self._get_document(message_id)
        if updated is None:
            raise NotFoundError(message_id)
        return updated

    @storage_operation("delete_message")
    async def delete_message(self, message_id: str) -> None:
        try:
            await self.client.delete(index=self.index_name, id=message_id, refresh="wait_for")
        except DocumentNotFound:
            raise NotFoundError(message_id)

    @storage_operation("get_stats")
    async def get_stats(self) -> StorageStats:
        response = await self.client.search(
            index=self.index_name,
            size=0,
            aggs={
                "total": {"value_count": {"field": "id"}},
                "by_type": {"terms": {"field": "type", "size": TYPE_BUCKETS}},
                "type_count": {"cardinality": {"field": "type"}},
                "last_24_hours": {"filter": {"range": {"receivedAt": {"gte": "now-24h"}}}},
            },
        )

        aggs = _body(response).get("aggregations") or {}
        by_type = aggs.get("by_type", {})
        if by_type.get("sum_other_doc_count"):
            by_type = await self._all_type_buckets(int(aggs.get("type_count", {}).get("value") or 0))
        buckets = by_type.get("buckets", [])
        return StorageStats(
            total=int(aggs.get("total", {}).get("value") or 0),
            by_type=[TypeCount(type=bucket["key"], count=bucket["doc_count"]) for bucket in buckets],
            last_24_hours=aggs.get("last_24_hours", {}).get("doc_count", 0),
        )

    async def _all_type_buckets(self, type_count: int) -> Dict[str, Any]:
        # Cardinality is approximate
        size = max(type_count, TYPE_BUCKETS) * 2
        response = await self.client.search(
            index=self.index_name,
            size=0,
            aggs={"by_type": {"terms": {"field": "type", "size": size}}},
        )
        return (_body(response).get("aggregations") or {}).get("by_type", {})

    @storage_operation("cleanup_old_messages")
    async def cleanup_old_messages(self, older_than_days: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        response = await self.client.delete_by_query(
            index=self.index_name,
            query={"range": {"receivedAt": {"lt": cutoff.isoformat()}}},
            refresh=True,
        )
        deleted = _body(response).get("deleted", 0)
        logger.info(f"Removed {deleted} messages older than {older_than_days} days from {self.index_name}")
        return deleted

    async def get_health_status(self) -> StorageHealthStatus:
        try:
            health = await self._cluster_health()
        except Exception as e:
            return StorageHealthStatus(status=HealthState.UNHEALTHY, details={"error": str(e)})

        cluster_status = health.get("status")
        return StorageHealthStatus(
            status=CLUSTER_STATUS.get(cluster_status, HealthState.UNHEALTHY),
            details={
                "cluster_status": cluster_status,
                "number_of_nodes": health.get("number_of_nodes"),
                "active_shards": health.get("active_shards"),
            },
        )

    @storage_operation("health")
    async def _cluster_health(self) -> Dict[str, Any]:
        return _body(await self.client.cluster.health(index=self.index_name))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.client.close()
        logger.info(f"Elasticsearch storage closed ({self.index_name})")
