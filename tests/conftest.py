import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from webhook_inbox.common.config import (
    InboxConfig,
    StorageConfig,
    StorageSettings,
    StorageType,
)
from webhook_inbox.common.errors import NotFoundError
from webhook_inbox.common.models import (
    HealthState,
    StorageHealthStatus,
    StorageStats,
    TypeCount,
    WebhookListResponse,
    WebhookMessage,
    WebhookRequest,
    normalize_updates,
)
from webhook_inbox.common.signing import generate_signature
from webhook_inbox.server.server import create_app
from webhook_inbox.storage.base import StorageAdapter


class MockStorageAdapter(StorageAdapter):
    """In-memory implementation of StorageAdapter for testing."""

    backend_name = "mock"

    def __init__(self):
        self.messages = {}
        self.initialized = False
        self.closed = False
        self.health = StorageHealthStatus(status=HealthState.HEALTHY, details={"connection": "active"})
        self._sequence = 0

        # Create mocks that we can use to override behavior in tests
        self._store_message_mock = MagicMock(side_effect=self._store_message_impl)
        self._get_messages_mock = MagicMock(side_effect=self._get_messages_impl)
        self._get_message_by_id_mock = MagicMock(side_effect=self._get_message_by_id_impl)
        self._update_message_mock = MagicMock(side_effect=self._update_message_impl)
        self._delete_message_mock = MagicMock(side_effect=self._delete_message_impl)
        self._get_stats_mock = MagicMock(side_effect=self._get_stats_impl)
        self._cleanup_mock = MagicMock(side_effect=self._cleanup_impl)

    async def initialize(self):
        self.initialized = True

    async def store_message(self, data):
        """Implementation of abstract method that delegates to a mockable method."""
        return await self._store_message_mock(data)

    async def store_messages(self, data):
        return [await self.store_message(item) for item in data]

    async def get_messages(self, query):
        """Implementation of abstract method that delegates to a mockable method."""
        return await self._get_messages_mock(query)

    async def get_message_by_id(self, message_id):
        """Implementation of abstract method that delegates to a mockable method."""
        return await self._get_message_by_id_mock(message_id)

    async def update_message(self, message_id, updates):
        """Implementation of abstract method that delegates to a mockable method."""
        return await self._update_message_mock(message_id, updates)

    async def delete_message(self, message_id):
        """Implementation of abstract method that delegates to a mockable method."""
        return await self._delete_message_mock(message_id)

    async def get_stats(self):
        """Implementation of abstract method that delegates to a mockable method."""
        return await self._get_stats_mock()

    async def cleanup_old_messages(self, older_than_days):
        """Implementation of abstract method that delegates to a mockable method."""
        return await self._cleanup_mock(older_than_days)

    async def get_health_status(self):
        return self.health

    async def close(self):
        self.closed = True

    async def _store_message_impl(self, data):
        """Actual implementation for store_message."""
        self._sequence += 1
        received_at = datetime.now(timezone.utc) + timedelta(microseconds=self._sequence)
        message = WebhookMessage.from_request(f"mock-message-{self._sequence}", received_at, data)
        self.messages[message.id] = message
        return message

    async def _get_messages_impl(self, query):
        """Actual implementation for get_messages."""
        matches = []
        for message in self.messages.values():
            if query.type and message.type != query.type:
                continue
            if query.processed is not None and message.processed != query.processed:
                continue
            if query.start_date and message.received_at < query.start_date:
                continue
            if query.end_date and message.received_at > query.end_date:
                continue
            if query.search:
                needle = query.search.lower()
                haystack = f"{message.title} {message.content} {message.type}".lower()
                if needle not in haystack:
                    continue
            matches.append(message)

        matches.sort(key=lambda message: message.received_at, reverse=True)
        page = matches[query.offset:query.offset + query.page_size]
        return WebhookListResponse.build(page, len(matches), query)

    async def _get_message_by_id_impl(self, message_id):
        """Actual implementation for get_message_by_id."""
        return self.messages.get(message_id)

    async def _update_message_impl(self, message_id, updates):
        """Actual implementation for update_message."""
        if message_id not in self.messages:
            raise NotFoundError(message_id)
        updated = self.messages[message_id].model_copy(update=normalize_updates(updates))
        self.messages[message_id] = updated
        return updated

    async def _delete_message_impl(self, message_id):
        """Actual implementation for delete_message."""
        if self.messages.pop(message_id, None) is None:
            raise NotFoundError(message_id)

    async def _get_stats_impl(self):
        """Actual implementation for get_stats."""
        counts = {}
        for message in self.messages.values():
            counts[message.type] = counts.get(message.type, 0) + 1
        by_type = [
            TypeCount(type=name, count=count)
            for name, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ]
        cutoff = datetime.now(timezone.utc) - timedelta(hours=24)
        recent = sum(1 for message in self.messages.values() if message.received_at >= cutoff)
        return StorageStats(total=len(self.messages), by_type=by_type, last_24_hours=recent)

    async def _cleanup_impl(self, older_than_days):
        """Actual implementation for cleanup_old_messages."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        stale = [key for key, message in self.messages.items() if message.received_at < cutoff]
        for key in stale:
            del self.messages[key]
        return len(stale)

    def age_message(self, message_id, days):
        """Helper method to push a stored message into the past."""
        message = self.messages[message_id]
        self.messages[message_id] = message.model_copy(
            update={"received_at": message.received_at - timedelta(days=days)}
        )


@pytest.fixture
def mock_storage():
    """Fixture that provides an in-memory storage adapter."""
    return MockStorageAdapter()


@pytest.fixture
def sample_payload():
    """Fixture that provides a sample notification payload."""
    return {
        "type": "balance_low",
        "title": "Low balance",
        "content": "Your balance is below $5",
        "values": {"balance": 4.2},
        "timestamp": 1700000000,
    }


@pytest.fixture
def sample_request(sample_payload):
    """Fixture that provides a sample webhook request."""
    return WebhookRequest(**sample_payload, user_agent="test-agent", source_ip="127.0.0.1")


@pytest.fixture
def inbox_config():
    """Fixture that provides a sample inbox configuration."""
    return InboxConfig(
        host="127.0.0.1",
        port=3000,
        log_level="INFO",
        storage=StorageSettings(
            primary=StorageConfig(type=StorageType.SQLITE, database=":memory:"),
        ),
    )


@pytest.fixture
def signed_config(inbox_config):
    """Fixture that provides a configuration with a webhook secret."""
    return inbox_config.model_copy(update={"webhook_secret": "test-secret"})


@pytest.fixture
def admin_config(inbox_config):
    """Fixture that provides a configuration with a dashboard admin token."""
    return inbox_config.model_copy(update={"admin_token": "admin-token"})


@pytest.fixture
def sign():
    """Fixture that signs a body with the test secret."""

    def _sign(body, secret="test-secret"):
        return generate_signature(secret, body)

    return _sign


@pytest.fixture
def inbox_app(inbox_config, mock_storage):
    """Fixture that provides a configured inbox FastAPI app."""
    return create_app(inbox_config, storage=mock_storage)


@pytest.fixture
def inbox_client(inbox_app):
    """Fixture that provides a test client with the app lifespan running."""
    with TestClient(inbox_app) as client:
        yield client


@pytest.fixture
def signed_client(signed_config, mock_storage):
    """Fixture that provides a test client for an app that verifies signatures."""
    with TestClient(create_app(signed_config, storage=mock_storage)) as client:
        yield client


@pytest.fixture
def admin_client(admin_config, mock_storage):
    """Fixture that provides a test client for an app with a protected dashboard API."""
    with TestClient(create_app(admin_config, storage=mock_storage)) as client:
        yield client


@pytest.fixture
def post_webhook():
    """Fixture that posts a payload as raw JSON bytes so the exact body can be signed."""

    def _post(client, payload, **headers):
        body = payload if isinstance(payload, (bytes, str)) else json.dumps(payload)
        return client.post(
            "/webhook",
            content=body,
            headers={"Content-Type": "application/json", **headers},
        )

    return _post


@pytest.fixture
def make_storage():
    """Fixture that builds named in-memory storage adapters."""

    def _make(backend_name="mock"):
        adapter = MockStorageAdapter()
        adapter.backend_name = backend_name
        return adapter

    return _make
