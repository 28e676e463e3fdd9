from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from webhook_inbox.common.errors import ValidationError
from webhook_inbox.common.models import (
    StorageStats,
    TypeCount,
    WebhookListResponse,
    WebhookMessage,
    WebhookPayload,
    WebhookQuery,
    ensure_utc,
    normalize_updates,
)


class TestWebhookPayload:

    def test_valid_payload(self, sample_payload):
        """Test that a complete payload validates."""
        payload = WebhookPayload.model_validate(sample_payload)
        assert payload.type == "balance_low"
        assert payload.values == {"balance": 4.2}
        assert payload.timestamp == 1700000000

    def test_values_optional(self, sample_payload):
        """Test that values may be omitted."""
        del sample_payload["values"]
        payload = WebhookPayload.model_validate(sample_payload)
        assert payload.values is None

    def test_unknown_type_accepted(self, sample_payload):
        """Test that the type field is free-form."""
        sample_payload["type"] = "something_new"
        assert WebhookPayload.model_validate(sample_payload).type == "something_new"

    @pytest.mark.parametrize("field", ["type", "title", "content", "timestamp"])
    def test_missing_required_field(self, sample_payload, field):
        """Test that each required field is enforced."""
        del sample_payload[field]
        with pytest.raises(PydanticValidationError):
            WebhookPayload.model_validate(sample_payload)

    @pytest.mark.parametrize("field", ["type", "title", "content"])
    def test_empty_string_rejected(self, sample_payload, field):
        """Test that required strings must not be empty."""
        sample_payload[field] = ""
        with pytest.raises(PydanticValidationError):
            WebhookPayload.model_validate(sample_payload)

    def test_timestamp_must_be_positive(self, sample_payload):
        """Test that non-positive timestamps are rejected."""
        sample_payload["timestamp"] = 0
        with pytest.raises(PydanticValidationError):
            WebhookPayload.model_validate(sample_payload)


class TestWebhookMessage:

    def test_from_request(self, sample_request):
        """Test building a stored message from a request."""
        received_at = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        message = WebhookMessage.from_request("abc", received_at, sample_request)

        assert message.id == "abc"
        assert message.received_at == received_at
        assert message.user_agent == "test-agent"
        assert message.processed is False

    def test_naive_received_at_is_utc(self, sample_request):
        """Test that naive datetimes are interpreted as UTC."""
        message = WebhookMessage.from_request("abc", datetime(2024, 1, 1, 12, 0), sample_request)
        assert message.received_at.tzinfo == timezone.utc

    def test_to_wire_uses_camel_case(self, sample_request):
        """Test that the wire form uses camelCase keys and ISO timestamps."""
        received_at = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        wire = WebhookMessage.from_request("abc", received_at, sample_request).to_wire()

        assert wire["receivedAt"].startswith("2024-01-02T03:04:05")
        assert wire["userAgent"] == "test-agent"
        assert wire["sourceIp"] == "127.0.0.1"
        assert wire["values"] == {"balance": 4.2}
        assert "received_at" not in wire

    def test_parses_wire_form(self, sample_request):
        """Test that a wire document validates back into a message."""
        message = WebhookMessage.from_request("abc", datetime.now(timezone.utc), sample_request)
        assert WebhookMessage.model_validate(message.to_wire()) == message


class TestWebhookQuery:

    def test_defaults(self):
        """Test the default page settings."""
        query = WebhookQuery()
        assert query.page == 1
        assert query.page_size == 20
        assert query.offset == 0

    def test_offset(self):
        """Test the offset for later pages."""
        assert WebhookQuery(page=3, page_size=10).offset == 20

    @pytest.mark.parametrize("kwargs", [{"page": 0}, {"page_size": 0}, {"page_size": 101}])
    def test_bounds(self, kwargs):
        """Test that out-of-range paging is rejected."""
        with pytest.raises(PydanticValidationError):
            WebhookQuery(**kwargs)

    def test_dates_normalized_to_utc(self):
        """Test that date filters are converted to UTC."""
        plus_two = timezone(timedelta(hours=2))
        query = WebhookQuery(start_date=datetime(2024, 1, 1, 12, 0, tzinfo=plus_two))
        assert query.start_date == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

    def test_camel_case_aliases(self):
        """Test that query parameters can be given in camelCase."""
        query = WebhookQuery.model_validate({"pageSize": 5, "startDate": "2024-01-01T00:00:00Z"})
        assert query.page_size == 5
        assert query.start_date.tzinfo == timezone.utc


class TestWebhookListResponse:

    @pytest.mark.parametrize("total,expected_pages", [(0, 0), (1, 1), (20, 1), (21, 2), (45, 3)])
    def test_total_pages(self, total, expected_pages):
        """Test that total pages is the ceiling of total over page size."""
        response = WebhookListResponse.build([], total, WebhookQuery(page_size=20))
        assert response.total_pages == expected_pages

    def test_wire_shape(self):
        """Test the camelCase list envelope."""
        response = WebhookListResponse.build([], 0, WebhookQuery())
        assert response.model_dump(by_alias=True).keys() == {
            "messages",
            "total",
            "page",
            "pageSize",
            "totalPages",
        }


class TestStorageStats:

    def test_wire_shape(self):
        """Test that stats serialize with the dashboard field names."""
        stats = StorageStats(total=3, by_type=[TypeCount(type="test", count=3)], last_24_hours=2)
        assert stats.model_dump(by_alias=True) == {
            "total": 3,
            "byType": [{"type": "test", "count": 3}],
            "last24Hours": 2,
        }


class TestNormalizeUpdates:

    def test_accepts_camel_and_snake_case(self):
        """Test that both key styles map onto field names."""
        assert normalize_updates({"sourceIp": "10.0.0.1", "user_agent": "x"}) == {
            "source_ip": "10.0.0.1",
            "user_agent": "x",
        }

    def test_coerces_types(self):
        """Test that timestamp and processed are coerced."""
        assert normalize_updates({"timestamp": "1700000000", "processed": 1}) == {
            "timestamp": 1700000000,
            "processed": True,
        }

    @pytest.mark.parametrize("key", ["id", "receivedAt", "received_at", "unknown"])
    def test_rejects_protected_fields(self, key):
        """Test that id, receivedAt and unknown fields cannot be updated."""
        with pytest.raises(ValidationError, match="Field cannot be updated"):
            normalize_updates({key: "value"})


class TestEnsureUtc:

    def test_none(self):
        """Test that None passes through."""
        assert ensure_utc(None) is None

    def test_aware_converted(self):
        """Test that aware datetimes are converted to UTC."""
        minus_five = timezone(timedelta(hours=-5))
        value = ensure_utc(datetime(2024, 1, 1, 7, 0, tzinfo=minus_five))
        assert value == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert value.tzinfo == timezone.utc
