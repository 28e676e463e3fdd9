import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from webhook_inbox.common.errors import ValidationError


class NotificationType(str, Enum):
    QUOTA_EXCEED = "quota_exceed"
    CHANNEL_UPDATE = "channel_update"
    CHANNEL_TEST = "channel_test"
    BALANCE_LOW = "balance_low"
    SECURITY_ALERT = "security_alert"
    SYSTEM_ANNOUNCEMENT = "system_announcement"
    PROMOTIONAL_ACTIVITY = "promotional_activity"
    MODEL_PRICING_UPDATE = "model_pricing_update"
    ANTI_LOSS_CONTACT = "anti_loss_contact"
    TEST = "test"


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WebhookPayload(CamelModel):
    """Body of an inbound webhook call."""

    type: str = Field(min_length=1)
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    values: Optional[Any] = None
    timestamp: int = Field(gt=0)


class WebhookRequest(WebhookPayload):
    """Inbound payload plus the request metadata captured at ingestion."""

    user_agent: Optional[str] = None
    source_ip: Optional[str] = None
    signature: Optional[str] = None
    processed: bool = False


class WebhookMessage(CamelModel):
    id: str
    type: str
    title: str
    content: str
    values: Optional[Any] = None
    timestamp: int
    received_at: datetime
    user_agent: Optional[str] = None
    source_ip: Optional[str] = None
    signature: Optional[str] = None
    processed: bool = False

    @field_validator("received_at")
    @classmethod
    def _received_at_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @classmethod
    def from_request(cls, message_id: str, received_at: datetime, request: WebhookRequest) -> "WebhookMessage":
        return cls(
            id=message_id,
            received_at=received_at,
            **request.model_dump(),
        )

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready camelCase representation used by the API and the WebSocket feed."""
        return self.model_dump(mode="json", by_alias=True)


class WebhookQuery(CamelModel):
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)
    type: Optional[str] = None
    search: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    processed: Optional[bool] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _dates_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class WebhookListResponse(CamelModel):
    messages: List[WebhookMessage]
    total: int
    page: int
    page_size: int
    total_pages: int

    @classmethod
    def build(cls, messages: List[WebhookMessage], total: int, query: WebhookQuery) -> "WebhookListResponse":
        return cls(
            messages=messages,
            total=total,
            page=query.page,
            page_size=query.page_size,
            total_pages=math.ceil(total / query.page_size),
        )


class TypeCount(CamelModel):
    type: str
    count: int


class StorageStats(CamelModel):
    total: int
    by_type: List[TypeCount] = Field(default_factory=list)
    last_24_hours: int = Field(default=0, alias="last24Hours")


class StorageHealthStatus(CamelModel):
    status: HealthState
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthState.HEALTHY


UPDATABLE_FIELDS = {
    "type",
    "title",
    "content",
    "values",
    "timestamp",
    "user_agent",
    "source_ip",
    "signature",
    "processed",
}
_ALIASES = {to_camel(name): name for name in UPDATABLE_FIELDS}


def normalize_updates(updates: Dict[str, Any]) -> Dict[str, Any]:
    """Map a partial update (snake_case or camelCase keys) onto updatable field names."""
    normalized = {}
    for key, value in updates.items():
        name = _ALIASES.get(key, key)
        if name not in UPDATABLE_FIELDS:
            raise ValidationError(f"Field cannot be updated: {key}")
        normalized[name] = value
    if "timestamp" in normalized:
        normalized["timestamp"] = int(normalized["timestamp"])
    if "processed" in normalized:
        normalized["processed"] = bool(normalized["processed"])
    return normalized
