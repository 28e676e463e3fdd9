from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageType(str, Enum):
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    ELASTICSEARCH = "elasticsearch"


RELATIONAL_STORAGE_TYPES = (StorageType.SQLITE, StorageType.POSTGRESQL, StorageType.MYSQL)


class StorageConfig(BaseModel):
    type: StorageType = StorageType.SQLITE
    connection_string: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    ssl: bool = False
    max_connections: int = Field(default=10, ge=1, le=100)
    timeout: float = Field(default=30.0, gt=0)  # seconds
    index_name: str = "webhook-messages"  # Elasticsearch only

    @property
    def is_relational(self) -> bool:
        return self.type in RELATIONAL_STORAGE_TYPES


class StorageSettings(BaseModel):
    primary: StorageConfig = StorageConfig()
    fallback: Optional[StorageConfig] = None
    enable_fallback: bool = False


class WebSocketConfig(BaseModel):
    path: str = "/ws"
    heartbeat_interval: float = Field(default=30.0, gt=0)  # seconds


class MetricsConfig(BaseModel):
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090


class InboxConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="WEBHOOK_INBOX_",
        extra="ignore",
    )

    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: List[str] = ["http://localhost:3000"]

    webhook_secret: Optional[str] = None
    require_signature: bool = False
    admin_token: Optional[str] = None

    storage: StorageSettings = StorageSettings()
    websocket: WebSocketConfig = WebSocketConfig()
    metrics: MetricsConfig = MetricsConfig()

    def validate_storage_config(self) -> None:
        if self.storage.enable_fallback and not self.storage.fallback:
            raise ValueError("Fallback storage enabled but no fallback configuration provided")
        if self.require_signature and not self.webhook_secret:
            raise ValueError("Signature required but no webhook secret configured")

    def fallback_storage_config(self) -> Optional[StorageConfig]:
        if self.storage.enable_fallback:
            return self.storage.fallback
        return None
