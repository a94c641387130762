"""Configuration management for the HTTPFilterPolicy controller."""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Controller settings, read from the environment."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    # Application
    app_name: str = "htnn-controller"
    app_version: str = "0.1.0"

    # Namespaces
    namespace: Optional[str] = Field(
        None, description="Namespace to watch, unset means cluster wide"
    )
    istio_root_namespace: str = Field(
        "istio-system", description="Namespace that receives generated EnvoyFilters"
    )

    # Kubernetes API
    api_request_timeout: float = Field(30.0, description="Seconds per API call")

    # Scheduler
    requeue_base_delay: float = 1.0
    requeue_max_delay: float = 300.0

    # Logging
    log_level: LogLevel = LogLevel.INFO
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_json: bool = False

    # Metrics and health
    metrics_enabled: bool = True
    metrics_port: int = 9090
    liveness_endpoint: str = "http://0.0.0.0:8080/healthz"

    @field_validator("namespace", mode="before")
    @classmethod
    def empty_namespace_is_cluster_wide(cls, v):
        """Treat an empty NAMESPACE as cluster wide."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("requeue_max_delay")
    @classmethod
    def max_delay_not_below_base(cls, v, info):
        base = info.data.get("requeue_base_delay", 1.0)
        if v < base:
            raise ValueError("requeue_max_delay must be >= requeue_base_delay")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
