"""Vigil configuration management using pydantic-settings.

Loads settings from environment variables (with VIGIL_ prefix) and .env files.
Nested settings use '__' as delimiter (e.g., VIGIL_AGENT__PORT=42699).

The settings object is constructed once at process start and handed to
each component's constructor; components never read the environment
themselves.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseModel):
    """Local agent connection and discovery settings."""

    host: str = "127.0.0.1"
    port: int = 42699
    request_timeout: float = 5.0
    initial_backoff: float = 1.0
    max_backoff: float = 60.0
    max_readiness_attempts: int = 10
    health_check_interval: float = 30.0


class TracingSettings(BaseModel):
    """Span buffering, batching and propagation settings."""

    enabled: bool = True
    transmission_delay_ms: int = 1000
    min_delay_before_sending_spans_ms: int = 1000
    force_transmission_starting_at: int = 500
    max_buffered_spans: int = 1000
    span_batching_enabled: bool = False
    batch_threshold_ms: int = 10
    batchable_span_names: list[str] = Field(default_factory=lambda: ["redis"])
    long_trace_ids: bool = False
    stack_trace_length: int = 10
    extra_http_headers: list[str] = Field(default_factory=list)
    ignore_endpoints: dict[str, Any] = Field(default_factory=dict)

    @field_validator("extra_http_headers")
    @classmethod
    def _lower_case_headers(cls, value: list[str]) -> list[str]:
        return [header.strip().lower() for header in value if header and header.strip()]


class BackendSettings(BaseModel):
    """Direct-to-backend connection (deployments without a local agent)."""

    endpoint_url: str | None = None
    agent_key: str | None = None
    timeout: float = 5.0
    stop_on_failure: bool = False
    max_consecutive_failures: int = 3


class SecretsSettings(BaseModel):
    """Secrets scrubbing rules."""

    matcher_mode: str = "contains-ignore-case"
    keywords: list[str] = Field(default_factory=lambda: ["key", "pass", "secret"])


class LogSettings(BaseModel):
    """Logging settings.

    With ``configure`` off the host application's own structlog setup is
    left untouched.
    """

    level: str = "INFO"
    format: str = "json"
    configure: bool = True


class MetricsSettings(BaseModel):
    """Tracing metrics transmission settings."""

    enabled: bool = True
    transmission_delay_ms: int = 1000


class VigilSettings(BaseSettings):
    """Root settings for vigil.

    Settings are loaded from environment variables with the VIGIL_ prefix
    and from .env files. Nested settings use '__' as delimiter.

    Examples:
        VIGIL_AGENT__HOST=10.0.0.12
        VIGIL_TRACING__SPAN_BATCHING_ENABLED=true
        VIGIL_IGNORE_ENDPOINTS="redis:get,type;kafka:consume"
        VIGIL_IGNORE_ENDPOINTS_PATH=/etc/vigil/tracing.yaml
    """

    model_config = SettingsConfigDict(
        env_prefix="VIGIL_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    service_name: str | None = None
    ignore_endpoints: str | None = None
    ignore_endpoints_path: str | None = None

    agent: AgentSettings = Field(default_factory=AgentSettings)
    tracing: TracingSettings = Field(default_factory=TracingSettings)
    backend: BackendSettings = Field(default_factory=BackendSettings)
    secrets: SecretsSettings = Field(default_factory=SecretsSettings)
    log: LogSettings = Field(default_factory=LogSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)


def get_settings(**overrides: object) -> VigilSettings:
    """Create a VigilSettings instance with optional overrides."""
    return VigilSettings(**overrides)
