# gcp_pubsub_adapter/core/config.py
"""
Bootstrap configuration for the adapter process.

These settings locate the platform and identify the adapter device; the
relay settings themselves (project, topics, intervals) are fetched at
startup from the platform's adapter config collection, or from a local
file, and decoded by ``core.settings``.

Environment variables (prefixed ``PUBSUB_ADAPTER_``) override defaults.
When started as a program the same fields are also accepted as flags.
"""
from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PLATFORM_URL = "http://localhost:9000"
DEFAULT_MESSAGING_URL = "localhost:1883"
DEFAULT_MQTT_PORT = 1883

_LOG_LEVELS = {"debug", "info", "warn", "warning", "error", "fatal", "critical"}


class AdapterSettings(BaseSettings):
    """Environment-driven settings with sensible defaults."""

    model_config = SettingsConfigDict(
        env_prefix="PUBSUB_ADAPTER_",
        env_file=".env",
        extra="ignore",
    )

    # Platform location and device identity
    platform_url: str = DEFAULT_PLATFORM_URL
    messaging_url: str = DEFAULT_MESSAGING_URL
    system_key: str = Field(description="Platform system key")
    system_secret: str = Field(description="Platform system secret")
    device_name: str = "gcpPubSubAdapter"
    password: str = Field(description="Active key for device authentication")

    log_level: str = "info"

    # Where the relay settings come from
    adapter_config_collection: str = "adapter_config"
    settings_file: str = Field(
        default="",
        description="Local YAML/JSON settings file (empty = use the collection)",
    )

    # Retry behaviour
    reconnect_interval: float = Field(default=5.0, gt=0)
    subscribe_retry_interval: float = Field(default=30.0, gt=0)
    auth_retry_interval: float = Field(default=60.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)

    @field_validator("system_key", "system_secret", "password")
    @classmethod
    def _required(cls, value: str) -> str:
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("messaging_url")
    @classmethod
    def _valid_port(cls, value: str) -> str:
        _, sep, port = value.split("://", 1)[-1].rpartition(":")
        if sep and not port.isdigit():
            raise ValueError(f"invalid port in messaging URL '{value}'")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.lower() not in _LOG_LEVELS:
            raise ValueError(f"unknown log level '{value}'")
        return value.lower()

    @property
    def mqtt_host(self) -> str:
        return self._split_messaging_url()[0]

    @property
    def mqtt_port(self) -> int:
        return self._split_messaging_url()[1]

    def _split_messaging_url(self) -> tuple[str, int]:
        url = self.messaging_url.split("://", 1)[-1]
        host, sep, port = url.rpartition(":")
        if not sep:
            return url, DEFAULT_MQTT_PORT
        return host, int(port)
