# gcp_pubsub_adapter/core/settings.py
"""
Decoding of the adapter settings blob into a typed relay configuration.

The settings blob is a JSON object stored alongside the adapter device
definition. Two keys are mandatory, since without them the cloud broker
cannot be reached; everything else falls back to a default. A present
optional key with the wrong type is logged and ignored rather than
aborting startup.

Example blob:
    {
        "gcpProjectID": "my-project",
        "gcpCredsPath": "/etc/adapter/creds.json",
        "gcpPubTopic": "device-events",
        "gcpSubTopic": "device-commands",
        "gcpPullInterval": 10,
        "gcpSubPreCreated": false,
        "topic_root": "gcp/pubsub"
    }
"""
from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
)

from gcp_pubsub_adapter.contracts.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 10
DEFAULT_TOPIC_ROOT = "gcp/pubsub"

_OPTIONAL_FIELDS = (
    "publish_topic",
    "subscribe_topic",
    "poll_interval_seconds",
    "subscription_pre_created",
    "topic_root",
)


class RelayConfig(BaseModel):
    """
    Immutable relay configuration.

    Field aliases are the keys used in the settings blob.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="ignore",
        strict=True,
    )

    cloud_project_id: str = Field(alias="gcpProjectID", min_length=1)
    credentials_path: str = Field(alias="gcpCredsPath", min_length=1)
    publish_topic: str = Field(default="", alias="gcpPubTopic")
    subscribe_topic: str = Field(default="", alias="gcpSubTopic")
    poll_interval_seconds: int = Field(
        default=DEFAULT_POLL_INTERVAL, alias="gcpPullInterval", gt=0
    )
    subscription_pre_created: bool = Field(default=False, alias="gcpSubPreCreated")
    topic_root: str = Field(default=DEFAULT_TOPIC_ROOT, alias="topic_root")

    @field_validator(*_OPTIONAL_FIELDS, mode="wrap")
    @classmethod
    def _keep_default_on_error(
        cls,
        value: Any,
        handler: ValidatorFunctionWrapHandler,
        info: ValidationInfo,
    ) -> Any:
        field = cls.model_fields[info.field_name]
        default = field.default

        if value is None:
            return default

        # JSON numbers may arrive as floats; intervals are whole seconds
        if (
            info.field_name == "poll_interval_seconds"
            and isinstance(value, float)
        ):
            value = int(value)

        if info.field_name == "topic_root" and value == "":
            logger.warning("Empty %s, using default %r", field.alias, default)
            return default

        try:
            return handler(value)
        except ValidationError as exc:
            logger.warning(
                "Ignoring invalid %s value %r (%s), using default %r",
                field.alias,
                value,
                exc.errors()[0]["msg"],
                default,
            )
            return default

    @property
    def publish_enabled(self) -> bool:
        """Whether platform messages are relayed to the cloud."""
        return bool(self.publish_topic)

    @property
    def subscribe_enabled(self) -> bool:
        """Whether cloud messages are relayed to the platform."""
        return bool(self.subscribe_topic)

    @property
    def platform_publish_topic(self) -> str:
        """Platform topic carrying payloads to forward to the cloud."""
        return f"{self.topic_root}/publish"

    @property
    def platform_output_topic(self) -> str:
        """Platform topic receiving relayed cloud messages."""
        return self.topic_root

    @property
    def platform_error_topic(self) -> str:
        """Platform topic receiving cloud receive errors."""
        return f"{self.topic_root}/error"


def _decode(raw: bytes | str | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(raw, Mapping):
        return raw

    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Adapter settings are not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Adapter settings must be a JSON object, got {type(data).__name__}"
        )
    return data


def _describe(error: Mapping[str, Any]) -> str:
    key = ".".join(str(part) for part in error["loc"])
    if error["type"] in ("missing", "string_too_short"):
        return f"{key} not provided"
    return f"{key}: {error['msg']}"


def resolve(raw: bytes | str | Mapping[str, Any]) -> RelayConfig:
    """
    Decode an adapter settings blob.

    Args:
        raw: JSON document (bytes or str) or an already decoded mapping.

    Returns:
        The immutable relay configuration.

    Raises:
        ConfigurationError: If the blob cannot be decoded or a required key
            is missing, empty or mistyped. All problems are reported at once.
    """
    data = _decode(raw)

    try:
        config = RelayConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(
            "Invalid adapter settings, authentication to GCP is not possible",
            [_describe(e) for e in exc.errors()],
        ) from None

    for name in _OPTIONAL_FIELDS:
        alias = RelayConfig.model_fields[name].alias
        if data.get(alias) is None:
            logger.info("No %s value found, using default", alias)

    logger.debug(
        "Resolved relay config: project=%s pub_topic=%r sub_topic=%r "
        "interval=%ds pre_created=%s topic_root=%s",
        config.cloud_project_id,
        config.publish_topic,
        config.subscribe_topic,
        config.poll_interval_seconds,
        config.subscription_pre_created,
        config.topic_root,
    )
    return config
