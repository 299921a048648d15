# gcp_pubsub_adapter/core/sources.py
"""
Sources for the adapter settings blob.

The relay settings normally live in a platform data collection, one row
per adapter device:

    | adapter_device_name | topic_root | adapter_settings (JSON string) |

A local file can be used instead, which is convenient for development
and for deployments without the collection.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import httpx
import yaml

from gcp_pubsub_adapter.contracts.errors import ConfigurationError
from gcp_pubsub_adapter.core.clearblade import ClearBladeDeviceClient
from gcp_pubsub_adapter.core.loader import load_settings_file

logger = logging.getLogger(__name__)


@runtime_checkable
class SettingsSource(Protocol):
    """Fetches the raw adapter settings mapping."""

    async def fetch(self) -> dict[str, Any]:
        ...


class CollectionSettingsSource:
    """
    Reads adapter settings from a platform data collection.

    Retrieval problems are not fatal here: they are logged and an empty
    mapping is returned, leaving the settings resolver to report which
    required keys are missing.
    """

    def __init__(
        self,
        client: ClearBladeDeviceClient,
        collection: str = "adapter_config",
    ) -> None:
        self._client = client
        self._collection = collection

    async def fetch(self) -> dict[str, Any]:
        logger.info("Retrieving adapter config from collection %s", self._collection)

        try:
            rows = await self._client.get_collection_rows(
                self._collection,
                {"adapter_device_name": self._client.device_name},
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Error retrieving adapter configuration: %s", exc)
            return {}

        if not rows:
            logger.info("No adapter config rows returned for %s", self._client.device_name)
            return {}

        row = rows[0]
        settings = self._parse_settings(row.get("adapter_settings"))

        topic_root = row.get("topic_root")
        if topic_root is not None:
            logger.debug("Setting topic_root to %s", topic_root)
            settings["topic_root"] = topic_root
        else:
            logger.info("Topic root not set in adapter config")

        return settings

    @staticmethod
    def _parse_settings(raw: Any) -> dict[str, Any]:
        if raw is None:
            logger.info("Adapter settings are empty, defaulting all settings")
            return {}

        if isinstance(raw, dict):
            return dict(raw)

        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.error("Error decoding adapter settings: %s. Defaulting all settings", exc)
            return {}

        if not isinstance(parsed, dict):
            logger.error("Adapter settings are not a JSON object. Defaulting all settings")
            return {}

        return parsed


class FileSettingsSource:
    """Reads adapter settings from a local YAML or JSON file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    async def fetch(self) -> dict[str, Any]:
        try:
            return load_settings_file(self._path)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise ConfigurationError(
                f"Cannot load settings file '{self._path}': {exc}"
            ) from exc
