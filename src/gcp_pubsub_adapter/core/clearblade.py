# gcp_pubsub_adapter/core/clearblade.py
"""
Minimal REST client for the ClearBlade platform, acting as an adapter device.

Only the two calls the adapter needs are implemented: device
authentication (whose token is also the MQTT username) and reading rows
from a named data collection.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Mapping

import httpx

from gcp_pubsub_adapter.contracts.errors import PlatformAuthError

logger = logging.getLogger(__name__)


class ClearBladeDeviceClient:
    def __init__(
        self,
        *,
        platform_url: str,
        system_key: str,
        system_secret: str,
        device_name: str,
        password: str,
        timeout: float = 30.0,
        auth_retry_interval: float = 60.0,
    ):
        self._base = platform_url.rstrip("/")
        self._system_key = system_key
        self._system_secret = system_secret
        self._device_name = device_name
        self._password = password
        self._timeout = timeout
        self._auth_retry_interval = auth_retry_interval

        self._token: str | None = None

    @property
    def system_key(self) -> str:
        return self._system_key

    @property
    def device_name(self) -> str:
        return self._device_name

    @property
    def device_token(self) -> str | None:
        return self._token

    def _headers(self) -> dict[str, str]:
        headers = {
            "ClearBlade-SystemKey": self._system_key,
            "ClearBlade-SystemSecret": self._system_secret,
        }
        if self._token:
            headers["ClearBlade-DeviceToken"] = self._token
        return headers

    async def authenticate(self) -> str:
        """
        Authenticate the adapter device once.

        Returns:
            The device token.

        Raises:
            PlatformAuthError: If the request fails or no token is returned.
        """
        url = f"{self._base}/api/v/2/devices/{self._system_key}/auth"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                r = await client.post(
                    url,
                    json={
                        "deviceName": self._device_name,
                        "password": self._password,
                    },
                    headers=self._headers(),
                )
                r.raise_for_status()
                payload = r.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise PlatformAuthError(
                f"Device '{self._device_name}' authentication failed: {exc}"
            ) from exc

        token = payload.get("deviceToken") if isinstance(payload, dict) else None
        if not token:
            raise PlatformAuthError("Authentication response carried no device token")

        self._token = token
        logger.info("Authenticated device %s", self._device_name)
        return token

    async def authenticate_with_retry(self) -> str:
        """Authenticate, retrying with a fixed backoff until it succeeds."""
        while True:
            try:
                return await self.authenticate()
            except PlatformAuthError as exc:
                logger.error("Error authenticating to platform: %s", exc)
                logger.error("Will retry in %.0f seconds", self._auth_retry_interval)
                await asyncio.sleep(self._auth_retry_interval)

    async def get_collection_rows(
        self,
        collection: str,
        equal_to: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch rows from a data collection by name.

        Args:
            collection: Collection name.
            equal_to: Column/value pairs that rows must match. None returns
                all rows.

        Raises:
            httpx.HTTPError: If the request fails.
            ValueError: If the response body is not JSON.
        """
        query: dict[str, Any] = {"PAGESIZE": 0, "PAGENUM": 0}
        if equal_to:
            query["FILTERS"] = [[{"EQ": [{k: v} for k, v in equal_to.items()]}]]

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            r = await client.get(
                f"{self._base}/api/v/1/collection/{self._system_key}/{collection}",
                params={"query": json.dumps(query)},
                headers=self._headers(),
            )
            r.raise_for_status()
            data = r.json()

        rows = data.get("DATA") if isinstance(data, dict) else None
        return list(rows or [])
