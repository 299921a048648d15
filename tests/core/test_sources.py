# tests/core/test_sources.py
from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from gcp_pubsub_adapter.contracts.errors import ConfigurationError, PlatformAuthError
from gcp_pubsub_adapter.core.clearblade import ClearBladeDeviceClient
from gcp_pubsub_adapter.core.settings import resolve
from gcp_pubsub_adapter.core.sources import (
    CollectionSettingsSource,
    FileSettingsSource,
)


def _install_transport(monkeypatch, handler) -> None:
    transport = httpx.MockTransport(handler)
    real_client = httpx.AsyncClient

    monkeypatch.setattr(
        httpx,
        "AsyncClient",
        lambda **kw: real_client(transport=transport, **kw),
    )


def _client() -> ClearBladeDeviceClient:
    return ClearBladeDeviceClient(
        platform_url="http://platform",
        system_key="sk",
        system_secret="ss",
        device_name="gcpPubSubAdapter",
        password="pw",
        auth_retry_interval=0.01,
    )


def _rows_handler(rows, seen: list[httpx.Request] | None = None):
    async def handler(request: httpx.Request):
        if seen is not None:
            seen.append(request)
        if request.url.path == "/api/v/1/collection/sk/adapter_config":
            return httpx.Response(200, json={"DATA": rows, "TOTAL": len(rows)})
        raise AssertionError(f"Unexpected URL {request.url}")

    return handler


class TestClearBladeDeviceClient:
    @pytest.mark.asyncio
    async def test_authenticate(self, monkeypatch):
        seen = []

        async def handler(request: httpx.Request):
            seen.append(request)
            assert request.url.path == "/api/v/2/devices/sk/auth"
            return httpx.Response(200, json={"deviceToken": "tok"})

        _install_transport(monkeypatch, handler)
        client = _client()

        assert await client.authenticate() == "tok"
        assert client.device_token == "tok"

        body = json.loads(seen[0].content)
        assert body == {"deviceName": "gcpPubSubAdapter", "password": "pw"}
        assert seen[0].headers["ClearBlade-SystemKey"] == "sk"
        assert seen[0].headers["ClearBlade-SystemSecret"] == "ss"

    @pytest.mark.asyncio
    async def test_authenticate_rejected(self, monkeypatch):
        async def handler(request: httpx.Request):
            return httpx.Response(401, json={"error": "bad password"})

        _install_transport(monkeypatch, handler)

        with pytest.raises(PlatformAuthError):
            await _client().authenticate()

    @pytest.mark.asyncio
    async def test_authenticate_without_token(self, monkeypatch):
        async def handler(request: httpx.Request):
            return httpx.Response(200, json={})

        _install_transport(monkeypatch, handler)

        with pytest.raises(PlatformAuthError, match="no device token"):
            await _client().authenticate()

    @pytest.mark.asyncio
    async def test_authenticate_with_retry(self, monkeypatch):
        calls = []

        async def handler(request: httpx.Request):
            calls.append("auth")
            if len(calls) < 3:
                return httpx.Response(500)
            return httpx.Response(200, json={"deviceToken": "tok"})

        _install_transport(monkeypatch, handler)

        assert await _client().authenticate_with_retry() == "tok"
        assert calls == ["auth", "auth", "auth"]

    @pytest.mark.asyncio
    async def test_collection_query_filters_by_device(self, monkeypatch):
        seen = []
        _install_transport(monkeypatch, _rows_handler([], seen))

        await _client().get_collection_rows(
            "adapter_config", {"adapter_device_name": "gcpPubSubAdapter"}
        )

        query = json.loads(seen[0].url.params["query"])
        assert query["FILTERS"] == [
            [{"EQ": [{"adapter_device_name": "gcpPubSubAdapter"}]}]
        ]


class TestCollectionSettingsSource:
    @pytest.mark.asyncio
    async def test_row_settings_and_topic_root(self, monkeypatch):
        row = {
            "adapter_device_name": "gcpPubSubAdapter",
            "topic_root": "site/a",
            "adapter_settings": json.dumps(
                {"gcpProjectID": "p1", "gcpCredsPath": "/c.json", "gcpPubTopic": "t"}
            ),
        }
        _install_transport(monkeypatch, _rows_handler([row]))

        raw = await CollectionSettingsSource(_client()).fetch()
        config = resolve(raw)

        assert config.topic_root == "site/a"
        assert config.publish_topic == "t"

    @pytest.mark.asyncio
    async def test_row_topic_root_overrides_blob(self, monkeypatch):
        row = {
            "topic_root": "from/column",
            "adapter_settings": '{"topic_root": "from/blob"}',
        }
        _install_transport(monkeypatch, _rows_handler([row]))

        raw = await CollectionSettingsSource(_client()).fetch()

        assert raw["topic_root"] == "from/column"

    @pytest.mark.asyncio
    async def test_no_rows(self, monkeypatch):
        _install_transport(monkeypatch, _rows_handler([]))

        assert await CollectionSettingsSource(_client()).fetch() == {}

    @pytest.mark.asyncio
    async def test_http_error_yields_empty_settings(self, monkeypatch):
        async def handler(request: httpx.Request):
            return httpx.Response(500)

        _install_transport(monkeypatch, handler)

        raw = await CollectionSettingsSource(_client()).fetch()

        assert raw == {}
        with pytest.raises(ConfigurationError):
            resolve(raw)

    @pytest.mark.asyncio
    async def test_non_json_body_yields_empty_settings(self, monkeypatch, caplog):
        async def handler(request: httpx.Request):
            return httpx.Response(
                200,
                text="<html>proxy</html>",
                headers={"Content-Type": "text/html"},
            )

        _install_transport(monkeypatch, handler)

        raw = await CollectionSettingsSource(_client()).fetch()

        assert raw == {}
        assert "Error retrieving adapter configuration" in caplog.text

    @pytest.mark.asyncio
    @pytest.mark.parametrize("settings", [None, "{broken", "[1, 2]"])
    async def test_unusable_settings_column(self, monkeypatch, settings):
        row = {"topic_root": None, "adapter_settings": settings}
        _install_transport(monkeypatch, _rows_handler([row]))

        assert await CollectionSettingsSource(_client()).fetch() == {}


class TestFileSettingsSource:
    @pytest.mark.asyncio
    async def test_fetch(self, tmp_path: Path):
        path = tmp_path / "adapter.yaml"
        path.write_text(
            "gcpProjectID: p1\ngcpCredsPath: /c.json\ngcpSubTopic: s\n",
            encoding="utf-8",
        )

        config = resolve(await FileSettingsSource(path).fetch())

        assert config.subscribe_topic == "s"

    @pytest.mark.asyncio
    async def test_missing_file_is_configuration_error(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="Cannot load settings file"):
            await FileSettingsSource(tmp_path / "absent.yaml").fetch()
