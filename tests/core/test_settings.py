# tests/core/test_settings.py
from __future__ import annotations

import json
import logging

import pytest

from gcp_pubsub_adapter.contracts.errors import ConfigurationError
from gcp_pubsub_adapter.core.settings import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_TOPIC_ROOT,
    RelayConfig,
    resolve,
)


class TestResolveRequiredKeys:
    def test_minimal_blob_uses_defaults(self):
        config = resolve(b'{"gcpProjectID":"p1","gcpCredsPath":"/c.json"}')

        assert config.cloud_project_id == "p1"
        assert config.credentials_path == "/c.json"
        assert config.publish_topic == ""
        assert config.subscribe_topic == ""
        assert config.poll_interval_seconds == DEFAULT_POLL_INTERVAL
        assert config.subscription_pre_created is False
        assert config.topic_root == DEFAULT_TOPIC_ROOT

    def test_missing_project_id(self):
        with pytest.raises(ConfigurationError) as excinfo:
            resolve({"gcpCredsPath": "/c.json"})

        assert excinfo.value.errors == ["gcpProjectID not provided"]

    def test_empty_credentials_path(self):
        with pytest.raises(ConfigurationError) as excinfo:
            resolve({"gcpProjectID": "p1", "gcpCredsPath": ""})

        assert excinfo.value.errors == ["gcpCredsPath not provided"]

    def test_all_problems_reported_together(self):
        with pytest.raises(ConfigurationError) as excinfo:
            resolve("{}")

        assert sorted(excinfo.value.errors) == [
            "gcpCredsPath not provided",
            "gcpProjectID not provided",
        ]
        assert "authentication to GCP is not possible" in str(excinfo.value)

    def test_mistyped_required_key_is_an_error(self):
        with pytest.raises(ConfigurationError) as excinfo:
            resolve({"gcpProjectID": 42, "gcpCredsPath": "/c.json"})

        assert len(excinfo.value.errors) == 1
        assert excinfo.value.errors[0].startswith("gcpProjectID:")


class TestResolveDecoding:
    def test_invalid_json(self):
        with pytest.raises(ConfigurationError, match="not valid JSON"):
            resolve(b"{not json")

    def test_json_array_rejected(self):
        with pytest.raises(ConfigurationError, match="must be a JSON object"):
            resolve("[1, 2]")

    def test_accepts_str_and_mapping(self):
        blob = {"gcpProjectID": "p1", "gcpCredsPath": "/c.json", "gcpPubTopic": "t"}

        assert resolve(json.dumps(blob)) == resolve(blob)


class TestResolveOptionalKeys:
    BASE = {"gcpProjectID": "p1", "gcpCredsPath": "/c.json"}

    def test_full_blob(self):
        config = resolve(
            {
                **self.BASE,
                "gcpPubTopic": "events",
                "gcpSubTopic": "commands",
                "gcpPullInterval": 3,
                "gcpSubPreCreated": True,
                "topic_root": "site/a",
            }
        )

        assert config.publish_topic == "events"
        assert config.subscribe_topic == "commands"
        assert config.poll_interval_seconds == 3
        assert config.subscription_pre_created is True
        assert config.platform_publish_topic == "site/a/publish"
        assert config.platform_output_topic == "site/a"
        assert config.platform_error_topic == "site/a/error"

    def test_wrong_type_falls_back_to_default(self, caplog):
        with caplog.at_level(logging.WARNING):
            config = resolve(
                {
                    **self.BASE,
                    "gcpPullInterval": "10",
                    "gcpSubPreCreated": "yes",
                    "gcpPubTopic": 7,
                }
            )

        assert config.poll_interval_seconds == DEFAULT_POLL_INTERVAL
        assert config.subscription_pre_created is False
        assert config.publish_topic == ""
        assert "gcpPullInterval" in caplog.text
        assert "gcpSubPreCreated" in caplog.text

    def test_bool_is_not_an_interval(self):
        config = resolve({**self.BASE, "gcpPullInterval": True})

        assert config.poll_interval_seconds == DEFAULT_POLL_INTERVAL

    def test_null_treated_as_absent(self):
        config = resolve({**self.BASE, "gcpSubTopic": None, "topic_root": None})

        assert config.subscribe_topic == ""
        assert config.topic_root == DEFAULT_TOPIC_ROOT

    def test_float_interval_truncated(self):
        config = resolve(b'{"gcpProjectID":"p1","gcpCredsPath":"/c","gcpPullInterval":2.9}')

        assert config.poll_interval_seconds == 2

    @pytest.mark.parametrize("interval", [0, -5, 0.4])
    def test_non_positive_interval_uses_default(self, interval):
        config = resolve({**self.BASE, "gcpPullInterval": interval})

        assert config.poll_interval_seconds == DEFAULT_POLL_INTERVAL

    def test_empty_topic_root_uses_default(self):
        config = resolve({**self.BASE, "topic_root": ""})

        assert config.topic_root == DEFAULT_TOPIC_ROOT

    def test_unknown_keys_ignored(self):
        config = resolve({**self.BASE, "somethingElse": {"a": 1}})

        assert config.cloud_project_id == "p1"


class TestRelayConfig:
    def test_frozen(self):
        config = resolve({"gcpProjectID": "p1", "gcpCredsPath": "/c.json"})

        with pytest.raises(Exception):
            config.publish_topic = "other"

    def test_directions_enabled_by_topics(self):
        config = RelayConfig(
            cloud_project_id="p1",
            credentials_path="/c.json",
            publish_topic="t",
        )

        assert config.publish_enabled is True
        assert config.subscribe_enabled is False
