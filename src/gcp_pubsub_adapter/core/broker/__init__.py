# gcp_pubsub_adapter/core/broker/__init__.py
"""
Broker sessions used by the relay engine.

- ``PlatformBrokerSession``: supervised MQTT connection to the platform
- ``CloudBrokerSession``: authenticated Google Cloud Pub/Sub clients
"""

from gcp_pubsub_adapter.core.broker.mqtt import (
    InboundQueue,
    PlatformBrokerSession,
    PlatformConfig,
    topic_matches,
)
from gcp_pubsub_adapter.core.broker.pubsub import (
    ACK_DEADLINE_SECONDS,
    CloudBrokerSession,
)

__all__ = [
    "InboundQueue",
    "PlatformBrokerSession",
    "PlatformConfig",
    "topic_matches",
    "ACK_DEADLINE_SECONDS",
    "CloudBrokerSession",
]
