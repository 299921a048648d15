# gcp_pubsub_adapter/contracts/__init__.py
"""Contracts shared by the relay engine, the broker sessions and tests."""

from gcp_pubsub_adapter.contracts.broker import (
    CloudBroker,
    ConnectionState,
    InboundStream,
    PlatformBroker,
    QoS,
    RelayMessage,
    RelayState,
    SubscriptionHandle,
)
from gcp_pubsub_adapter.contracts.errors import (
    FATAL_ERRORS,
    AdapterError,
    AuthError,
    CloudPublishError,
    ConfigurationError,
    PlatformAuthError,
    PlatformConnectError,
    PlatformPublishError,
    PlatformSubscribeError,
    ReceiveCancelled,
    ReceiveError,
    SubscriptionCreateError,
)

__all__ = [
    "CloudBroker",
    "ConnectionState",
    "InboundStream",
    "PlatformBroker",
    "QoS",
    "RelayMessage",
    "RelayState",
    "SubscriptionHandle",
    "FATAL_ERRORS",
    "AdapterError",
    "AuthError",
    "CloudPublishError",
    "ConfigurationError",
    "PlatformAuthError",
    "PlatformConnectError",
    "PlatformPublishError",
    "PlatformSubscribeError",
    "ReceiveCancelled",
    "ReceiveError",
    "SubscriptionCreateError",
]
