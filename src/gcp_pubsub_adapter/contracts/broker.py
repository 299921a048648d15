# gcp_pubsub_adapter/contracts/broker.py
"""
Broker contracts for the relay engine.

The relay engine talks to two brokers through the protocols below: the
platform broker (MQTT) and the cloud broker (Google Cloud Pub/Sub). Relays
depend only on these contracts, so tests can drive them with in-memory
fakes.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Protocol, runtime_checkable


class QoS(int, Enum):
    """Quality of Service levels for MQTT delivery."""

    AT_MOST_ONCE = 0  # Fire and forget
    AT_LEAST_ONCE = 1  # Acknowledged delivery
    EXACTLY_ONCE = 2  # Guaranteed single delivery


class ConnectionState(str, Enum):
    """Lifecycle of the platform broker connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LOST = "lost"
    RECONNECTING = "reconnecting"


class RelayState(str, Enum):
    """Lifecycle of a relay worker. A stopped worker is never restarted."""

    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RelayMessage:
    """
    An opaque payload moving between the two brokers.

    Attributes:
        topic: Topic the message arrived on.
        payload: Raw message bytes, never decoded by the relay.
        message_id: Broker-assigned ID, if the broker provides one.
    """

    topic: str
    payload: bytes
    message_id: str | None = None


@dataclass(frozen=True)
class SubscriptionHandle:
    """
    A resolved cloud subscription.

    Attributes:
        project_id: Project owning the subscription.
        topic: Topic the subscription is bound to.
        path: Fully qualified subscription path.
        pre_created: True when the subscription was provisioned out of band.
    """

    project_id: str
    topic: str
    path: str
    pre_created: bool = False


ConnectHandler = Callable[[], Awaitable[None]]
ConnectionLostHandler = Callable[[BaseException | None], Awaitable[None]]
DeliveryCallback = Callable[[RelayMessage], None]


@runtime_checkable
class InboundStream(Protocol):
    """Async stream of messages for one platform subscription."""

    topic: str

    def __aiter__(self) -> AsyncIterator[RelayMessage]:
        ...


@runtime_checkable
class PlatformBroker(Protocol):
    """
    Protocol for the platform (MQTT) broker session.

    ``connect`` runs the connection in the background and awaits
    ``on_connect`` after every successful (re)connection and
    ``on_connection_lost`` after every loss.
    """

    async def connect(
        self,
        on_connect: ConnectHandler | None = None,
        on_connection_lost: ConnectionLostHandler | None = None,
    ) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    async def subscribe(self, topic: str) -> InboundStream:
        """Subscribe to a topic. Raises PlatformSubscribeError."""
        ...

    async def publish(self, topic: str, payload: bytes) -> None:
        """Publish raw bytes. Raises PlatformPublishError."""
        ...

    @property
    def state(self) -> ConnectionState:
        ...


@runtime_checkable
class CloudBroker(Protocol):
    """
    Protocol for the cloud (Pub/Sub) broker session.

    All methods block; async callers run them in a worker thread.
    """

    @property
    def is_authenticated(self) -> bool:
        ...

    def authenticate(self) -> None:
        """Build authenticated clients. Raises AuthError."""
        ...

    def ensure_subscription(self, topic: str, pre_created: bool) -> SubscriptionHandle:
        """Resolve or create the subscription. Raises SubscriptionCreateError."""
        ...

    def publish(self, topic: str, payload: bytes) -> str:
        """Publish and return the message ID. Raises CloudPublishError."""
        ...

    def receive(
        self,
        handle: SubscriptionHandle,
        callback: DeliveryCallback,
        cancel: threading.Event,
    ) -> None:
        """
        Pull messages until ``cancel`` is set.

        Each message is passed to ``callback`` and acknowledged once the
        callback returns, whatever its outcome. Raises ReceiveCancelled on
        cancellation and ReceiveError on any other failure.
        """
        ...
