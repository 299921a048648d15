# tests/conftest.py
from __future__ import annotations

import asyncio
import threading

import pytest

from gcp_pubsub_adapter.contracts.broker import (
    ConnectionState,
    RelayMessage,
    SubscriptionHandle,
)
from gcp_pubsub_adapter.contracts.errors import (
    PlatformPublishError,
    PlatformSubscribeError,
    ReceiveCancelled,
)
from gcp_pubsub_adapter.core.broker.mqtt import InboundQueue, topic_matches
from gcp_pubsub_adapter.core.settings import RelayConfig, resolve


class FakeCloudBroker:
    """In-memory stand-in for the Pub/Sub session."""

    def __init__(self) -> None:
        self.authenticated = False
        self.auth_calls = 0
        self.auth_error: Exception | None = None

        self.create_calls: list[str] = []
        self.subscription_error: Exception | None = None

        self.published: list[tuple[str, bytes]] = []
        self.publish_error: Exception | None = None

        self.deliveries: list[bytes] = []
        self.receive_errors: list[Exception] = []
        self.receive_calls = 0
        self.acks: list[bytes] = []
        self.events: list[str] = []

    @property
    def is_authenticated(self) -> bool:
        return self.authenticated

    def authenticate(self) -> None:
        self.auth_calls += 1
        if self.auth_error is not None:
            raise self.auth_error
        self.authenticated = True

    def ensure_subscription(self, topic: str, pre_created: bool) -> SubscriptionHandle:
        if self.subscription_error is not None:
            raise self.subscription_error
        if not pre_created:
            self.create_calls.append(topic)
        return SubscriptionHandle(
            project_id="p1",
            topic=topic,
            path=f"projects/p1/subscriptions/{topic}",
            pre_created=pre_created,
        )

    def publish(self, topic: str, payload: bytes) -> str:
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append((topic, payload))
        return f"msg-{len(self.published)}"

    def receive(self, handle, callback, cancel: threading.Event) -> None:
        self.receive_calls += 1
        if self.receive_errors:
            raise self.receive_errors.pop(0)

        while self.deliveries:
            payload = self.deliveries.pop(0)
            try:
                callback(RelayMessage(topic=handle.topic, payload=payload))
            finally:
                self.acks.append(payload)
                self.events.append("ack")

        cancel.wait(timeout=5)
        raise ReceiveCancelled("cancelled")


class FakePlatformBroker:
    """In-memory stand-in for the MQTT session."""

    def __init__(self) -> None:
        self._state = ConnectionState.DISCONNECTED
        self.on_connect = None
        self.on_connection_lost = None

        self.streams: list[InboundQueue] = []
        self.subscribe_calls: list[str] = []
        self.subscribe_failures = 0

        self.published: list[tuple[str, bytes]] = []
        self.publish_error: Exception | None = None
        self.events: list[str] | None = None
        self.disconnected = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    async def connect(self, on_connect=None, on_connection_lost=None) -> None:
        self.on_connect = on_connect
        self.on_connection_lost = on_connection_lost
        await self.simulate_connect()

    async def simulate_connect(self) -> None:
        self._state = ConnectionState.CONNECTED
        if self.on_connect is not None:
            await self.on_connect()

    async def simulate_loss(self, exc: BaseException | None = None) -> None:
        self._close_streams()
        self._state = ConnectionState.LOST
        if self.on_connection_lost is not None:
            await self.on_connection_lost(exc)

    async def disconnect(self) -> None:
        self._close_streams()
        self._state = ConnectionState.DISCONNECTED
        self.disconnected = True

    async def subscribe(self, topic: str) -> InboundQueue:
        self.subscribe_calls.append(topic)
        if self.subscribe_failures > 0:
            self.subscribe_failures -= 1
            raise PlatformSubscribeError("subscribe refused")
        stream = InboundQueue(topic)
        self.streams.append(stream)
        return stream

    async def publish(self, topic: str, payload: bytes) -> None:
        if self.events is not None:
            self.events.append("publish")
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append((topic, payload))

    def inject(self, topic: str, payload: bytes) -> None:
        for stream in self.streams:
            if topic_matches(topic, stream.topic):
                stream.feed(RelayMessage(topic=topic, payload=payload))

    def _close_streams(self) -> None:
        for stream in self.streams:
            stream.close()
        self.streams.clear()


@pytest.fixture
def cloud() -> FakeCloudBroker:
    return FakeCloudBroker()


@pytest.fixture
def platform() -> FakePlatformBroker:
    return FakePlatformBroker()


@pytest.fixture
def make_config():
    def _make(**overrides) -> RelayConfig:
        data = {"gcpProjectID": "p1", "gcpCredsPath": "/c.json"}
        data.update(overrides)
        return resolve(data)

    return _make


@pytest.fixture
def failing_platform_publish() -> Exception:
    return PlatformPublishError("broker unavailable")


@pytest.fixture
def eventually():
    """Await until ``predicate()`` holds, failing after ``timeout`` seconds."""

    async def _wait(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return _wait
