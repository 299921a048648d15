# gcp_pubsub_adapter/core/broker/mqtt.py
"""
MQTT session with the platform broker.

The session keeps one aiomqtt connection alive in a supervision task and
reports lifecycle changes through two handlers:

- ``on_connect`` is awaited after every successful connection, including
  reconnections. Sessions are clean, so subscriptions must be made again
  from this handler each time.
- ``on_connection_lost`` is awaited after the connection drops, before the
  session waits ``reconnect_interval`` and reconnects.

Usage:
    session = PlatformBrokerSession(PlatformConfig(host="localhost"))

    async def on_connect():
        stream = await session.subscribe("gcp/pubsub/publish")
        async for message in stream:
            print(message.topic, message.payload)

    await session.connect(on_connect=on_connect)
    ...
    await session.disconnect()
"""
from __future__ import annotations

import asyncio
import logging
import random
import ssl
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Callable

import aiomqtt

from gcp_pubsub_adapter.contracts.broker import (
    ConnectHandler,
    ConnectionLostHandler,
    ConnectionState,
    QoS,
    RelayMessage,
)
from gcp_pubsub_adapter.contracts.errors import (
    PlatformConnectError,
    PlatformPublishError,
    PlatformSubscribeError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class PlatformConfig:
    """
    Configuration for the platform MQTT connection.

    Attributes:
        host: MQTT broker hostname.
        port: MQTT broker port (default 1883, or 8883 for TLS).
        client_id: Client identifier. Auto-generated if not provided.
        username: Authentication username (the platform device token).
        password: Authentication password (the platform system key).
        use_tls: Whether to use TLS encryption.
        ca_certs: Path to CA certificate file for TLS.
        keepalive: Keepalive interval in seconds.
        clean_session: Whether to start with a clean session.
        reconnect_interval: Seconds between reconnection attempts.
        auto_reconnect: Reconnect after a lost connection.
        qos: QoS used for subscriptions and publishes.
    """

    host: str = "localhost"
    port: int = 1883
    client_id: str | None = None
    username: str | None = None
    password: str | None = None
    use_tls: bool = False
    ca_certs: str | None = None
    keepalive: int = 30
    clean_session: bool = True
    reconnect_interval: float = 5.0
    auto_reconnect: bool = True
    qos: QoS = QoS.AT_MOST_ONCE

    def __post_init__(self):
        if self.client_id is None:
            self.client_id = f"gcpPubSubAdapter_client-{random.randrange(10000)}"


# =============================================================================
# Inbound stream
# =============================================================================


_CLOSED = object()


class InboundQueue:
    """
    Messages delivered for one subscription, consumed with ``async for``.

    The stream ends when the connection it was subscribed on goes away.
    """

    def __init__(self, topic: str) -> None:
        self.topic = topic
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, message: RelayMessage) -> None:
        if not self._closed:
            self._queue.put_nowait(message)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "InboundQueue":
        return self

    async def __anext__(self) -> RelayMessage:
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any other reader
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item


def topic_matches(topic: str, pattern: str) -> bool:
    """Check if a topic matches a single pattern with wildcards."""
    topic_parts = topic.split("/")
    pattern_parts = pattern.split("/")

    for i, pattern_part in enumerate(pattern_parts):
        if pattern_part == "#":
            return True  # # matches everything from here

        if i >= len(topic_parts):
            return False  # Topic is shorter than pattern

        if pattern_part == "+":
            continue  # + matches exactly one level

        if pattern_part != topic_parts[i]:
            return False  # Literal mismatch

    return len(topic_parts) == len(pattern_parts)


def _payload_bytes(payload: Any) -> bytes:
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, (bytearray, memoryview)):
        return bytes(payload)
    if payload is None:
        return b""
    return str(payload).encode("utf-8")


# =============================================================================
# Session
# =============================================================================


class PlatformBrokerSession:
    """
    Supervised MQTT connection to the platform broker.

    Args:
        config: PlatformConfig instance, or None to use defaults.
        client_factory: Builds the async MQTT client for each connection
            attempt. Defaults to an ``aiomqtt.Client`` from ``config``.
        **kwargs: Override config fields (for convenience).
    """

    def __init__(
        self,
        config: PlatformConfig | None = None,
        *,
        client_factory: Callable[[], AsyncContextManager[Any]] | None = None,
        **kwargs,
    ):
        if config is None:
            config = PlatformConfig(**kwargs)
        else:
            for key, value in kwargs.items():
                if hasattr(config, key):
                    setattr(config, key, value)

        self._config = config
        self._client_factory = client_factory or self._build_client

        self._state = ConnectionState.DISCONNECTED
        self._client: Any | None = None
        self._running = False
        self._supervisor_task: asyncio.Task | None = None
        self._first_attempt: asyncio.Future | None = None

        self._on_connect: ConnectHandler | None = None
        self._on_connection_lost: ConnectionLostHandler | None = None

        self._streams: list[InboundQueue] = []

        # Stats
        self._connect_count = 0
        self._publish_count = 0
        self._receive_count = 0

    @property
    def config(self) -> PlatformConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._client is not None

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            logger.debug("Platform connection %s -> %s", self._state.value, state.value)
            self._state = state

    def _build_tls_context(self) -> ssl.SSLContext | None:
        if not self._config.use_tls:
            return None

        context = ssl.create_default_context()
        if self._config.ca_certs:
            context.load_verify_locations(self._config.ca_certs)
        return context

    def _build_client(self) -> aiomqtt.Client:
        return aiomqtt.Client(
            hostname=self._config.host,
            port=self._config.port,
            identifier=self._config.client_id,
            username=self._config.username,
            password=self._config.password,
            tls_context=self._build_tls_context(),
            keepalive=self._config.keepalive,
            clean_session=self._config.clean_session,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(
        self,
        on_connect: ConnectHandler | None = None,
        on_connection_lost: ConnectionLostHandler | None = None,
    ) -> None:
        """
        Start the connection and return once the first attempt has finished.

        Raises:
            PlatformConnectError: If the first connection attempt fails.
        """
        if self._supervisor_task is not None and not self._supervisor_task.done():
            logger.debug("Already connected to platform broker")
            return

        self._on_connect = on_connect
        self._on_connection_lost = on_connection_lost
        self._running = True
        self._first_attempt = asyncio.get_running_loop().create_future()

        logger.info(
            "Connecting to platform MQTT broker at %s:%d",
            self._config.host,
            self._config.port,
        )
        self._supervisor_task = asyncio.create_task(
            self._supervise(),
            name="platform-broker-supervisor",
        )
        await self._first_attempt

    async def disconnect(self) -> None:
        """Stop supervising and close the connection for good."""
        self._running = False

        if self._supervisor_task is not None:
            self._supervisor_task.cancel()
            try:
                await self._supervisor_task
            except asyncio.CancelledError:
                pass
            self._supervisor_task = None

        self._close_streams()
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from platform MQTT broker")

    async def _supervise(self) -> None:
        try:
            await self._supervise_loop()
        finally:
            self._finish_first_attempt(
                PlatformConnectError("Platform broker session stopped before connecting")
            )
            self._set_state(ConnectionState.DISCONNECTED)

    async def _supervise_loop(self) -> None:
        reconnecting = False

        while self._running:
            self._set_state(
                ConnectionState.RECONNECTING if reconnecting else ConnectionState.CONNECTING
            )
            lost: BaseException | None = None

            try:
                async with self._client_factory() as client:
                    self._client = client
                    self._connect_count += 1
                    self._set_state(ConnectionState.CONNECTED)
                    logger.info("Connected to platform MQTT broker")
                    self._finish_first_attempt(None)
                    await self._serve(client)
            except aiomqtt.MqttError as exc:
                if self._first_attempt is not None and not self._first_attempt.done():
                    logger.error("Unable to connect to platform MQTT broker: %s", exc)
                    self._finish_first_attempt(
                        PlatformConnectError(f"Unable to connect to platform broker: {exc}")
                    )
                    self._running = False
                    break
                lost = exc
            finally:
                self._client = None
                self._close_streams()

            if not self._running:
                break

            self._set_state(ConnectionState.LOST)
            logger.info("Connection to platform broker was lost: %s", lost)
            await self._fire_connection_lost(lost)

            if not self._config.auto_reconnect:
                self._running = False
                break

            await asyncio.sleep(self._config.reconnect_interval)
            reconnecting = True

    def _finish_first_attempt(self, exc: BaseException | None) -> None:
        if self._first_attempt is None or self._first_attempt.done():
            return
        if exc is None:
            self._first_attempt.set_result(None)
        else:
            self._first_attempt.set_exception(exc)

    async def _serve(self, client: Any) -> None:
        """Listen on the connection while the connect handler runs beside it."""
        connect_task = asyncio.create_task(
            self._fire_connect(),
            name="platform-on-connect",
        )
        try:
            async for message in client.messages:
                self._dispatch(message)
        finally:
            if not connect_task.done():
                connect_task.cancel()
            try:
                await connect_task
            except asyncio.CancelledError:
                pass

    async def _fire_connect(self) -> None:
        if self._on_connect is None:
            return
        try:
            await self._on_connect()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("on_connect handler failed")

    async def _fire_connection_lost(self, exc: BaseException | None) -> None:
        if self._on_connection_lost is None:
            return
        try:
            await self._on_connection_lost(exc)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("on_connection_lost handler failed")

    def _close_streams(self) -> None:
        for stream in self._streams:
            stream.close()
        self._streams.clear()

    # -------------------------------------------------------------------------
    # Messaging
    # -------------------------------------------------------------------------

    def _dispatch(self, message: Any) -> None:
        """Route a received message to every stream whose filter matches."""
        self._receive_count += 1
        topic = str(message.topic)
        relay_message = RelayMessage(topic=topic, payload=_payload_bytes(message.payload))

        delivered = False
        for stream in self._streams:
            if topic_matches(topic, stream.topic):
                stream.feed(relay_message)
                delivered = True

        if not delivered:
            logger.debug("No stream for message on %s", topic)

    async def subscribe(self, topic: str) -> InboundQueue:
        """
        Subscribe to a topic on the current connection.

        Raises:
            PlatformSubscribeError: If not connected or the broker refuses.
        """
        client = self._client
        if client is None or not self.is_connected:
            raise PlatformSubscribeError("Not connected to platform broker")

        logger.info("Subscribing to MQTT topic %s", topic)
        try:
            await client.subscribe(topic, qos=self._config.qos.value)
        except aiomqtt.MqttError as exc:
            raise PlatformSubscribeError(
                f"Unable to subscribe to MQTT topic {topic}: {exc}"
            ) from exc

        stream = InboundQueue(topic)
        self._streams.append(stream)
        logger.debug("Successfully subscribed to MQTT topic %s", topic)
        return stream

    async def publish(self, topic: str, payload: bytes) -> None:
        """
        Publish raw bytes to a topic.

        Raises:
            PlatformPublishError: If not connected or the publish fails.
        """
        client = self._client
        if client is None or not self.is_connected:
            raise PlatformPublishError("Not connected to platform broker")

        logger.info("Publishing to topic %s", topic)
        try:
            await client.publish(topic, payload=payload, qos=self._config.qos.value)
        except aiomqtt.MqttError as exc:
            raise PlatformPublishError(
                f"Unable to publish to topic {topic}: {exc}"
            ) from exc

        self._publish_count += 1
        logger.debug("Successfully published message to topic %s", topic)

    def get_stats(self) -> dict[str, Any]:
        """Get session statistics."""
        return {
            "state": self._state.value,
            "connect_count": self._connect_count,
            "publish_count": self._publish_count,
            "receive_count": self._receive_count,
            "streams": [s.topic for s in self._streams],
        }
