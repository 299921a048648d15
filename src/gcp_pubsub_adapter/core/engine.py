# gcp_pubsub_adapter/core/engine.py
"""
Connection lifecycle and relay supervision.

The engine reacts to platform connection events:

- connected: authenticate the cloud session if needed, subscribe to
  ``<topic_root>/publish`` (retrying every ``subscribe_retry_interval``
  seconds) and start an inbound relay when a publish topic is configured,
  then resolve the cloud subscription and start a poll relay when a
  subscribe topic is configured;
- connection lost: stop every running relay. Reconnecting is left to the
  platform session, whose next connection starts fresh relays.

Fatal errors raised while setting up relays resolve the ``fatal`` future,
which the process waits on to exit with a failure status.
"""
from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Coroutine

from gcp_pubsub_adapter.contracts.broker import (
    CloudBroker,
    ConnectionState,
    InboundStream,
    PlatformBroker,
    SubscriptionHandle,
)
from gcp_pubsub_adapter.contracts.errors import FATAL_ERRORS, PlatformSubscribeError
from gcp_pubsub_adapter.core.relay.inbound import InboundRelay
from gcp_pubsub_adapter.core.relay.poll import PollRelay
from gcp_pubsub_adapter.core.relay.shutdown import ShutdownCoordinator, StopToken
from gcp_pubsub_adapter.core.settings import RelayConfig

logger = logging.getLogger(__name__)

INBOUND_WORKER = "inbound-relay"
POLL_WORKER = "poll-relay"


class RelayEngine:
    """
    Starts and stops relay workers as the platform connection comes and goes.

    Example:
        engine = RelayEngine(config, cloud_session, platform_session)
        await engine.start()
        await engine.fatal  # or wait for a termination signal
        await engine.shutdown()
    """

    def __init__(
        self,
        config: RelayConfig,
        cloud: CloudBroker,
        platform: PlatformBroker,
        coordinator: ShutdownCoordinator | None = None,
        *,
        subscribe_retry_interval: float = 30.0,
    ) -> None:
        self._config = config
        self._cloud = cloud
        self._platform = platform
        self._coordinator = coordinator or ShutdownCoordinator()
        self._subscribe_retry_interval = subscribe_retry_interval

        self._fatal: asyncio.Future | None = None
        self._workers: dict[str, asyncio.Task] = {}
        self._inbound: InboundRelay | None = None
        self._poll: PollRelay | None = None

    @property
    def config(self) -> RelayConfig:
        return self._config

    @property
    def coordinator(self) -> ShutdownCoordinator:
        return self._coordinator

    @property
    def state(self) -> ConnectionState:
        return self._platform.state

    @property
    def inbound(self) -> InboundRelay | None:
        """The most recent inbound relay."""
        return self._inbound

    @property
    def poll(self) -> PollRelay | None:
        """The most recent poll relay."""
        return self._poll

    @property
    def active_workers(self) -> list[str]:
        return [name for name, task in self._workers.items() if not task.done()]

    @property
    def fatal(self) -> asyncio.Future:
        """Resolves with the exception that makes continuing impossible."""
        if self._fatal is None:
            self._fatal = asyncio.get_running_loop().create_future()
        return self._fatal

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Connect the platform session with the engine's handlers.

        Raises:
            PlatformConnectError: If the first connection attempt fails.
        """
        if self._fatal is None:
            self._fatal = asyncio.get_running_loop().create_future()
        await self._platform.connect(
            on_connect=self.on_connect,
            on_connection_lost=self.on_connection_lost,
        )

    async def shutdown(self) -> None:
        """Stop all relays and close the platform connection."""
        logger.info("Shutting down relay engine")
        await self.stop_workers()
        await self._platform.disconnect()

    async def on_connect(self) -> None:
        logger.info("Connected to platform MQTT broker, configuring relays")

        # Relays from an earlier connection must not outlive it
        await self.stop_workers()

        try:
            if not self._cloud.is_authenticated:
                logger.info("Authenticating to GCP")
                await asyncio.to_thread(self._cloud.authenticate)

            if self._config.publish_enabled:
                stream = await self._subscribe_with_retry(
                    self._config.platform_publish_topic
                )
                self._start_inbound(stream)
            else:
                logger.info("No gcpPubTopic specified, no need to subscribe to platform topic")

            if self._config.subscribe_enabled:
                handle = await asyncio.to_thread(
                    self._cloud.ensure_subscription,
                    self._config.subscribe_topic,
                    self._config.subscription_pre_created,
                )
                self._start_poll(handle)
            else:
                logger.info("No gcpSubTopic specified, GCP poll relay not started")

        except FATAL_ERRORS as exc:
            logger.critical("Fatal error while configuring relays: %s", exc)
            self._set_fatal(exc)

    async def on_connection_lost(self, exc: BaseException | None) -> None:
        logger.info("Connection to platform broker lost (%s), stopping relays", exc)
        await self.stop_workers()

    async def stop_workers(self) -> None:
        """Signal every running relay to stop and wait for them to finish."""
        self._coordinator.broadcast()

        tasks = list(self._workers.values())
        if tasks:
            await asyncio.wait(tasks)
        self._workers.clear()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _subscribe_with_retry(self, topic: str) -> InboundStream:
        while True:
            try:
                return await self._platform.subscribe(topic)
            except PlatformSubscribeError as exc:
                logger.error("Error subscribing to MQTT: %s", exc)
                logger.error(
                    "Will retry in %.0f seconds...", self._subscribe_retry_interval
                )
                await asyncio.sleep(self._subscribe_retry_interval)

    def _start_inbound(self, stream: InboundStream) -> None:
        token = self._coordinator.register(INBOUND_WORKER)
        self._inbound = InboundRelay(self._config, self._cloud, stream, token)
        self._start_worker(INBOUND_WORKER, token, self._inbound.run())

    def _start_poll(self, handle: SubscriptionHandle) -> None:
        token = self._coordinator.register(POLL_WORKER)
        self._poll = PollRelay(self._config, self._cloud, self._platform, handle, token)
        self._start_worker(POLL_WORKER, token, self._poll.run())

    def _start_worker(
        self,
        name: str,
        token: StopToken,
        coro: Coroutine[Any, Any, None],
    ) -> None:
        task = asyncio.create_task(coro, name=name)
        self._workers[name] = task
        task.add_done_callback(partial(self._worker_done, name, token))

    def _worker_done(self, name: str, token: StopToken, task: asyncio.Task) -> None:
        self._coordinator.unregister(token)
        if self._workers.get(name) is task:
            del self._workers[name]

        if task.cancelled():
            logger.debug("Relay %s cancelled", name)
            return

        exc = task.exception()
        if exc is not None:
            logger.error("Relay %s failed: %s", name, exc, exc_info=exc)

    def _set_fatal(self, exc: BaseException) -> None:
        if not self.fatal.done():
            self.fatal.set_result(exc)

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "workers": self.active_workers,
            "inbound": self._inbound.get_stats() if self._inbound else None,
            "poll": self._poll.get_stats() if self._poll else None,
        }
