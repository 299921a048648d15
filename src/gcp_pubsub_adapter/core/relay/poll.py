# gcp_pubsub_adapter/core/relay/poll.py
"""
Cloud to platform relay.

Every ``poll_interval_seconds`` the relay runs a blocking receive against
the Pub/Sub subscription in a worker thread. Each delivered payload is
published verbatim to ``<topic_root>`` on the platform and then
acknowledged, whether or not the platform publish succeeded. Receive
failures other than cancellation are reported on ``<topic_root>/error``.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

from gcp_pubsub_adapter.contracts.broker import (
    CloudBroker,
    PlatformBroker,
    RelayMessage,
    RelayState,
    SubscriptionHandle,
)
from gcp_pubsub_adapter.contracts.errors import (
    PlatformPublishError,
    ReceiveCancelled,
    ReceiveError,
)
from gcp_pubsub_adapter.core.relay.shutdown import StopToken
from gcp_pubsub_adapter.core.settings import RelayConfig

logger = logging.getLogger(__name__)


class PollRelay:
    """One run of the cloud to platform relay."""

    def __init__(
        self,
        config: RelayConfig,
        cloud: CloudBroker,
        platform: PlatformBroker,
        subscription: SubscriptionHandle,
        stop: StopToken,
    ) -> None:
        self._config = config
        self._cloud = cloud
        self._platform = platform
        self._subscription = subscription
        self._stop = stop
        self._state = RelayState.CREATED

        self._cancel = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None

        self._relayed_count = 0
        self._failed_count = 0
        self._receive_errors = 0

    @property
    def state(self) -> RelayState:
        return self._state

    async def run(self) -> None:
        """Tick until the stop token is set or the receive is cancelled."""
        if self._state is not RelayState.CREATED:
            raise RuntimeError(f"Poll relay already {self._state.value}")

        self._state = RelayState.RUNNING
        self._loop = asyncio.get_running_loop()
        # Stopping the relay also cancels a receive already in flight
        self._stop.add_callback(self._cancel.set)

        logger.info(
            "Starting GCP poll relay on %s every %ds",
            self._subscription.path,
            self._config.poll_interval_seconds,
        )
        try:
            while True:
                try:
                    await asyncio.wait_for(
                        self._stop.wait(),
                        timeout=self._config.poll_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    pass
                else:
                    logger.debug("Stopping poll ticker")
                    break

                if await self.pull():
                    break
        finally:
            self._cancel.set()
            self._state = RelayState.STOPPED
            logger.info("GCP poll relay stopped")

    async def pull(self) -> bool:
        """
        Run one blocking receive.

        Returns:
            True if the receive was cancelled and the relay should stop.
        """
        logger.info("Pulling recent messages")
        try:
            await asyncio.to_thread(
                self._cloud.receive,
                self._subscription,
                self._deliver,
                self._cancel,
            )
        except ReceiveCancelled:
            logger.debug("Receive on %s cancelled", self._subscription.path)
            return True
        except ReceiveError as exc:
            self._receive_errors += 1
            logger.error("Error receiving pubsub messages: %s", exc)
            await self._publish(self._config.platform_error_topic, str(exc).encode("utf-8"))
        return False

    def _deliver(self, message: RelayMessage) -> None:
        """Called from the receive thread for every cloud message."""
        if self._loop is None:
            raise RuntimeError("Poll relay is not running")

        future = asyncio.run_coroutine_threadsafe(
            self._publish(self._config.platform_output_topic, message.payload),
            self._loop,
        )
        if future.result():
            self._relayed_count += 1

    async def _publish(self, topic: str, payload: bytes) -> bool:
        try:
            await self._platform.publish(topic, payload)
        except PlatformPublishError as exc:
            self._failed_count += 1
            logger.error("Unable to publish to topic %s: %s", topic, exc)
            return False
        return True

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "relayed": self._relayed_count,
            "failed": self._failed_count,
            "receive_errors": self._receive_errors,
        }
