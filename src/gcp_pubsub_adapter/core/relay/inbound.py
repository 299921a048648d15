# gcp_pubsub_adapter/core/relay/inbound.py
"""
Platform to cloud relay.

Consumes the platform subscription on ``<topic_root>/publish`` and
republishes each payload, untouched, to the configured Pub/Sub topic.
Failed publishes are logged and dropped.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from gcp_pubsub_adapter.contracts.broker import (
    CloudBroker,
    InboundStream,
    RelayMessage,
    RelayState,
)
from gcp_pubsub_adapter.contracts.errors import CloudPublishError
from gcp_pubsub_adapter.core.relay.shutdown import StopToken
from gcp_pubsub_adapter.core.settings import RelayConfig

logger = logging.getLogger(__name__)


class InboundRelay:
    """
    One run of the platform to cloud relay.

    A new instance is created for every platform connection; once stopped
    an instance is never restarted.
    """

    def __init__(
        self,
        config: RelayConfig,
        cloud: CloudBroker,
        stream: InboundStream,
        stop: StopToken,
    ) -> None:
        self._config = config
        self._cloud = cloud
        self._stream = stream
        self._stop = stop
        self._state = RelayState.CREATED

        self._relayed_count = 0
        self._dropped_count = 0
        self._unknown_count = 0

    @property
    def state(self) -> RelayState:
        return self._state

    async def run(self) -> None:
        """Relay messages until the stop token is set or the stream ends."""
        if self._state is not RelayState.CREATED:
            raise RuntimeError(f"Inbound relay already {self._state.value}")

        self._state = RelayState.RUNNING
        logger.info("Starting inbound relay on %s", self._stream.topic)

        stop_wait = asyncio.create_task(self._stop.wait())
        messages = aiter(self._stream)
        try:
            while True:
                next_message = asyncio.ensure_future(anext(messages))
                done, _ = await asyncio.wait(
                    {next_message, stop_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )

                # Stop wins over any message that arrived at the same time
                if stop_wait in done:
                    next_message.cancel()
                    break

                try:
                    message = next_message.result()
                except StopAsyncIteration:
                    logger.info("Inbound stream on %s closed", self._stream.topic)
                    break

                await self.handle(message)
        finally:
            stop_wait.cancel()
            self._state = RelayState.STOPPED
            logger.info("Stopping inbound relay")

    async def handle(self, message: RelayMessage) -> bool:
        """
        Relay a single platform message.

        Returns:
            True if the message reached the cloud broker.
        """
        if message.topic != self._config.platform_publish_topic:
            self._unknown_count += 1
            logger.warning(
                "Unknown request received: topic = %s, payload = %r",
                message.topic,
                message.payload,
            )
            return False

        logger.info("Handling GCP publish request")
        try:
            message_id = await asyncio.to_thread(
                self._cloud.publish,
                self._config.publish_topic,
                message.payload,
            )
        except CloudPublishError as exc:
            self._dropped_count += 1
            logger.error("Dropping message for %s: %s", self._config.publish_topic, exc)
            return False

        self._relayed_count += 1
        logger.debug(
            "Relayed message to GCP topic %s (id=%s)",
            self._config.publish_topic,
            message_id,
        )
        return True

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "relayed": self._relayed_count,
            "dropped": self._dropped_count,
            "unknown": self._unknown_count,
        }
