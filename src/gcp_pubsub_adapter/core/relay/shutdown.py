# gcp_pubsub_adapter/core/relay/shutdown.py
"""
Stop signalling for relay workers.

Each running relay registers with the coordinator and receives a
``StopToken`` it waits on at every suspension point. Stopping can target
one worker at a time (``signal_one``/``signal``) or every registered
worker at once (``broadcast``), which is what process termination and
connection loss use.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class StopToken:
    """One-shot stop notification for a single worker."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    def is_set(self) -> bool:
        return self._event.is_set()

    def set(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        for callback in self._callbacks:
            callback()
        self._callbacks.clear()

    async def wait(self) -> None:
        await self._event.wait()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` when the token is set, or now if it already is."""
        if self._event.is_set():
            callback()
        else:
            self._callbacks.append(callback)

    def __repr__(self) -> str:
        return f"StopToken({self.name!r}, set={self.is_set()})"


class ShutdownCoordinator:
    def __init__(self) -> None:
        self._tokens: list[StopToken] = []

    @property
    def active_count(self) -> int:
        """Registered workers that have not been told to stop."""
        return sum(1 for t in self._tokens if not t.is_set())

    def register(self, name: str) -> StopToken:
        token = StopToken(name)
        self._tokens.append(token)
        logger.debug("Registered worker %s", name)
        return token

    def unregister(self, token: StopToken) -> None:
        if token in self._tokens:
            self._tokens.remove(token)
            logger.debug("Unregistered worker %s", token.name)

    def signal_one(self) -> bool:
        """
        Stop the longest-registered worker still running.

        Returns:
            False if no worker was waiting.
        """
        for token in self._tokens:
            if not token.is_set():
                logger.debug("Stopping worker %s", token.name)
                token.set()
                return True
        return False

    def signal(self, count: int) -> int:
        """Send ``count`` single stop signals; returns how many landed."""
        return sum(1 for _ in range(count) if self.signal_one())

    def broadcast(self) -> int:
        """Stop every registered worker; returns how many were stopped."""
        stopped = self.signal(self.active_count)
        if stopped:
            logger.info("Sent stop signal to %d worker(s)", stopped)
        return stopped
