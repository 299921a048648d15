# gcp_pubsub_adapter/main.py
"""
Adapter process entry point.

Authenticates the adapter device with the platform, loads and decodes the
relay settings, authenticates to Google Cloud, then runs the relay engine
until SIGINT/SIGTERM (exit 0) or a fatal error (exit 1).
"""
from __future__ import annotations

import asyncio
import logging
import random
import signal
import sys
from typing import Awaitable, TypeVar

from pydantic import ValidationError

from gcp_pubsub_adapter.contracts.errors import (
    AuthError,
    ConfigurationError,
    PlatformConnectError,
)
from gcp_pubsub_adapter.core.broker.mqtt import PlatformBrokerSession, PlatformConfig
from gcp_pubsub_adapter.core.broker.pubsub import CloudBrokerSession
from gcp_pubsub_adapter.core.clearblade import ClearBladeDeviceClient
from gcp_pubsub_adapter.core.config import AdapterSettings
from gcp_pubsub_adapter.core.engine import RelayEngine
from gcp_pubsub_adapter.core.logging import configure_logging
from gcp_pubsub_adapter.core.settings import resolve
from gcp_pubsub_adapter.core.sources import (
    CollectionSettingsSource,
    FileSettingsSource,
    SettingsSource,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


def build_settings_source(
    settings: AdapterSettings, client: ClearBladeDeviceClient
) -> SettingsSource:
    if settings.settings_file:
        return FileSettingsSource(settings.settings_file)
    return CollectionSettingsSource(client, settings.adapter_config_collection)


async def run(settings: AdapterSettings) -> int:
    """Run the adapter until a termination signal or a fatal error."""
    loop = asyncio.get_running_loop()
    terminate = asyncio.Event()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(sig, _on_signal, sig, terminate)

    try:
        return await _run(settings, terminate)
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)


async def _unless_terminated(coro: Awaitable[T], terminate: asyncio.Event) -> T | None:
    """Await ``coro``, abandoning it if ``terminate`` is set first."""
    task = asyncio.ensure_future(coro)
    terminated = asyncio.create_task(terminate.wait())
    try:
        await asyncio.wait({task, terminated}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        terminated.cancel()
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    if task.cancelled():
        return None
    return task.result()


async def _run(settings: AdapterSettings, terminate: asyncio.Event) -> int:
    client = ClearBladeDeviceClient(
        platform_url=settings.platform_url,
        system_key=settings.system_key,
        system_secret=settings.system_secret,
        device_name=settings.device_name,
        password=settings.password,
        timeout=settings.request_timeout,
        auth_retry_interval=settings.auth_retry_interval,
    )
    logger.info("Initializing the platform client for %s", settings.platform_url)
    device_token = await _unless_terminated(client.authenticate_with_retry(), terminate)
    if device_token is None:
        logger.info("Terminated before platform authentication succeeded")
        return EXIT_SUCCESS

    try:
        raw = await build_settings_source(settings, client).fetch()
        config = resolve(raw)
    except ConfigurationError as exc:
        logger.critical("%s", exc)
        return EXIT_FAILURE

    cloud = CloudBrokerSession(config.cloud_project_id, config.credentials_path)
    try:
        await asyncio.to_thread(cloud.authenticate)
    except AuthError as exc:
        logger.critical("%s", exc)
        return EXIT_FAILURE

    platform = PlatformBrokerSession(
        PlatformConfig(
            host=settings.mqtt_host,
            port=settings.mqtt_port,
            client_id=f"{settings.device_name}_client-{random.randrange(10000)}",
            username=device_token,
            password=settings.system_key,
            reconnect_interval=settings.reconnect_interval,
        )
    )
    engine = RelayEngine(
        config,
        cloud,
        platform,
        subscribe_retry_interval=settings.subscribe_retry_interval,
    )

    try:
        if terminate.is_set():
            return EXIT_SUCCESS

        try:
            await engine.start()
        except PlatformConnectError as exc:
            logger.critical("Unable to initialize MQTT connection: %s", exc)
            return EXIT_FAILURE

        terminated = asyncio.create_task(terminate.wait())
        await asyncio.wait(
            {terminated, engine.fatal},
            return_when=asyncio.FIRST_COMPLETED,
        )
        terminated.cancel()

        exit_code = EXIT_SUCCESS
        if engine.fatal.done():
            logger.critical("Exiting after fatal error: %s", engine.fatal.result())
            exit_code = EXIT_FAILURE

        await engine.shutdown()
        return exit_code
    finally:
        cloud.close()


def _on_signal(sig: signal.Signals, terminate: asyncio.Event) -> None:
    logger.info("OS signal %s received, ending relays", sig.name)
    terminate.set()


def main(argv: list[str] | None = None) -> None:
    try:
        settings = AdapterSettings(_cli_parse_args=argv if argv is not None else True)
    except ValidationError as exc:
        configure_logging("info")
        logger.critical("Missing or invalid adapter flags: %s", exc)
        sys.exit(EXIT_FAILURE)

    configure_logging(settings.log_level)
    logger.info("Starting GCP Pub/Sub adapter %s", settings.device_name)
    sys.exit(asyncio.run(run(settings)))
