# gcp_pubsub_adapter/core/broker/pubsub.py
"""
Google Cloud Pub/Sub session for the relay engine.

The session owns the authenticated publisher and subscriber clients and
the one subscription the poll relay pulls from. All methods block and are
meant to be run in a worker thread by async callers.

Usage:
    session = CloudBrokerSession("my-project", "/etc/adapter/creds.json")
    session.authenticate()

    handle = session.ensure_subscription("device-commands", pre_created=False)
    message_id = session.publish("device-events", b"payload")

    cancel = threading.Event()
    session.receive(handle, on_message, cancel)  # until cancel.set()
"""
from __future__ import annotations

import logging
import threading
from concurrent import futures
from typing import Any, Callable

from google.api_core import exceptions as api_exceptions
from google.auth.exceptions import GoogleAuthError
from google.cloud import pubsub_v1
from google.oauth2 import service_account

from gcp_pubsub_adapter.contracts.broker import (
    DeliveryCallback,
    RelayMessage,
    SubscriptionHandle,
)
from gcp_pubsub_adapter.contracts.errors import (
    AuthError,
    CloudPublishError,
    ReceiveCancelled,
    ReceiveError,
    SubscriptionCreateError,
)

logger = logging.getLogger(__name__)

ACK_DEADLINE_SECONDS = 10


class CloudBrokerSession:
    """
    Authenticated Pub/Sub clients plus the resolved subscription.

    Args:
        project_id: Google Cloud project ID.
        credentials_path: Path to a service account JSON key file.
        publish_timeout: Seconds to wait for a publish acknowledgement.
        cancel_check_interval: Seconds between cancellation checks while
            a receive is running.
        credentials_loader: Builds credentials from the key file path.
        publisher_factory: Builds a publisher client from credentials.
        subscriber_factory: Builds a subscriber client from credentials.
    """

    def __init__(
        self,
        project_id: str,
        credentials_path: str,
        *,
        publish_timeout: float = 60.0,
        cancel_check_interval: float = 0.5,
        credentials_loader: Callable[[str], Any] | None = None,
        publisher_factory: Callable[..., Any] | None = None,
        subscriber_factory: Callable[..., Any] | None = None,
    ) -> None:
        self._project_id = project_id
        self._credentials_path = credentials_path
        self._publish_timeout = publish_timeout
        self._cancel_check_interval = cancel_check_interval

        self._credentials_loader = (
            credentials_loader or service_account.Credentials.from_service_account_file
        )
        self._publisher_factory = publisher_factory or pubsub_v1.PublisherClient
        self._subscriber_factory = subscriber_factory or pubsub_v1.SubscriberClient

        self._publisher: Any | None = None
        self._subscriber: Any | None = None
        self._subscription: SubscriptionHandle | None = None
        self._known_topics: set[str] = set()

    @property
    def project_id(self) -> str:
        return self._project_id

    @property
    def is_authenticated(self) -> bool:
        return self._publisher is not None and self._subscriber is not None

    @property
    def subscription(self) -> SubscriptionHandle | None:
        """The resolved subscription, if any."""
        return self._subscription

    def authenticate(self) -> None:
        """
        Build the Pub/Sub clients from the service account key file.

        Calling it on an authenticated session does nothing.

        Raises:
            AuthError: If the key file is missing or invalid, or the clients
                cannot be created.
        """
        if self.is_authenticated:
            logger.debug("Already authenticated to GCP")
            return

        logger.info("Authenticating to GCP project %s", self._project_id)
        try:
            credentials = self._credentials_loader(self._credentials_path)
            self._publisher = self._publisher_factory(credentials=credentials)
            self._subscriber = self._subscriber_factory(credentials=credentials)
        except (OSError, ValueError, GoogleAuthError, api_exceptions.GoogleAPIError) as exc:
            self._publisher = None
            self._subscriber = None
            raise AuthError(
                f"Error authenticating to GCP with '{self._credentials_path}': {exc}"
            ) from exc

        logger.info("Authentication to GCP successful")

    def ensure_subscription(self, topic: str, pre_created: bool) -> SubscriptionHandle:
        """
        Resolve the subscription bound to ``topic``.

        The subscription is named after the topic. A pre-created
        subscription is only referenced; otherwise it is created with a
        10 second ack deadline and no expiration. The handle is cached, so
        repeated calls for the same topic never create twice.

        Raises:
            SubscriptionCreateError: If creation fails.
        """
        if self._subscription is not None and self._subscription.topic == topic:
            logger.debug("Reusing subscription %s", self._subscription.path)
            return self._subscription

        publisher, subscriber = self._clients()
        topic_path = publisher.topic_path(self._project_id, topic)
        subscription_path = subscriber.subscription_path(self._project_id, topic)

        if pre_created:
            logger.debug("Creating GCP subscription reference %s", subscription_path)
        else:
            logger.debug("Creating GCP subscription %s", subscription_path)
            try:
                subscriber.create_subscription(
                    request={
                        "name": subscription_path,
                        "topic": topic_path,
                        "ack_deadline_seconds": ACK_DEADLINE_SECONDS,
                        # An expiration policy without a ttl never expires
                        "expiration_policy": {},
                    }
                )
            except api_exceptions.AlreadyExists:
                logger.warning(
                    "Subscription %s already exists, reusing it", subscription_path
                )
            except api_exceptions.GoogleAPIError as exc:
                raise SubscriptionCreateError(
                    f"Error subscribing to topic '{topic}': {exc}"
                ) from exc

        self._subscription = SubscriptionHandle(
            project_id=self._project_id,
            topic=topic,
            path=subscription_path,
            pre_created=pre_created,
        )
        return self._subscription

    def publish(self, topic: str, payload: bytes) -> str:
        """
        Publish ``payload`` to ``topic``, creating the topic if needed.

        Returns:
            The server-assigned message ID.

        Raises:
            CloudPublishError: If the topic cannot be created or the publish
                is not acknowledged.
        """
        publisher, _ = self._clients()
        topic_path = publisher.topic_path(self._project_id, topic)
        self._ensure_topic(publisher, topic_path)

        try:
            future = publisher.publish(topic_path, payload)
            message_id = future.result(timeout=self._publish_timeout)
        except (
            api_exceptions.GoogleAPIError,
            futures.TimeoutError,
            # Oversized payloads raise MessageTooLargeError, a ValueError;
            # a stopped publisher raises RuntimeError
            ValueError,
            RuntimeError,
            TypeError,
        ) as exc:
            raise CloudPublishError(f"Publish to '{topic_path}' failed: {exc}") from exc

        logger.debug("Published message %s to %s", message_id, topic_path)
        return message_id

    def _ensure_topic(self, publisher: Any, topic_path: str) -> None:
        if topic_path in self._known_topics:
            return

        try:
            publisher.create_topic(request={"name": topic_path})
            logger.info("Created GCP topic %s", topic_path)
        except api_exceptions.AlreadyExists:
            pass
        except api_exceptions.PermissionDenied:
            # Publishers often lack admin rights on topics that already exist
            logger.warning("Not allowed to create topic %s, publishing anyway", topic_path)
        except api_exceptions.GoogleAPIError as exc:
            raise CloudPublishError(f"Cannot create topic '{topic_path}': {exc}") from exc

        self._known_topics.add(topic_path)

    def receive(
        self,
        handle: SubscriptionHandle,
        callback: DeliveryCallback,
        cancel: threading.Event,
    ) -> None:
        """
        Stream messages from the subscription until ``cancel`` is set.

        Every message goes to ``callback`` and is acknowledged afterwards,
        whether or not the callback succeeded.

        Raises:
            ReceiveCancelled: When stopped through ``cancel``.
            ReceiveError: When the stream fails for any other reason.
        """
        _, subscriber = self._clients()

        def on_message(message: Any) -> None:
            logger.debug("Pubsub message received: %s", message.message_id)
            try:
                callback(
                    RelayMessage(
                        topic=handle.topic,
                        payload=message.data,
                        message_id=message.message_id,
                    )
                )
            except Exception:
                logger.exception("Delivery failed for message %s", message.message_id)
            finally:
                message.ack()

        streaming_pull = subscriber.subscribe(handle.path, callback=on_message)

        try:
            while not cancel.is_set():
                try:
                    streaming_pull.result(timeout=self._cancel_check_interval)
                except futures.TimeoutError:
                    continue
                logger.info("Streaming pull on %s ended", handle.path)
                return
        except futures.CancelledError:
            raise ReceiveCancelled(f"Receive on '{handle.path}' cancelled") from None
        except Exception as exc:
            raise ReceiveError(f"Error receiving pubsub messages: {exc}") from exc

        streaming_pull.cancel()
        try:
            # Blocks until the stream has shut down
            streaming_pull.result(timeout=self._publish_timeout)
        except (futures.CancelledError, futures.TimeoutError):
            logger.debug("Streaming pull on %s stopped", handle.path)
        raise ReceiveCancelled(f"Receive on '{handle.path}' cancelled")

    def close(self) -> None:
        """Release the clients."""
        if self._subscriber is not None:
            self._subscriber.close()
        if self._publisher is not None:
            self._publisher.stop()
        self._publisher = None
        self._subscriber = None
        self._subscription = None
        self._known_topics.clear()

    def _clients(self) -> tuple[Any, Any]:
        if self._publisher is None or self._subscriber is None:
            raise AuthError("Cloud session is not authenticated")
        return self._publisher, self._subscriber
