# gcp_pubsub_adapter/contracts/errors.py
"""
Exception hierarchy for the adapter.

Errors fall into four groups that decide how callers react:

- Fatal: the process must not continue (``ConfigurationError``,
  ``AuthError``, ``SubscriptionCreateError``, ``PlatformConnectError``).
- Recoverable: retried with a fixed backoff (``PlatformAuthError``,
  ``PlatformSubscribeError``).
- Transient: logged and the message dropped (``CloudPublishError``,
  ``PlatformPublishError``).
- Informational: ``ReceiveCancelled`` marks a normal stop of the cloud
  receive loop and is never reported as an error.
"""
from __future__ import annotations


class AdapterError(Exception):
    """Base class for all adapter errors."""


class ConfigurationError(AdapterError):
    """
    Adapter settings are unusable.

    Attributes:
        errors: Every problem found while decoding the settings.
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = list(errors or [])
        if self.errors:
            message = f"{message}: " + "; ".join(self.errors)
        super().__init__(message)


class AuthError(AdapterError):
    """Authentication to the cloud broker failed."""


class SubscriptionCreateError(AdapterError):
    """The cloud subscription could not be created."""


class CloudPublishError(AdapterError):
    """A publish to the cloud broker failed."""


class ReceiveError(AdapterError):
    """The cloud receive loop failed for a reason other than cancellation."""


class ReceiveCancelled(AdapterError):
    """The cloud receive loop was cancelled."""


class PlatformConnectError(AdapterError):
    """The initial connection to the platform broker failed."""


class PlatformAuthError(AdapterError):
    """Device authentication against the platform failed."""


class PlatformSubscribeError(AdapterError):
    """A platform topic subscription failed."""


class PlatformPublishError(AdapterError):
    """A publish to the platform broker failed."""


FATAL_ERRORS: tuple[type[AdapterError], ...] = (
    ConfigurationError,
    AuthError,
    SubscriptionCreateError,
    PlatformConnectError,
)
