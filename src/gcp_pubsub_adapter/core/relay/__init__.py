# gcp_pubsub_adapter/core/relay/__init__.py
"""
Relay workers moving messages between the two brokers.

- ``InboundRelay``: platform -> cloud
- ``PollRelay``: cloud -> platform
- ``ShutdownCoordinator``: stop signalling shared by the workers
"""

from gcp_pubsub_adapter.core.relay.inbound import InboundRelay
from gcp_pubsub_adapter.core.relay.poll import PollRelay
from gcp_pubsub_adapter.core.relay.shutdown import ShutdownCoordinator, StopToken

__all__ = [
    "InboundRelay",
    "PollRelay",
    "ShutdownCoordinator",
    "StopToken",
]
