"""Core domain layer for the cross-ledger price feed relay.

This package provides the round records and events, the source
publisher, the relay dispatcher with its drift and retry policies, the
destination store and the error taxonomy shared by all of them. All
models are Pydantic-based with frozen configuration for immutability.
"""

from core.admin import AdminCapability
from core.channel import ChannelConfig, NotificationChannel
from core.destination import DestinationConfig, DestinationStore
from core.dispatcher import (
    DispatchOutcome,
    DispatcherConfig,
    DispatcherStats,
    RelayDispatcher,
    Subscription,
)
from core.drift import TemporalState
from core.errors import ErrorKind, FeedRelayError
from core.events import FeedMetadata, Notification, PriceUpdateEmitted, RoundRecord
from core.feed_health import HealthMetrics
from core.publisher import PublisherConfig, SourcePublisher
from core.retry import RetryPolicy
from core.worker import MultiFeedConfig, MultiFeedWorker, RelayWorker, WorkerConfig

__all__: list[str] = [
    "AdminCapability",
    "ChannelConfig",
    "DestinationConfig",
    "DestinationStore",
    "DispatchOutcome",
    "DispatcherConfig",
    "DispatcherStats",
    "ErrorKind",
    "FeedMetadata",
    "FeedRelayError",
    "HealthMetrics",
    "MultiFeedConfig",
    "MultiFeedWorker",
    "Notification",
    "NotificationChannel",
    "PriceUpdateEmitted",
    "PublisherConfig",
    "RelayDispatcher",
    "RelayWorker",
    "RetryPolicy",
    "RoundRecord",
    "SourcePublisher",
    "Subscription",
    "TemporalState",
    "WorkerConfig",
]
