"""Infrastructure layer for the cross-ledger price feed relay.

This package provides the MQTT notification transport, the adapters
that bridge publishers and dispatchers onto it, and an in-memory
upstream price feed.
"""

from infra.mock_feed import MockPriceFeed
from infra.mqtt_transport import (
    MQTTNotificationTransport,
    MQTTTransportConfig,
    TransportState,
)
from infra.relay_adapter import (
    NotificationAdapter,
    NotificationAdapterConfig,
    NotificationPublisher,
    notification_topic,
)

__all__: list[str] = [
    "MQTTNotificationTransport",
    "MQTTTransportConfig",
    "MockPriceFeed",
    "NotificationAdapter",
    "NotificationAdapterConfig",
    "NotificationPublisher",
    "TransportState",
    "notification_topic",
]
