"""Bridges between the relay components and the MQTT transport.

Two directions:

- :class:`NotificationPublisher` is the source side. Installed as a
  publisher's ``on_event`` observer, it encodes every
  :class:`~core.events.PriceUpdateEmitted` with the wire codec and
  publishes it on the publisher's topic. Fire-and-forget: the
  publisher never learns whether anyone received it.
- :class:`NotificationAdapter` is the dispatcher side. For each
  dispatcher subscription it subscribes to the matching topic, wraps
  every received payload in a :class:`~core.events.Notification`
  envelope and forwards it, typically to
  :meth:`NotificationChannel.push <core.channel.NotificationChannel.push>`.

Topic layout:
    ``relay/{source_chain_id}/{source_contract}/{signature_hash}``, where
    ``signature_hash`` is the first 16 hex digits of the SHA-256 of the
    event signature. One topic per (ledger, publisher, event).

Thread ownership:
    - ``subscribe()`` / ``unsubscribe()``: main thread only.
    - ``_on_message()``: MQTT IO thread only.
    - ``stats()``: any thread.

Error isolation:
    Envelope errors (unknown topic, oversized or invalid payload) and
    consumer callback errors are counted separately. Payload decoding is
    left to the dispatcher, which discards what it cannot decode.

Logging safety:
    Hot-path error logging is rate-limited: the first 10 errors of each
    type log full stack traces, then every 1000th.

Example:
    >>> from core.channel import NotificationChannel
    >>> from infra.relay_adapter import NotificationAdapter, NotificationAdapterConfig
    >>> channel = NotificationChannel()
    >>> adapter = NotificationAdapter(
    ...     config=NotificationAdapterConfig(),
    ...     transport=transport,
    ...     on_notification=channel.push,
    ... )
    >>> adapter.subscribe(subscription)
"""

import hashlib
import logging
import threading
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from core.codec import encode_payload
from core.dispatcher import Subscription
from core.events import (
    PRICE_UPDATE_EVENT_SIGNATURE,
    Notification,
    PriceUpdateEmitted,
    RelayEvent,
)
from infra.mqtt_transport import MQTTNotificationTransport

logger: logging.Logger = logging.getLogger(__name__)

NotificationCallback = Callable[[Notification], None]
"""Consumer signature: ``(notification) -> None``. Runs in the MQTT IO thread."""

_TOPIC_PREFIX: str = "relay"

_TOPIC_RESERVED: frozenset[str] = frozenset({"/", "+", "#"})

# ---------------------------------------------------------------------------
# Rate-limited logging thresholds
# ---------------------------------------------------------------------------

_LOG_FIRST_N: int = 10
"""Log full stack trace for the first N errors of each type."""

_LOG_EVERY_N: int = 1000
"""After the first N errors, log every Nth occurrence."""


def notification_topic(
    source_chain_id: int,
    source_contract: str,
    event_signature: str,
) -> str:
    """Build the MQTT topic for one publisher's event stream.

    Raises:
        ValueError: If ``source_contract`` contains a topic separator or
            wildcard character.
    """
    if not source_contract or _TOPIC_RESERVED & set(source_contract):
        raise ValueError(f"invalid source contract for a topic: {source_contract!r}")
    digest: str = hashlib.sha256(event_signature.encode("utf-8")).hexdigest()[:16]
    return f"{_TOPIC_PREFIX}/{source_chain_id}/{source_contract}/{digest}"


# ---------------------------------------------------------------------------
# Source side
# ---------------------------------------------------------------------------


class NotificationPublisher:
    """Publisher observer that puts encoded updates on the transport.

    Args:
        transport: Transport to publish on.
        source_chain_id: Ledger the publisher lives on.
        source_contract: Publisher identifier on that ledger.
        event_signature: Signature the dispatcher subscribes with.
        forward: Optional second observer receiving every event.
    """

    def __init__(
        self,
        transport: MQTTNotificationTransport,
        source_chain_id: int,
        source_contract: str,
        event_signature: str = PRICE_UPDATE_EVENT_SIGNATURE,
        forward: Callable[[RelayEvent], None] | None = None,
    ) -> None:
        self._transport: MQTTNotificationTransport = transport
        self._topic: str = notification_topic(
            source_chain_id,
            source_contract,
            event_signature,
        )
        self._forward: Callable[[RelayEvent], None] | None = forward
        self._published: int = 0
        self._publish_failures: int = 0

    @property
    def topic(self) -> str:
        return self._topic

    def __call__(self, event: RelayEvent) -> None:
        if self._forward is not None:
            self._forward(event)
        if not isinstance(event, PriceUpdateEmitted):
            return
        if self._transport.publish(self._topic, encode_payload(event)):
            self._published += 1
            logger.debug("Published round %d on %s", event.round_id, self._topic)
        else:
            self._publish_failures += 1
            logger.warning(
                "Round %d not published on %s; notification lost",
                event.round_id,
                self._topic,
            )

    def stats(self) -> dict[str, object]:
        return {
            "topic": self._topic,
            "published": self._published,
            "publish_failures": self._publish_failures,
        }


# ---------------------------------------------------------------------------
# Dispatcher side
# ---------------------------------------------------------------------------


class NotificationAdapterConfig(BaseModel):
    """Configuration for :class:`NotificationAdapter`.

    Attributes:
        max_payload_bytes: Payloads larger than this are dropped before
            reaching the consumer.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_payload_bytes: int = Field(default=4096, gt=0)


class NotificationAdapter:
    """Turns topic messages into :class:`Notification` envelopes.

    A message increments exactly one of ``messages_forwarded``,
    ``envelope_errors`` or ``callback_errors``.

    Args:
        config: Adapter configuration.
        transport: Transport to subscribe on.
        on_notification: Consumer for each envelope. Must be
            non-blocking; runs in the MQTT IO thread.
    """

    def __init__(
        self,
        config: NotificationAdapterConfig,
        transport: MQTTNotificationTransport,
        on_notification: NotificationCallback,
    ) -> None:
        self._config: NotificationAdapterConfig = config
        self._transport: MQTTNotificationTransport = transport
        self._on_notification: NotificationCallback = on_notification

        # topic -> subscription it was derived from
        self._topics: dict[str, Subscription] = {}
        self._sub_lock: threading.Lock = threading.Lock()

        self._messages_forwarded: int = 0
        self._envelope_errors: int = 0
        self._callback_errors: int = 0
        self._counter_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(self, subscription: Subscription) -> str:
        """Listen on the topic of ``subscription``.

        Equivalent subscriptions share one topic; the transport is only
        subscribed once. Each duplicate still runs separately inside the
        dispatcher.

        Returns:
            The topic.
        """
        topic: str = notification_topic(
            subscription.source_chain_id,
            subscription.source_contract,
            subscription.event_signature,
        )
        with self._sub_lock:
            if topic in self._topics:
                logger.debug("Topic %s already subscribed, skipping", topic)
                return topic
            self._topics[topic] = subscription

        self._transport.subscribe(topic=topic, callback=self._on_message)
        logger.info(
            "NotificationAdapter subscribed to %s (subscription %d)",
            topic,
            subscription.subscription_id,
        )
        return topic

    def unsubscribe(self, subscription: Subscription) -> None:
        topic: str = notification_topic(
            subscription.source_chain_id,
            subscription.source_contract,
            subscription.event_signature,
        )
        with self._sub_lock:
            self._topics.pop(topic, None)
        self._transport.unsubscribe(topic=topic)
        logger.info("NotificationAdapter unsubscribed from %s", topic)

    @property
    def subscribed_topics(self) -> frozenset[str]:
        with self._sub_lock:
            return frozenset(self._topics)

    def stats(self) -> dict[str, object]:
        """Counter snapshot. Thread-safe."""
        with self._counter_lock:
            forwarded: int = self._messages_forwarded
            envelope_errors: int = self._envelope_errors
            callback_errors: int = self._callback_errors
        with self._sub_lock:
            topics: list[str] = sorted(self._topics)
        return {
            "subscribed_topics": topics,
            "messages_forwarded": forwarded,
            "envelope_errors": envelope_errors,
            "callback_errors": callback_errors,
        }

    # ------------------------------------------------------------------
    # Hot path (MQTT IO thread)
    # ------------------------------------------------------------------

    def _on_message(self, topic: str, payload: bytes) -> None:
        try:
            subscription: Subscription | None = self._topics.get(topic)
            if subscription is None:
                raise LookupError(f"no subscription for topic {topic}")
            if len(payload) > self._config.max_payload_bytes:
                raise ValueError(
                    f"payload of {len(payload)} bytes exceeds "
                    f"{self._config.max_payload_bytes}"
                )
            notification: Notification = Notification(
                source_chain_id=subscription.source_chain_id,
                source_contract=subscription.source_contract,
                event_signature=subscription.event_signature,
                payload=bytes(payload),
            )
        except Exception:
            self._envelope_errors += 1
            self._log_envelope_error(topic=topic)
            return

        try:
            self._on_notification(notification)
        except Exception:
            self._callback_errors += 1
            self._log_callback_error(topic=topic)
            return

        self._messages_forwarded += 1

    # ------------------------------------------------------------------
    # Rate-limited logging
    # ------------------------------------------------------------------

    def _log_envelope_error(self, topic: str) -> None:
        count: int = self._envelope_errors
        if count <= _LOG_FIRST_N:
            logger.exception(
                "Failed to build notification on %s (%d/%d)",
                topic,
                count,
                _LOG_FIRST_N,
            )
        elif count % _LOG_EVERY_N == 0:
            logger.error(
                "Envelope errors ongoing: %d total (topic=%s)",
                count,
                topic,
            )

    def _log_callback_error(self, topic: str) -> None:
        count: int = self._callback_errors
        if count <= _LOG_FIRST_N:
            logger.exception(
                "Notification callback error for %s (%d/%d)",
                topic,
                count,
                _LOG_FIRST_N,
            )
        elif count % _LOG_EVERY_N == 0:
            logger.error(
                "Callback errors ongoing: %d total (topic=%s)",
                count,
                topic,
            )
