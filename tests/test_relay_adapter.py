"""Unit tests for infra.relay_adapter module.

The MQTT transport is replaced by a MagicMock; messages are injected by
calling the adapter's ``_on_message`` directly, as the transport would
from its IO thread.
"""

from unittest.mock import MagicMock, Mock

import pytest
from pydantic import ValidationError

from core.codec import decode_payload
from core.dispatcher import Subscription
from core.events import (
    PRICE_UPDATE_EVENT_SIGNATURE,
    FeedMetadataUpdated,
    Notification,
    PriceUpdateEmitted,
)
from infra.relay_adapter import (
    NotificationAdapter,
    NotificationAdapterConfig,
    NotificationPublisher,
    notification_topic,
)

SOURCE_CHAIN_ID: int = 11155111
SOURCE_CONTRACT: str = "0xabc"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def transport() -> MagicMock:
    mock = MagicMock()
    mock.publish.return_value = True
    return mock


@pytest.fixture()
def subscription() -> Subscription:
    return Subscription(
        subscription_id=0,
        source_chain_id=SOURCE_CHAIN_ID,
        source_contract=SOURCE_CONTRACT,
        event_signature=PRICE_UPDATE_EVENT_SIGNATURE,
    )


@pytest.fixture()
def received() -> list[Notification]:
    return []


@pytest.fixture()
def adapter(transport: MagicMock, received: list[Notification]) -> NotificationAdapter:
    return NotificationAdapter(
        config=NotificationAdapterConfig(max_payload_bytes=64),
        transport=transport,
        on_notification=received.append,
    )


def _event(round_id: int = 1) -> PriceUpdateEmitted:
    return PriceUpdateEmitted(
        round_id=round_id,
        answer=200_000_000_000,
        updated_at=1_760_000_000,
        decimals=8,
        description="ETH / USD",
        destination_chain_id=84532,
        version=1,
    )


# ---------------------------------------------------------------------------
# Topic Tests
# ---------------------------------------------------------------------------


class TestNotificationTopic:
    """Tests for notification_topic()."""

    def test_layout(self) -> None:
        topic: str = notification_topic(1, "0xabc", "Sig()")
        parts: list[str] = topic.split("/")
        assert parts[:3] == ["relay", "1", "0xabc"]
        assert len(parts[3]) == 16

    def test_deterministic(self) -> None:
        assert notification_topic(1, "0xabc", "Sig()") == notification_topic(
            1, "0xabc", "Sig()",
        )

    def test_signature_changes_topic(self) -> None:
        assert notification_topic(1, "0xabc", "A()") != notification_topic(
            1, "0xabc", "B()",
        )

    @pytest.mark.parametrize("contract", ["", "a/b", "a+b", "a#"])
    def test_invalid_contract_rejected(self, contract: str) -> None:
        with pytest.raises(ValueError):
            notification_topic(1, contract, "Sig()")


# ---------------------------------------------------------------------------
# NotificationPublisher Tests
# ---------------------------------------------------------------------------


class TestNotificationPublisher:
    """Tests for the source-side observer."""

    def test_publishes_encoded_price_update(self, transport: MagicMock) -> None:
        notifier = NotificationPublisher(
            transport=transport,
            source_chain_id=SOURCE_CHAIN_ID,
            source_contract=SOURCE_CONTRACT,
        )
        event: PriceUpdateEmitted = _event()
        notifier(event)

        topic, payload = transport.publish.call_args.args
        assert topic == notifier.topic
        assert decode_payload(payload) == event
        assert notifier.stats()["published"] == 1

    def test_ignores_other_events(self, transport: MagicMock) -> None:
        notifier = NotificationPublisher(
            transport=transport,
            source_chain_id=SOURCE_CHAIN_ID,
            source_contract=SOURCE_CONTRACT,
        )
        notifier(FeedMetadataUpdated(description="ETH / USD", decimals=8, version=1))
        transport.publish.assert_not_called()

    def test_forwards_every_event(self, transport: MagicMock) -> None:
        forward: Mock = Mock()
        notifier = NotificationPublisher(
            transport=transport,
            source_chain_id=SOURCE_CHAIN_ID,
            source_contract=SOURCE_CONTRACT,
            forward=forward,
        )
        metadata = FeedMetadataUpdated(description="ETH / USD", decimals=8, version=1)
        notifier(metadata)
        notifier(_event())
        assert forward.call_count == 2

    def test_publish_failure_counted_not_raised(self, transport: MagicMock) -> None:
        transport.publish.return_value = False
        notifier = NotificationPublisher(
            transport=transport,
            source_chain_id=SOURCE_CHAIN_ID,
            source_contract=SOURCE_CONTRACT,
        )
        notifier(_event())
        assert notifier.stats()["publish_failures"] == 1
        assert notifier.stats()["published"] == 0


# ---------------------------------------------------------------------------
# NotificationAdapter Tests
# ---------------------------------------------------------------------------


class TestNotificationAdapterConfig:
    def test_default(self) -> None:
        assert NotificationAdapterConfig().max_payload_bytes == 4096

    def test_non_positive_rejected(self) -> None:
        with pytest.raises(ValidationError):
            NotificationAdapterConfig(max_payload_bytes=0)


class TestNotificationAdapterSubscribe:
    """Tests for subscribe/unsubscribe."""

    def test_subscribe_registers_topic(
        self,
        adapter: NotificationAdapter,
        transport: MagicMock,
        subscription: Subscription,
    ) -> None:
        topic: str = adapter.subscribe(subscription)
        transport.subscribe.assert_called_once_with(
            topic=topic,
            callback=adapter._on_message,
        )
        assert topic in adapter.subscribed_topics

    def test_duplicate_subscription_subscribes_once(
        self,
        adapter: NotificationAdapter,
        transport: MagicMock,
        subscription: Subscription,
    ) -> None:
        duplicate: Subscription = subscription.model_copy(
            update={"subscription_id": 1},
        )
        adapter.subscribe(subscription)
        adapter.subscribe(duplicate)
        assert transport.subscribe.call_count == 1

    def test_unsubscribe(
        self,
        adapter: NotificationAdapter,
        transport: MagicMock,
        subscription: Subscription,
    ) -> None:
        topic: str = adapter.subscribe(subscription)
        adapter.unsubscribe(subscription)
        transport.unsubscribe.assert_called_once_with(topic=topic)
        assert adapter.subscribed_topics == frozenset()


class TestNotificationAdapterMessages:
    """Tests for the _on_message hot path."""

    def test_builds_notification(
        self,
        adapter: NotificationAdapter,
        subscription: Subscription,
        received: list[Notification],
    ) -> None:
        topic: str = adapter.subscribe(subscription)
        adapter._on_message(topic, b"\x08\x01")

        assert received == [
            Notification(
                source_chain_id=SOURCE_CHAIN_ID,
                source_contract=SOURCE_CONTRACT,
                event_signature=PRICE_UPDATE_EVENT_SIGNATURE,
                payload=b"\x08\x01",
            ),
        ]
        assert adapter.stats()["messages_forwarded"] == 1

    def test_unknown_topic_is_envelope_error(
        self,
        adapter: NotificationAdapter,
        received: list[Notification],
    ) -> None:
        adapter._on_message("relay/1/0xother/0000000000000000", b"\x01")
        assert received == []
        assert adapter.stats()["envelope_errors"] == 1

    def test_oversized_payload_is_envelope_error(
        self,
        adapter: NotificationAdapter,
        subscription: Subscription,
        received: list[Notification],
    ) -> None:
        topic: str = adapter.subscribe(subscription)
        adapter._on_message(topic, b"\x00" * 65)
        assert received == []
        assert adapter.stats()["envelope_errors"] == 1

    def test_callback_error_isolated(
        self,
        transport: MagicMock,
        subscription: Subscription,
    ) -> None:
        sut = NotificationAdapter(
            config=NotificationAdapterConfig(),
            transport=transport,
            on_notification=Mock(side_effect=RuntimeError("consumer down")),
        )
        topic: str = sut.subscribe(subscription)
        sut._on_message(topic, b"\x01")

        stats = sut.stats()
        assert stats["callback_errors"] == 1
        assert stats["envelope_errors"] == 0
        assert stats["messages_forwarded"] == 0

    def test_each_message_counted_once(
        self,
        adapter: NotificationAdapter,
        subscription: Subscription,
    ) -> None:
        topic: str = adapter.subscribe(subscription)
        adapter._on_message(topic, b"\x01")
        adapter._on_message(topic, b"\x00" * 100)
        adapter._on_message("unknown", b"\x01")

        stats = adapter.stats()
        total: int = (
            stats["messages_forwarded"]
            + stats["envelope_errors"]
            + stats["callback_errors"]
        )
        assert total == 3
