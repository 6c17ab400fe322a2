"""Unit tests for infra.mqtt_transport module.

paho.mqtt.client is mocked so the transport is tested without a broker.
"""

import threading
from unittest.mock import MagicMock, Mock, patch

import paho.mqtt.client as mqtt
import pytest
from pydantic import ValidationError

from infra.mqtt_transport import (
    MQTTNotificationTransport,
    MQTTTransportConfig,
    TransportState,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


TOPIC: str = "relay/11155111/0xabc/0123456789abcdef"


@pytest.fixture()
def config() -> MQTTTransportConfig:
    """Return a valid test configuration with short reconnect delays."""
    return MQTTTransportConfig(
        host="broker.example.com",
        reconnect_min_delay=0.1,
        reconnect_max_delay=1.0,
    )


@pytest.fixture()
def mock_mqtt_client() -> MagicMock:
    """Return a mocked paho MQTT Client."""
    client = MagicMock()
    client.connect.return_value = 0
    client.subscribe.return_value = (0, 1)
    client.unsubscribe.return_value = (0, 1)
    client.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_SUCCESS)
    return client


@pytest.fixture()
def transport(
    config: MQTTTransportConfig,
    mock_mqtt_client: MagicMock,
) -> MQTTNotificationTransport:
    """Return a transport in CONNECTED state backed by the mocked client."""
    with patch(
        "infra.mqtt_transport.mqtt.Client",
        return_value=mock_mqtt_client,
    ):
        sut = MQTTNotificationTransport(config=config)
        sut.connect()
        sut._on_connect(
            client=mock_mqtt_client,
            userdata=None,
            flags={},
            rc=0,
        )
    return sut


def _message(topic: str, payload: bytes) -> MagicMock:
    msg: MagicMock = MagicMock()
    msg.topic = topic
    msg.payload = payload
    return msg


# ---------------------------------------------------------------------------
# Configuration Tests
# ---------------------------------------------------------------------------


class TestMQTTTransportConfig:
    """Tests for MQTTTransportConfig Pydantic model."""

    def test_defaults(self) -> None:
        cfg: MQTTTransportConfig = MQTTTransportConfig(host="localhost")
        assert cfg.port == 1883
        assert cfg.transport == "tcp"
        assert cfg.tls is False
        assert cfg.keepalive == 30
        assert cfg.qos == 1
        assert cfg.reconnect_min_delay == 1.0
        assert cfg.reconnect_max_delay == 30.0

    def test_empty_host_rejected(self) -> None:
        with pytest.raises(ValidationError):
            MQTTTransportConfig(host="")

    def test_unknown_transport_rejected(self) -> None:
        with pytest.raises(ValidationError):
            MQTTTransportConfig(host="localhost", transport="udp")

    def test_keepalive_bounds(self) -> None:
        with pytest.raises(ValidationError):
            MQTTTransportConfig(host="localhost", keepalive=2)
        with pytest.raises(ValidationError):
            MQTTTransportConfig(host="localhost", keepalive=301)

    def test_password_requires_username(self) -> None:
        with pytest.raises(ValidationError):
            MQTTTransportConfig(host="localhost", password="secret")

    def test_min_delay_above_max_rejected(self) -> None:
        with pytest.raises(ValidationError):
            MQTTTransportConfig(
                host="localhost",
                reconnect_min_delay=10.0,
                reconnect_max_delay=5.0,
            )

    def test_frozen(self) -> None:
        cfg: MQTTTransportConfig = MQTTTransportConfig(host="localhost")
        with pytest.raises(ValidationError):
            cfg.port = 8883  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Client factory Tests
# ---------------------------------------------------------------------------


class TestClientFactory:
    """Tests for paho client construction."""

    def test_credentials_and_tls_applied(
        self,
        mock_mqtt_client: MagicMock,
    ) -> None:
        cfg: MQTTTransportConfig = MQTTTransportConfig(
            host="localhost",
            port=8883,
            tls=True,
            username="relay",
            password="secret",
        )
        with patch(
            "infra.mqtt_transport.mqtt.Client",
            return_value=mock_mqtt_client,
        ) as factory:
            MQTTNotificationTransport(config=cfg)._create_mqtt_client()

        kwargs = factory.call_args.kwargs
        assert kwargs["clean_session"] is True
        assert kwargs["transport"] == "tcp"
        mock_mqtt_client.tls_set.assert_called_once()
        mock_mqtt_client.username_pw_set.assert_called_once_with("relay", "secret")

    def test_websocket_path_applied(self, mock_mqtt_client: MagicMock) -> None:
        cfg: MQTTTransportConfig = MQTTTransportConfig(
            host="localhost",
            transport="websockets",
            websocket_path="/ws",
        )
        with patch(
            "infra.mqtt_transport.mqtt.Client",
            return_value=mock_mqtt_client,
        ):
            MQTTNotificationTransport(config=cfg)._create_mqtt_client()
        mock_mqtt_client.ws_set_options.assert_called_once_with(path="/ws")
        mock_mqtt_client.tls_set.assert_not_called()

    def test_generation_increments_on_create(
        self,
        config: MQTTTransportConfig,
        mock_mqtt_client: MagicMock,
    ) -> None:
        with patch(
            "infra.mqtt_transport.mqtt.Client",
            return_value=mock_mqtt_client,
        ):
            sut = MQTTNotificationTransport(config=config)
            sut._create_mqtt_client()
            gen1: int = sut._client_generation
            sut._client = mock_mqtt_client
            sut._create_mqtt_client()
            assert sut._client_generation == gen1 + 1

    def test_previous_client_stopped(
        self,
        config: MQTTTransportConfig,
        mock_mqtt_client: MagicMock,
    ) -> None:
        old: MagicMock = MagicMock()
        with patch(
            "infra.mqtt_transport.mqtt.Client",
            return_value=mock_mqtt_client,
        ):
            sut = MQTTNotificationTransport(config=config)
            sut._client = old
            sut._create_mqtt_client()
        old.loop_stop.assert_called_once()
        old.disconnect.assert_called_once()


# ---------------------------------------------------------------------------
# State Machine Tests
# ---------------------------------------------------------------------------


class TestStateMachine:
    """Tests for connection state transitions."""

    def test_initial_state(self, config: MQTTTransportConfig) -> None:
        sut = MQTTNotificationTransport(config=config)
        assert sut.state == TransportState.INIT
        assert sut.connected is False

    def test_connect_transitions_to_connecting(
        self,
        config: MQTTTransportConfig,
        mock_mqtt_client: MagicMock,
    ) -> None:
        with patch(
            "infra.mqtt_transport.mqtt.Client",
            return_value=mock_mqtt_client,
        ):
            sut = MQTTNotificationTransport(config=config)
            sut.connect()
        assert sut.state == TransportState.CONNECTING
        mock_mqtt_client.connect.assert_called_once_with(
            host="broker.example.com",
            port=1883,
            keepalive=30,
        )
        mock_mqtt_client.loop_start.assert_called_once()

    def test_on_connect_success_transitions_to_connected(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        assert transport.state == TransportState.CONNECTED
        assert transport.connected is True

    def test_connect_rejects_non_init_state(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        with pytest.raises(RuntimeError, match="Cannot connect"):
            transport.connect()

    def test_shutdown_is_terminal_and_idempotent(
        self,
        transport: MQTTNotificationTransport,
        mock_mqtt_client: MagicMock,
    ) -> None:
        transport.shutdown()
        transport.shutdown()
        assert transport.state == TransportState.SHUTDOWN
        mock_mqtt_client.loop_stop.assert_called_once()


# ---------------------------------------------------------------------------
# Publish Tests
# ---------------------------------------------------------------------------


class TestPublish:
    """Tests for publish()."""

    def test_publish_uses_configured_qos(
        self,
        transport: MQTTNotificationTransport,
        mock_mqtt_client: MagicMock,
    ) -> None:
        assert transport.publish(TOPIC, b"\x01\x02") is True
        mock_mqtt_client.publish.assert_called_once_with(
            TOPIC,
            payload=b"\x01\x02",
            qos=1,
        )
        assert transport.stats()["messages_published"] == 1

    def test_publish_without_client_returns_false(
        self,
        config: MQTTTransportConfig,
    ) -> None:
        sut = MQTTNotificationTransport(config=config)
        assert sut.publish(TOPIC, b"\x01") is False
        assert sut.stats()["publish_errors"] == 1

    def test_publish_error_rc_returns_false(
        self,
        transport: MQTTNotificationTransport,
        mock_mqtt_client: MagicMock,
    ) -> None:
        mock_mqtt_client.publish.return_value = MagicMock(
            rc=mqtt.MQTT_ERR_NO_CONN,
        )
        assert transport.publish(TOPIC, b"\x01") is False
        stats = transport.stats()
        assert stats["publish_errors"] == 1
        assert stats["messages_published"] == 0


# ---------------------------------------------------------------------------
# Subscription Tests
# ---------------------------------------------------------------------------


class TestSubscription:
    """Tests for subscribe/unsubscribe and replay."""

    def test_subscribe_sends_mqtt_subscribe_when_connected(
        self,
        transport: MQTTNotificationTransport,
        mock_mqtt_client: MagicMock,
    ) -> None:
        transport.subscribe(topic=TOPIC, callback=Mock())
        mock_mqtt_client.subscribe.assert_called_with(topic=TOPIC, qos=1)

    def test_subscribe_same_topic_sends_once(
        self,
        transport: MQTTNotificationTransport,
        mock_mqtt_client: MagicMock,
    ) -> None:
        mock_mqtt_client.subscribe.reset_mock()
        transport.subscribe(topic=TOPIC, callback=Mock())
        transport.subscribe(topic=TOPIC, callback=Mock())
        assert mock_mqtt_client.subscribe.call_count == 1
        assert len(transport._subscriptions[TOPIC]) == 2

    def test_subscribe_before_connect_is_deferred(
        self,
        config: MQTTTransportConfig,
        mock_mqtt_client: MagicMock,
    ) -> None:
        with patch(
            "infra.mqtt_transport.mqtt.Client",
            return_value=mock_mqtt_client,
        ):
            sut = MQTTNotificationTransport(config=config)
            sut.subscribe(topic=TOPIC, callback=Mock())
            mock_mqtt_client.subscribe.assert_not_called()
            sut.connect()
            sut._on_connect(
                client=mock_mqtt_client,
                userdata=None,
                flags={},
                rc=0,
            )
        mock_mqtt_client.subscribe.assert_called_once_with(topic=TOPIC, qos=1)

    def test_unsubscribe_removes_topic(
        self,
        transport: MQTTNotificationTransport,
        mock_mqtt_client: MagicMock,
    ) -> None:
        transport.subscribe(topic=TOPIC, callback=Mock())
        transport.unsubscribe(topic=TOPIC)
        assert TOPIC not in transport._subscriptions
        mock_mqtt_client.unsubscribe.assert_called_once_with(topic=TOPIC)

    def test_unsubscribe_nonexistent_topic(
        self,
        transport: MQTTNotificationTransport,
        mock_mqtt_client: MagicMock,
    ) -> None:
        transport.unsubscribe(topic="never/subscribed")
        mock_mqtt_client.unsubscribe.assert_not_called()


# ---------------------------------------------------------------------------
# Message Dispatch Tests
# ---------------------------------------------------------------------------


class TestMessageDispatch:
    """Tests for the on_message hot path."""

    def test_dispatch_to_callback(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        cb: Mock = Mock()
        transport.subscribe(topic=TOPIC, callback=cb)
        transport._on_message(
            client=MagicMock(),
            userdata=None,
            msg=_message(TOPIC, b"\x01\x02"),
            generation=transport._client_generation,
        )
        cb.assert_called_once_with(TOPIC, b"\x01\x02")

    def test_unknown_topic_is_noop(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        transport._on_message(
            client=MagicMock(),
            userdata=None,
            msg=_message("unknown/topic", b"\x01"),
            generation=transport._client_generation,
        )
        assert transport.stats()["messages_received"] == 1

    def test_callback_isolation(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        cb_bad: Mock = Mock(side_effect=ValueError("boom"))
        cb_good: Mock = Mock()
        transport.subscribe(topic=TOPIC, callback=cb_bad)
        transport.subscribe(topic=TOPIC, callback=cb_good)

        transport._on_message(
            client=MagicMock(),
            userdata=None,
            msg=_message(TOPIC, b"\x01"),
            generation=transport._client_generation,
        )

        cb_bad.assert_called_once()
        cb_good.assert_called_once()
        assert transport.stats()["callback_errors"] == 1

    def test_stale_generation_rejected(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        cb: Mock = Mock()
        transport.subscribe(topic=TOPIC, callback=cb)
        transport._on_message(
            client=MagicMock(),
            userdata=None,
            msg=_message(TOPIC, b"\x01"),
            generation=transport._client_generation - 1,
        )
        cb.assert_not_called()
        assert transport.stats()["messages_received"] == 0


# ---------------------------------------------------------------------------
# Reconnect Tests
# ---------------------------------------------------------------------------


class TestReconnect:
    """Tests for reconnection logic."""

    def test_schedule_reconnect_sets_state(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        with patch.object(transport, "_reconnect_loop"):
            transport._schedule_reconnect()
        assert transport.state == TransportState.RECONNECTING

    def test_schedule_reconnect_prevents_duplicates(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        thread_count: int = 0
        original_start = threading.Thread.start

        def counting_start(self_thread: threading.Thread) -> None:
            nonlocal thread_count
            if self_thread.name == "mqtt-reconnect":
                thread_count += 1
            original_start(self_thread)

        with (
            patch.object(transport, "_reconnect_loop"),
            patch.object(threading.Thread, "start", counting_start),
        ):
            transport._schedule_reconnect()
            transport._schedule_reconnect()

        assert thread_count == 1

    def test_schedule_reconnect_blocked_after_shutdown(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        transport.shutdown()
        with patch.object(threading.Thread, "start") as mock_start:
            transport._schedule_reconnect()
        mock_start.assert_not_called()

    def test_clean_disconnect_does_not_reconnect(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        with patch.object(transport, "_schedule_reconnect") as mock_sched:
            transport._on_disconnect(client=MagicMock(), userdata=None, rc=0)
        mock_sched.assert_not_called()

    def test_unexpected_disconnect_triggers_reconnect(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        with patch.object(transport, "_schedule_reconnect") as mock_sched:
            transport._on_disconnect(client=MagicMock(), userdata=None, rc=7)
        mock_sched.assert_called_once()

    def test_disconnect_ignored_after_shutdown(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        transport.shutdown()
        with patch.object(transport, "_schedule_reconnect") as mock_sched:
            transport._on_disconnect(client=MagicMock(), userdata=None, rc=7)
        mock_sched.assert_not_called()

    def test_connect_failure_triggers_reconnect(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        with patch.object(transport, "_schedule_reconnect") as mock_sched:
            transport._on_connect(
                client=MagicMock(),
                userdata=None,
                flags={},
                rc=5,
            )
        mock_sched.assert_called_once()

    def test_reconnect_loop_retries_then_succeeds(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        new_client: MagicMock = MagicMock()
        transport._reconnecting = True
        with patch.object(
            transport,
            "_create_mqtt_client",
            side_effect=[ConnectionError("down"), ConnectionError("down"), new_client],
        ) as factory:
            transport._reconnect_loop()

        assert factory.call_count == 3
        assert transport._client is new_client
        assert transport.stats()["reconnect_count"] == 1
        assert transport._reconnecting is False

    def test_reconnect_loop_exits_on_shutdown(
        self,
        transport: MQTTNotificationTransport,
    ) -> None:
        transport._reconnecting = True
        transport._shutdown_event.set()
        with patch.object(transport, "_create_mqtt_client") as factory:
            transport._reconnect_loop()
        factory.assert_not_called()
        assert transport._reconnecting is False


# ---------------------------------------------------------------------------
# Stats Tests
# ---------------------------------------------------------------------------


class TestStats:
    """Tests for stats()."""

    def test_stats_keys(self, transport: MQTTNotificationTransport) -> None:
        stats = transport.stats()
        assert set(stats) == {
            "state",
            "connected",
            "messages_received",
            "messages_published",
            "publish_errors",
            "callback_errors",
            "reconnect_count",
            "last_connect_ts",
            "last_disconnect_ts",
        }
        assert stats["state"] == "CONNECTED"
        assert stats["connected"] is True
        assert stats["last_connect_ts"] > 0
