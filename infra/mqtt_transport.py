"""MQTT transport carrying relay notifications between processes.

This module is the cross-ledger transport collaborator: the source side
publishes encoded price updates to a topic, the dispatcher side
subscribes to it. It wraps a threaded paho-mqtt client with a
connection state machine, topic-to-callback dispatch and automatic
reconnection.

Architecture note:
    Synchronous paho-mqtt with its own IO thread rather than async/await.
    Message callbacks run inline in the IO thread, so they must be cheap;
    the intended callback pushes into a
    :class:`~core.channel.NotificationChannel` and returns.

Connection semantics:
    ``clean_session=True``: at-most-once delivery, no broker-side
    persistence and no replay on reconnect. Gaps are within the relay
    contract; the destination's round ordering rejects anything late.

Callback contract:
    Callbacks registered via ``subscribe()`` must be non-blocking and
    must not call back into the transport.
"""

import logging
import random
import threading
import time
from enum import Enum
from typing import Callable, Literal

import paho.mqtt.client as mqtt
from pydantic import BaseModel, ConfigDict, Field, model_validator

logger: logging.Logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

MessageCallback = Callable[[str, bytes], None]
"""Callback signature: ``(topic: str, payload: bytes) -> None``."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TransportState(str, Enum):
    """Connection state machine for :class:`MQTTNotificationTransport`.

    States:
        INIT: Created, ``connect()`` not yet called.
        CONNECTING: MQTT connect in progress.
        CONNECTED: Broker acknowledged the connection.
        RECONNECTING: Disconnected, background reconnect loop running.
        SHUTDOWN: ``shutdown()`` called. Terminal.
    """

    INIT = "INIT"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    SHUTDOWN = "SHUTDOWN"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MQTTTransportConfig(BaseModel):
    """Configuration for :class:`MQTTNotificationTransport`.

    Attributes:
        host: Broker hostname.
        port: Broker port.
        transport: ``"tcp"`` or ``"websockets"``.
        websocket_path: Request path when ``transport="websockets"``.
        tls: Enable TLS with the system CA bundle.
        username: Optional broker username.
        password: Optional broker password; requires ``username``.
        client_id: MQTT client id; empty lets the library generate one.
        keepalive: Keepalive interval in seconds.
        qos: QoS used for publish and subscribe.
        reconnect_min_delay: First reconnect backoff delay in seconds.
        reconnect_max_delay: Backoff ceiling in seconds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = Field(min_length=1, description="Broker hostname")
    port: int = Field(default=1883, gt=0, le=65535, description="Broker port")
    transport: Literal["tcp", "websockets"] = "tcp"
    websocket_path: str = "/mqtt"
    tls: bool = False
    username: str | None = None
    password: str | None = None
    client_id: str = ""
    keepalive: int = Field(
        default=30,
        ge=5,
        le=300,
        description="MQTT keepalive interval in seconds",
    )
    qos: int = Field(default=1, ge=0, le=2)
    reconnect_min_delay: float = Field(
        default=1.0,
        ge=0.1,
        description="Minimum reconnect backoff delay in seconds",
    )
    reconnect_max_delay: float = Field(
        default=30.0,
        ge=1.0,
        description="Maximum reconnect backoff delay in seconds",
    )

    @model_validator(mode="after")
    def _check_credentials(self) -> "MQTTTransportConfig":
        if self.password is not None and self.username is None:
            raise ValueError("password requires username")
        if self.reconnect_min_delay > self.reconnect_max_delay:
            raise ValueError("reconnect_min_delay exceeds reconnect_max_delay")
        return self


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class MQTTNotificationTransport:
    """Threaded MQTT publish/subscribe transport.

    Features:
        - TCP or WebSocket connection, optional TLS and credentials
        - Topic subscription with per-topic callback dispatch
        - Auto-reconnect with exponential backoff + jitter
        - Subscription replay on every successful connect
        - Callback isolation (per-callback try/except)
        - Client generation id to reject messages from replaced clients
        - Graceful, idempotent shutdown

    State transitions to CONNECTED only happen in ``_on_connect``; a
    successful TCP connect in the reconnect loop leaves the state at
    RECONNECTING until the broker acknowledges.

    Args:
        config: Transport configuration.

    Example::

        transport = MQTTNotificationTransport(
            MQTTTransportConfig(host="localhost"),
        )
        transport.connect()
        transport.subscribe("relay/11155111/0xabc/...", on_payload)
        transport.publish("relay/11155111/0xabc/...", payload)
        transport.shutdown()
    """

    def __init__(self, config: MQTTTransportConfig) -> None:
        self._config: MQTTTransportConfig = config

        self._client: mqtt.Client | None = None
        self._client_generation: int = 0

        # topic -> callbacks, source of truth for replay
        self._subscriptions: dict[str, list[MessageCallback]] = {}
        self._sub_lock: threading.Lock = threading.Lock()

        self._state: TransportState = TransportState.INIT
        self._state_lock: threading.Lock = threading.Lock()

        self._reconnecting: bool = False
        self._reconnect_lock: threading.Lock = threading.Lock()
        self._shutdown_event: threading.Event = threading.Event()

        self._messages_received: int = 0
        self._messages_published: int = 0
        self._publish_errors: int = 0
        self._callback_errors: int = 0
        self._reconnect_count: int = 0
        self._counter_lock: threading.Lock = threading.Lock()

        self._last_connect_ts: float = 0.0
        self._last_disconnect_ts: float = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        with self._state_lock:
            return self._state == TransportState.CONNECTED

    @property
    def state(self) -> TransportState:
        with self._state_lock:
            return self._state

    def connect(self) -> None:
        """Create the paho client, connect and start its IO loop.

        Raises:
            RuntimeError: If the transport is not in INIT state.
            OSError: If the broker cannot be reached.
        """
        with self._state_lock:
            if self._state != TransportState.INIT:
                raise RuntimeError(
                    f"Cannot connect: transport is in {self._state} state"
                )
            self._state = TransportState.CONNECTING

        self._client = self._open(self._create_mqtt_client())
        logger.info(
            "MQTT transport started, connecting to %s:%d",
            self._config.host,
            self._config.port,
        )

    def publish(self, topic: str, payload: bytes) -> bool:
        """Publish ``payload`` to ``topic``. Fire-and-forget.

        Returns:
            ``True`` if paho queued the message, ``False`` when there is
            no client or paho reported an error.
        """
        client: mqtt.Client | None = self._client
        if client is None:
            with self._counter_lock:
                self._publish_errors += 1
            logger.warning("Publish to %s dropped: transport not connected", topic)
            return False

        info = client.publish(topic, payload=payload, qos=self._config.qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            with self._counter_lock:
                self._publish_errors += 1
            logger.warning("Publish to %s failed (rc=%d)", topic, info.rc)
            return False

        with self._counter_lock:
            self._messages_published += 1
        return True

    def subscribe(self, topic: str, callback: MessageCallback) -> None:
        """Register ``callback`` for ``topic``.

        Several callbacks may share a topic. When connected the MQTT
        subscribe is sent at once; otherwise it is replayed on the next
        successful connect.
        """
        with self._sub_lock:
            callbacks: list[MessageCallback] | None = self._subscriptions.get(topic)
            if callbacks is not None:
                callbacks.append(callback)
                return
            self._subscriptions[topic] = [callback]
            client: mqtt.Client | None = self._live_client()
            if client is not None:
                client.subscribe(topic=topic, qos=self._config.qos)
                logger.info("Subscribed to %s", topic)

    def unsubscribe(self, topic: str) -> None:
        """Drop ``topic`` and all of its callbacks."""
        with self._sub_lock:
            if self._subscriptions.pop(topic, None) is None:
                return
            client: mqtt.Client | None = self._live_client()
            if client is not None:
                client.unsubscribe(topic=topic)
                logger.info("Unsubscribed from %s", topic)

    def shutdown(self) -> None:
        """Stop reconnecting, stop the IO loop and disconnect. Idempotent."""
        with self._state_lock:
            if self._state == TransportState.SHUTDOWN:
                return
            self._state = TransportState.SHUTDOWN

        logger.info("Shutting down MQTT transport")
        self._shutdown_event.set()

        if self._client is not None:
            self._stop_client(self._client)

        final = self.stats()
        logger.info(
            "MQTT transport shut down (received=%d, published=%d, "
            "publish_errors=%d, callback_errors=%d, reconnects=%d)",
            final["messages_received"],
            final["messages_published"],
            final["publish_errors"],
            final["callback_errors"],
            final["reconnect_count"],
        )

    def stats(self) -> dict[str, str | int | float | bool]:
        """Connection state, counters and timestamps."""
        with self._state_lock:
            current_state: str = self._state.value
        with self._counter_lock:
            received: int = self._messages_received
            published: int = self._messages_published
            publish_errors: int = self._publish_errors
            errors: int = self._callback_errors
            reconnects: int = self._reconnect_count
        return {
            "state": current_state,
            "connected": current_state == TransportState.CONNECTED.value,
            "messages_received": received,
            "messages_published": published,
            "publish_errors": publish_errors,
            "callback_errors": errors,
            "reconnect_count": reconnects,
            "last_connect_ts": self._last_connect_ts,
            "last_disconnect_ts": self._last_disconnect_ts,
        }

    # ------------------------------------------------------------------
    # Client factory
    # ------------------------------------------------------------------

    def _create_mqtt_client(self) -> mqtt.Client:
        """Build a configured paho client and bump the generation.

        A previous client, if any, is stopped first.
        """
        if self._client is not None:
            self._stop_client(self._client)

        self._client_generation += 1
        generation: int = self._client_generation

        client: mqtt.Client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION1,
            client_id=self._config.client_id,
            clean_session=True,
            transport=self._config.transport,
        )
        if self._config.tls:
            client.tls_set()
        if self._config.transport == "websockets":
            client.ws_set_options(path=self._config.websocket_path)
        if self._config.username is not None:
            client.username_pw_set(self._config.username, self._config.password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = lambda c, u, m: self._on_message(
            client=c,
            userdata=u,
            msg=m,
            generation=generation,
        )
        return client

    def _open(self, client: mqtt.Client) -> mqtt.Client:
        """Connect ``client`` to the configured broker and start its IO loop."""
        client.connect(
            host=self._config.host,
            port=self._config.port,
            keepalive=self._config.keepalive,
        )
        client.loop_start()
        return client

    def _live_client(self) -> mqtt.Client | None:
        """The current client if the broker has acknowledged it, else ``None``."""
        with self._state_lock:
            if self._state != TransportState.CONNECTED:
                return None
        return self._client

    @staticmethod
    def _stop_client(client: mqtt.Client) -> None:
        try:
            client.loop_stop()
        except Exception:
            logger.debug("Exception during loop_stop", exc_info=True)
        try:
            client.disconnect()
        except Exception:
            logger.debug("Exception during disconnect", exc_info=True)

    # ------------------------------------------------------------------
    # MQTT callbacks
    # ------------------------------------------------------------------

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: object,
        flags: dict,
        rc: int,
    ) -> None:
        """Mark CONNECTED and re-send every topic, or reconnect on failure."""
        if rc != 0:
            logger.error("Broker refused connection (rc=%d)", rc)
            self._schedule_reconnect()
            return

        with self._state_lock:
            self._state = TransportState.CONNECTED
        self._last_connect_ts = time.time()

        with self._sub_lock:
            topics: list[str] = sorted(self._subscriptions)
        for topic in topics:
            client.subscribe(topic=topic, qos=self._config.qos)
        logger.info(
            "Connected to %s:%d, %d topic(s) subscribed",
            self._config.host,
            self._config.port,
            len(topics),
        )

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: object,
        rc: int,
    ) -> None:
        """Reconnect after an unexpected disconnect (``rc != 0``)."""
        self._last_disconnect_ts = time.time()
        if rc == 0:
            logger.info("Disconnected from broker")
            return
        if self.state == TransportState.SHUTDOWN:
            return
        logger.warning("Lost broker connection (rc=%d)", rc)
        self._schedule_reconnect()

    def _on_message(
        self,
        client: mqtt.Client,
        userdata: object,
        msg: mqtt.MQTTMessage,
        generation: int,
    ) -> None:
        """Hand one message to each callback registered for its topic.

        Runs inline in the MQTT IO thread. Messages from a replaced
        client generation are ignored; a failing callback does not stop
        the others.
        """
        if generation != self._client_generation:
            return

        with self._counter_lock:
            self._messages_received += 1

        topic: str = msg.topic
        with self._sub_lock:
            callbacks: tuple[MessageCallback, ...] = tuple(
                self._subscriptions.get(topic, ()),
            )
        for callback in callbacks:
            try:
                callback(topic, msg.payload)
            except Exception:
                with self._counter_lock:
                    self._callback_errors += 1
                logger.exception("Message callback failed on %s", topic)

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        """Start the reconnect thread unless one is already running."""
        with self._reconnect_lock:
            if self._reconnecting:
                return
            with self._state_lock:
                if self._state == TransportState.SHUTDOWN:
                    return
                self._state = TransportState.RECONNECTING
            self._reconnecting = True

        threading.Thread(
            target=self._reconnect_loop,
            daemon=True,
            name="mqtt-reconnect",
        ).start()

    def _backoff(self, delay: float) -> float:
        """Wait ``delay`` with +/-20% jitter and return the next delay."""
        self._shutdown_event.wait(timeout=delay * random.uniform(0.8, 1.2))
        return min(delay * 2, self._config.reconnect_max_delay)

    def _reconnect_loop(self) -> None:
        """Open a fresh client until one connects or shutdown is requested.

        The state stays RECONNECTING until ``_on_connect`` sees ``rc=0``.
        """
        delay: float = self._config.reconnect_min_delay
        try:
            while not self._shutdown_event.is_set():
                try:
                    self._client = self._open(self._create_mqtt_client())
                except Exception:
                    logger.exception("Reconnect failed, retrying in ~%.1fs", delay)
                    delay = self._backoff(delay)
                    continue
                with self._counter_lock:
                    self._reconnect_count += 1
                    total: int = self._reconnect_count
                logger.info(
                    "Reconnected (total=%d, generation=%d), awaiting CONNACK",
                    total,
                    self._client_generation,
                )
                return
        finally:
            with self._reconnect_lock:
                self._reconnecting = False
