"""Example: price relay over an MQTT broker.

Runs both sides of the relay against a real broker:

    MockPriceFeed → SourcePublisher → NotificationPublisher ─┐
                                                            MQTT
    DestinationStore ← RelayDispatcher ← NotificationChannel ← NotificationAdapter

A :class:`RelayWorker` drives the publisher on its interval in a
background thread while the main thread drains the dispatcher's channel.
The mock feed takes a small random step every time the publisher reads it.

Prerequisites:
    1. A reachable MQTT broker (e.g. ``mosquitto`` on localhost).
    2. Optionally a ``.env`` file with:
       - ``RELAY_MQTT_HOST`` (default ``localhost``)
       - ``RELAY_MQTT_PORT`` (default ``1883``)
       - ``RELAY_MQTT_USERNAME`` / ``RELAY_MQTT_PASSWORD``

Usage:
    python -m examples.example_mqtt_relay
    python -m examples.example_mqtt_relay --host broker.local --interval 70

Press Ctrl+C to stop.
"""

import argparse
import logging
import os
import random
import threading
import time

from dotenv import load_dotenv

from core.admin import AdminCapability
from core.channel import NotificationChannel
from core.destination import DestinationConfig, DestinationStore
from core.dispatcher import DispatcherConfig, RelayDispatcher, Subscription
from core.events import PRICE_UPDATE_EVENT_SIGNATURE, Notification, RoundRecord
from core.publisher import PublisherConfig, SourcePublisher
from core.worker import RelayWorker, WorkerConfig, WorkerHalted
from infra.mock_feed import MockPriceFeed
from infra.mqtt_transport import MQTTNotificationTransport, MQTTTransportConfig
from infra.relay_adapter import (
    NotificationAdapter,
    NotificationAdapterConfig,
    NotificationPublisher,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger: logging.Logger = logging.getLogger(__name__)

_SOURCE_CHAIN_ID: int = 11155111
_SOURCE_CONTRACT: str = "0x5f4ec3df9cbd43714fe2740f5e3616155c5b8419"
_DESTINATION_CHAIN_ID: int = 84532
_DESTINATION_CONTRACT: str = "0x9326bfa02add2366b30bacb125260af641031331"
_RELAYER: str = "relayer-1"


class _WanderingFeed(MockPriceFeed):
    """Mock feed that starts a new round, up to 1% away, on every read."""

    def latest_round_data(self) -> RoundRecord | None:
        latest: RoundRecord | None = super().latest_round_data()
        if latest is None:
            return None
        bps: int = random.randint(-100, 100)
        return self.set_price(latest.answer + latest.answer * bps // 10_000)


def main() -> None:
    """Run publisher and dispatcher over MQTT until interrupted."""
    load_dotenv()

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Price feed relay over MQTT",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("RELAY_MQTT_HOST", "localhost"),
        help="Broker host (default: $RELAY_MQTT_HOST or localhost)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("RELAY_MQTT_PORT", "1883")),
        help="Broker port (default: $RELAY_MQTT_PORT or 1883)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=70.0,
        help="Worker interval in seconds (default: 70)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=0.2,
        help="Dispatcher poll interval in seconds (default: 0.2)",
    )
    args: argparse.Namespace = parser.parse_args()

    username: str | None = os.environ.get("RELAY_MQTT_USERNAME") or None
    password: str | None = os.environ.get("RELAY_MQTT_PASSWORD") or None
    transport_config: MQTTTransportConfig = MQTTTransportConfig(
        host=args.host,
        port=args.port,
        username=username,
        password=password if username else None,
    )

    owner: AdminCapability = AdminCapability.issue("operator")

    # Dispatcher side
    destination: DestinationStore = DestinationStore(
        config=DestinationConfig(decimals=8, description="ETH / USD"),
        admin=owner,
    )
    destination.set_relayer_authorization(owner, _RELAYER, True)

    channel: NotificationChannel[Notification] = NotificationChannel()
    dispatcher: RelayDispatcher = RelayDispatcher(
        config=DispatcherConfig(),
        admin=owner,
        relayer_id=_RELAYER,
        channel=channel,
    )
    subscription: Subscription = dispatcher.subscribe(
        owner,
        _SOURCE_CHAIN_ID,
        _SOURCE_CONTRACT,
        PRICE_UPDATE_EVENT_SIGNATURE,
    )
    dispatcher.set_destination(owner, _DESTINATION_CHAIN_ID, _DESTINATION_CONTRACT)
    dispatcher.register_endpoint(
        owner,
        _DESTINATION_CHAIN_ID,
        _DESTINATION_CONTRACT,
        destination,
    )

    transport: MQTTNotificationTransport = MQTTNotificationTransport(
        config=transport_config,
    )
    adapter: NotificationAdapter = NotificationAdapter(
        config=NotificationAdapterConfig(),
        transport=transport,
        on_notification=channel.push,
    )
    adapter.subscribe(subscription)

    # Source side
    feed: _WanderingFeed = _WanderingFeed(description="ETH / USD", decimals=8)
    notifier: NotificationPublisher = NotificationPublisher(
        transport=transport,
        source_chain_id=_SOURCE_CHAIN_ID,
        source_contract=_SOURCE_CONTRACT,
    )
    publisher: SourcePublisher = SourcePublisher(
        config=PublisherConfig(
            description="ETH / USD",
            destination_chain_id=_DESTINATION_CHAIN_ID,
        ),
        upstream=feed,
        admin=owner,
        on_event=notifier,
    )
    worker: RelayWorker = RelayWorker(
        publisher=publisher,
        config=WorkerConfig(interval_seconds=args.interval),
    )

    logger.info("Connecting to MQTT broker at %s:%d...", args.host, args.port)
    try:
        transport.connect()
    except Exception as exc:
        logger.exception("Failed to connect to MQTT broker: %s", exc)
        return

    stop: threading.Event = threading.Event()

    def drive() -> None:
        try:
            worker.run(stop)
        except WorkerHalted:
            logger.exception("Worker halted")
            stop.set()

    worker_thread: threading.Thread = threading.Thread(
        target=drive,
        daemon=True,
        name="relay-worker",
    )
    worker_thread.start()

    try:
        while not stop.is_set():
            if not dispatcher.process_pending():
                time.sleep(args.poll_interval)
    except KeyboardInterrupt:
        logger.info("Shutting down (received KeyboardInterrupt)...")
    finally:
        stop.set()
        worker_thread.join(timeout=5.0)
        transport.shutdown()

        latest = destination.latest_round_data()
        stats = dispatcher.stats()
        logger.info("=" * 50)
        logger.info("Final Statistics")
        logger.info("-" * 50)
        logger.info("Worker cycles: %d, relayed: %d", worker.cycles, worker.relayed)
        logger.info("Publisher: %s", notifier.stats())
        logger.info("Adapter: %s", adapter.stats())
        logger.info(
            "Dispatcher: received=%d relayed=%d healed=%d rejected=%d "
            "exhausted=%d",
            stats.notifications_received,
            stats.relayed,
            stats.healed,
            stats.rejected,
            stats.exhausted,
        )
        logger.info(
            "Destination latest round: %s",
            latest.round_id if latest else "none",
        )
        logger.info("=" * 50)


if __name__ == "__main__":
    main()
