"""Example: in-process relay pipeline with the standard attack scenarios.

This script wires every component in one process:

    MockPriceFeed → SourcePublisher → encode → NotificationChannel
        → RelayDispatcher → DestinationStore

and then replays the adversarial cases the destination must reject:
zero price, negative price, a 99% flash crash and a replayed round.

No broker or credentials are needed.

Usage:
    python -m examples.example_local_relay
    python -m examples.example_local_relay --rounds 5 --step-seconds 120
"""

import argparse
import logging

from core.admin import AdminCapability
from core.channel import NotificationChannel
from core.codec import encode_payload
from core.destination import DestinationConfig, DestinationStore
from core.dispatcher import DispatcherConfig, RelayDispatcher
from core.errors import FeedRelayError
from core.events import (
    PRICE_UPDATE_EVENT_SIGNATURE,
    Notification,
    PriceUpdateEmitted,
    RelayEvent,
)
from core.publisher import PublisherConfig, SourcePublisher
from infra.mock_feed import MockPriceFeed

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


def main() -> None:
    """Run the local pipeline and the attack scenarios."""
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="In-process price feed relay demo",
    )
    parser.add_argument(
        "--rounds",
        type=int,
        default=3,
        help="Honest price rounds to relay (default: 3)",
    )
    parser.add_argument(
        "--step-seconds",
        type=int,
        default=70,
        help="Simulated seconds between rounds (default: 70)",
    )
    parser.add_argument(
        "--start",
        type=int,
        default=1_760_000_000,
        help="Simulated start time in unix seconds",
    )
    args: argparse.Namespace = parser.parse_args()

    owner: AdminCapability = AdminCapability.issue("operator")
    now: int = args.start

    # Destination
    destination: DestinationStore = DestinationStore(
        config=DestinationConfig(decimals=8, description="ETH / USD"),
        admin=owner,
        clock=lambda: now,
    )
    destination.set_relayer_authorization(owner, _RELAYER, True)

    # Dispatcher
    channel: NotificationChannel[Notification] = NotificationChannel()
    dispatcher: RelayDispatcher = RelayDispatcher(
        config=DispatcherConfig(),
        admin=owner,
        relayer_id=_RELAYER,
        channel=channel,
        now=now,
    )
    dispatcher.subscribe(
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

    # Source: the publisher's observer plays the cross-ledger transport
    def deliver(event: RelayEvent) -> None:
        if isinstance(event, PriceUpdateEmitted):
            channel.push(
                Notification(
                    source_chain_id=_SOURCE_CHAIN_ID,
                    source_contract=_SOURCE_CONTRACT,
                    event_signature=PRICE_UPDATE_EVENT_SIGNATURE,
                    payload=encode_payload(event),
                ),
            )

    feed: MockPriceFeed = MockPriceFeed(
        description="ETH / USD",
        decimals=8,
        now=now,
    )
    publisher: SourcePublisher = SourcePublisher(
        config=PublisherConfig(
            description="ETH / USD",
            destination_chain_id=_DESTINATION_CHAIN_ID,
        ),
        upstream=feed,
        admin=owner,
        on_event=deliver,
    )

    # Honest rounds, each within the 10% deviation bound
    for i in range(args.rounds):
        if i > 0:
            now += args.step_seconds
            feed.set_price(feed.latest_round_data().answer * 101 // 100, now=now)
        publisher.relay_latest_price(now=now)
        dispatcher.process_pending(now=now)

    latest = destination.latest_round_data()
    logger.info(
        "Destination latest: round=%d answer=%d",
        latest.round_id if latest else 0,
        latest.answer if latest else 0,
    )

    # Attack scenarios go straight at the destination
    base = destination.latest_round_data()
    assert base is not None
    scenarios: list[tuple[str, int, int]] = [
        ("zero price", base.round_id + 1, 0),
        ("negative price", base.round_id + 1, -100),
        ("flash crash", base.round_id + 1, base.answer // 100),
        ("replay", base.round_id, base.answer),
    ]
    for name, round_id, answer in scenarios:
        try:
            destination.update_price(
                caller=_RELAYER,
                round_id=round_id,
                answer=answer,
                started_at=now,
                updated_at=now,
                answered_in_round=round_id,
                decimals=8,
                description="ETH / USD",
            )
            logger.error("Scenario %r was accepted", name)
        except FeedRelayError as exc:
            logger.info("Scenario %r rejected: %s", name, exc.kind.value)

    metrics = destination.get_health_metrics(now=now)
    stats = dispatcher.stats()
    logger.info("=" * 50)
    logger.info(
        "Health: healthy=%s rounds=%d age=%ss",
        metrics.healthy,
        metrics.total_rounds,
        metrics.seconds_since_update,
    )
    logger.info(
        "Dispatcher: received=%d relayed=%d healed=%d rejected=%d",
        stats.notifications_received,
        stats.relayed,
        stats.healed,
        stats.rejected,
    )
    logger.info("=" * 50)


if __name__ == "__main__":
    main()
