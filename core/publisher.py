"""Source-side publisher: turns an upstream feed read into a vetted update.

:class:`SourcePublisher` reads the upstream feed's latest round, runs it
through the publish gates, records it in its own :class:`RoundStore`,
and emits a :class:`~core.events.PriceUpdateEmitted` notification.
Emission is fire-and-forget: the publisher never learns whether the
notification reached a dispatcher.

Publish gates (first failure wins):
    1. ``answer > 0`` else :class:`InvalidAnswer`.
    2. ``now - updated_at <= staleness_threshold`` else
       :class:`StaleUpdate`.
    3. ``round_id > last_published_round_id`` else
       :class:`InvalidRoundId`.
    4. ``now - last_update_timestamp >= min_update_interval`` else
       :class:`UpdateTooFrequent`. Skipped before the first publish.

All gates run before any mutation; a rejected call leaves the
publisher exactly as it was.

Thread safety:
    ``relay_latest_price()`` and ``set_min_update_interval()`` are
    serialized under one lock. The upstream read happens inside the
    lock so two concurrent relays cannot both pass the round gate.

Example:
    >>> from core.admin import AdminCapability
    >>> from core.publisher import PublisherConfig, SourcePublisher
    >>> from infra.mock_feed import MockPriceFeed
    >>> owner = AdminCapability.issue("ops")
    >>> feed = MockPriceFeed(description="ETH / USD", decimals=8)
    >>> publisher = SourcePublisher(
    ...     config=PublisherConfig(
    ...         description="ETH/USD Relay", destination_chain_id=84532,
    ...     ),
    ...     upstream=feed,
    ...     admin=owner,
    ... )
    >>> publisher.relay_latest_price().answer
    200000000000
"""

import logging
import threading
import time

from pydantic import BaseModel, ConfigDict, Field

from core.admin import AdminCapability, require_admin
from core.errors import (
    ConfigurationError,
    FeedRelayError,
    InvalidAnswer,
    InvalidRoundId,
    StaleUpdate,
    UpdateTooFrequent,
)
from core.events import (
    U64_MAX,
    EventCallback,
    FeedMetadata,
    FeedMetadataUpdated,
    MinUpdateIntervalUpdated,
    PriceUpdateEmitted,
    RelayEvent,
    RoundRecord,
)
from core.interfaces import FeedReader
from core.round_store import RoundStore

logger: logging.Logger = logging.getLogger(__name__)

STALENESS_THRESHOLD: int = 3_600
MIN_UPDATE_INTERVAL_FLOOR: int = 30
DRIFT_THRESHOLD: int = 100


class PublisherConfig(BaseModel):
    """Configuration for :class:`SourcePublisher`.

    Attributes:
        description: Human-readable feed description carried in every
            notification.
        destination_chain_id: Ledger the notifications are meant for.
        version: Feed version carried in every notification.
        staleness_threshold: Maximum upstream age in seconds.
        min_update_interval: Initial rate limit between publishes.
        min_update_interval_floor: Lowest interval an admin may set.
        drift_warning_seconds: Upstream age above which a successful
            publish still logs a lag warning.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    description: str = Field(min_length=1)
    destination_chain_id: int = Field(ge=0, le=U64_MAX)
    version: int = Field(default=1, ge=0, le=U64_MAX)
    staleness_threshold: int = Field(default=STALENESS_THRESHOLD, gt=0)
    min_update_interval: int = Field(default=60, ge=0)
    min_update_interval_floor: int = Field(default=MIN_UPDATE_INTERVAL_FLOOR, ge=0)
    drift_warning_seconds: int = Field(default=DRIFT_THRESHOLD, gt=0)


class SourcePublisher:
    """Rate-limited, freshness-bounded publisher of upstream rounds.

    Args:
        config: Publisher configuration.
        upstream: Feed to read; only its read interface is used.
        admin: Capability allowed to change the rate limit.
        on_event: Observer for :class:`PriceUpdateEmitted` and metadata
            events. Exceptions raised by the observer propagate.

    Raises:
        ConfigurationError: If ``upstream`` is missing or the initial
            interval is below the floor.
    """

    def __init__(
        self,
        config: PublisherConfig,
        upstream: FeedReader | None,
        admin: AdminCapability,
        on_event: EventCallback | None = None,
    ) -> None:
        if upstream is None:
            raise ConfigurationError("Invalid feed address: upstream feed is required")
        if config.min_update_interval < config.min_update_interval_floor:
            raise ConfigurationError(
                f"Interval too short: {config.min_update_interval}s < "
                f"{config.min_update_interval_floor}s"
            )

        self._config: PublisherConfig = config
        self._upstream: FeedReader = upstream
        self._admin: AdminCapability = admin
        self._on_event: EventCallback | None = on_event
        self._lock: threading.Lock = threading.Lock()

        self._store: RoundStore = RoundStore()
        self._min_update_interval: int = config.min_update_interval
        self._metadata: FeedMetadata = FeedMetadata(
            description=config.description,
            decimals=upstream.decimals(),
            version=config.version,
        )

        self._emit(
            FeedMetadataUpdated(
                description=self._metadata.description,
                decimals=self._metadata.decimals,
                version=self._metadata.version,
            ),
        )
        logger.info(
            "SourcePublisher created for %r (decimals=%d, interval=%ds)",
            config.description,
            self._metadata.decimals,
            self._min_update_interval,
        )

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def relay_latest_price(self, now: int | None = None) -> PriceUpdateEmitted:
        """Read upstream, validate, record and emit one update.

        Args:
            now: Current unix time in seconds; defaults to the wall clock.

        Returns:
            The emitted notification.

        Raises:
            InvalidAnswer: Upstream answer is not positive.
            StaleUpdate: Upstream round is older than the threshold.
            InvalidRoundId: Upstream round was already published.
            UpdateTooFrequent: Called inside the rate-limit window.
        """
        with self._lock:
            current: int = now if now is not None else int(time.time())
            upstream: RoundRecord | None = self._upstream.latest_round_data()
            if upstream is None:
                raise InvalidRoundId("upstream feed has no rounds yet")
            decimals: int = self._upstream.decimals()

            try:
                self._check_gates(upstream, current)
            except FeedRelayError as exc:
                logger.warning(
                    "Publish rejected for round %d: %s (%s)",
                    upstream.round_id,
                    exc.kind.value,
                    exc,
                )
                raise

            self._store.append(upstream)
            self._metadata = self._metadata.model_copy(
                update={
                    "decimals": decimals,
                    "update_count": self._metadata.update_count + 1,
                    "last_update_timestamp": current,
                },
            )
            event: PriceUpdateEmitted = PriceUpdateEmitted(
                round_id=upstream.round_id,
                answer=upstream.answer,
                updated_at=upstream.updated_at,
                decimals=decimals,
                description=self._metadata.description,
                destination_chain_id=self._config.destination_chain_id,
                version=self._metadata.version,
            )

        lag: int = current - upstream.updated_at
        if lag > self._config.drift_warning_seconds:
            logger.warning(
                "Upstream round %d is %ds old (warning above %ds)",
                upstream.round_id,
                lag,
                self._config.drift_warning_seconds,
            )
        logger.info(
            "Published round %d answer=%d (update #%d)",
            event.round_id,
            event.answer,
            self._metadata.update_count,
        )
        self._emit(event)
        return event

    def _check_gates(self, upstream: RoundRecord, now: int) -> None:
        if upstream.answer <= 0:
            raise InvalidAnswer(f"answer must be positive, got {upstream.answer}")

        age: int = now - upstream.updated_at
        if age > self._config.staleness_threshold:
            raise StaleUpdate(
                f"upstream round is {age}s old, limit "
                f"{self._config.staleness_threshold}s"
            )

        last: int = self.last_published_round_id
        if upstream.round_id <= last:
            raise InvalidRoundId(
                f"upstream round {upstream.round_id} already published "
                f"(last={last})"
            )

        if self._metadata.update_count > 0:
            elapsed: int = now - self._metadata.last_update_timestamp
            if elapsed < self._min_update_interval:
                raise UpdateTooFrequent(
                    f"{elapsed}s since last publish, minimum "
                    f"{self._min_update_interval}s"
                )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_min_update_interval(
        self,
        capability: AdminCapability,
        interval: int,
    ) -> None:
        """Change the minimum seconds between publishes.

        Raises:
            Unauthorized: ``capability`` is not this publisher's admin.
            ConfigurationError: ``interval`` is below the floor.
        """
        require_admin(self._admin, capability, "setMinUpdateInterval")
        floor: int = self._config.min_update_interval_floor
        if interval < floor:
            raise ConfigurationError(f"Interval too short: {interval}s < {floor}s")
        with self._lock:
            previous: int = self._min_update_interval
            self._min_update_interval = interval
        logger.info("Min update interval changed %ds -> %ds", previous, interval)
        self._emit(
            MinUpdateIntervalUpdated(
                previous_interval=previous,
                new_interval=interval,
                actor=capability.holder,
            ),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def min_update_interval(self) -> int:
        return self._min_update_interval

    @property
    def last_published_round_id(self) -> int:
        """Round id of the latest publish, 0 before the first."""
        latest: RoundRecord | None = self._store.latest()
        return latest.round_id if latest is not None else 0

    @property
    def upstream(self) -> FeedReader:
        return self._upstream

    def get_feed_metadata(self) -> FeedMetadata:
        return self._metadata

    def latest_round_data(self) -> RoundRecord | None:
        return self._store.latest()

    def get_round_data(self, round_id: int) -> RoundRecord | None:
        return self._store.get(round_id)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _emit(self, event: RelayEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)
