"""Destination-side store: independently re-validates and commits updates.

:class:`DestinationStore` is the canonical sink of the relay. It trusts
nothing about its caller beyond the authorization set: every inbound
update is re-checked against the same safety rules the publisher
applied, plus access control and the pause circuit breaker. Reads are
signature-compatible with the upstream feed (:class:`FeedReader`).

Commit gates (evaluated in order against pre-mutation state):
    1. caller in the authorization set, else :class:`Unauthorized`.
    2. feed not paused, else :class:`FeedIsPaused`.
    3. ``0 < answer <= I128_MAX``, else :class:`InvalidAnswer`.
    4. ``round_id`` and ``answered_in_round`` within u64 and
       ``round_id > latest.round_id``, else :class:`InvalidRoundId`.
       The only replay and ordering protection; there is no nonce.
    5. with a previous round, ``|answer - prev| / |prev| <=
       max_deviation_bps / 10_000``, else :class:`DeviationTooHigh`.
    6. ``started_at`` and ``updated_at`` within u64 and
       ``clock() - updated_at <= staleness_threshold``, else
       :class:`StaleUpdate`.

Atomicity:
    Gates and commit run under one lock. Either the record, the latest
    pointer and the metadata counters all change, or nothing does.

Example:
    >>> from core.admin import AdminCapability
    >>> from core.destination import DestinationConfig, DestinationStore
    >>> owner = AdminCapability.issue("ops")
    >>> store = DestinationStore(
    ...     config=DestinationConfig(decimals=8, description="ETH/USD Mirror"),
    ...     admin=owner,
    ...     clock=lambda: 1_010,
    ... )
    >>> store.set_relayer_authorization(owner, "relayer-1", True)
    >>> record = store.update_price(
    ...     caller="relayer-1", round_id=1, answer=200_000_000_000,
    ...     started_at=1_000, updated_at=1_000, answered_in_round=1,
    ...     decimals=8, description="ETH/USD Mirror",
    ... )
    >>> store.latest_round_data().answer
    200000000000
"""

import logging
import threading
import time
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from core.admin import AdminCapability, require_admin
from core.errors import (
    DeviationTooHigh,
    FeedIsPaused,
    FeedRelayError,
    InvalidAnswer,
    InvalidRoundId,
    RoundNotFound,
    StaleUpdate,
    Unauthorized,
)
from core.events import (
    I128_MAX,
    U8_MAX,
    U64_MAX,
    EventCallback,
    FeedConfig,
    FeedMetadata,
    FeedPaused,
    PriceUpdated,
    RelayerAuthorized,
    RelayEvent,
    RoundRecord,
)
from core.feed_health import HealthMetrics, evaluate_health
from core.round_store import RoundStore

logger: logging.Logger = logging.getLogger(__name__)

MAX_DEVIATION_BPS: int = 1_000
"""Default anomaly guard: 10% relative change between consecutive rounds."""

STALENESS_THRESHOLD: int = 3_600

Clock = Callable[[], int]
"""Current unix time in seconds."""


def wall_clock() -> int:
    return int(time.time())


class DestinationConfig(BaseModel):
    """Configuration for :class:`DestinationStore`.

    Attributes:
        decimals: Scaling of committed answers.
        description: Feed description returned to readers.
        version: Feed version returned to readers.
        staleness_threshold: Maximum accepted payload age in seconds.
        max_deviation_bps: Largest accepted relative change between
            consecutive rounds, in basis points.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    decimals: int = Field(ge=0, le=U8_MAX)
    description: str = Field(min_length=1)
    version: int = Field(default=1, ge=0, le=U64_MAX)
    staleness_threshold: int = Field(default=STALENESS_THRESHOLD, gt=0)
    max_deviation_bps: int = Field(default=MAX_DEVIATION_BPS, gt=0)


class DestinationStore:
    """Independently validated mirror of a price feed.

    Args:
        config: Destination configuration.
        admin: Capability allowed to authorize relayers and pause.
        on_event: Observer for :class:`PriceUpdated`,
            :class:`RelayerAuthorized` and :class:`FeedPaused`.
        clock: Source of the current time for the freshness gate and
            the health view. Defaults to the wall clock.
    """

    def __init__(
        self,
        config: DestinationConfig,
        admin: AdminCapability,
        on_event: EventCallback | None = None,
        clock: Clock = wall_clock,
    ) -> None:
        self._config: DestinationConfig = config
        self._clock: Clock = clock
        self._admin: AdminCapability = admin
        self._on_event: EventCallback | None = on_event
        self._lock: threading.Lock = threading.Lock()

        self._store: RoundStore = RoundStore()
        self._relayers: set[str] = set()
        self._feed_config: FeedConfig = FeedConfig(
            decimals=config.decimals,
            description=config.description,
            version=config.version,
        )
        self._metadata: FeedMetadata = FeedMetadata(
            description=config.description,
            decimals=config.decimals,
            version=config.version,
        )
        logger.info(
            "DestinationStore created for %r (decimals=%d)",
            config.description,
            config.decimals,
        )

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def update_price(
        self,
        caller: str,
        round_id: int,
        answer: int,
        started_at: int,
        updated_at: int,
        answered_in_round: int,
        decimals: int,
        description: str,
    ) -> RoundRecord:
        """Validate and commit one round.

        ``decimals`` and ``description`` are the sender's view of the
        feed; a mismatch with this store's configuration is logged but
        the store's own configuration stays authoritative.

        Returns:
            The committed record.

        Raises:
            Unauthorized, FeedIsPaused, InvalidAnswer, InvalidRoundId,
            DeviationTooHigh, StaleUpdate: The first failing gate.
        """
        with self._lock:
            current: int = self._clock()
            try:
                self._check_gates(
                    caller,
                    round_id,
                    answer,
                    started_at,
                    updated_at,
                    answered_in_round,
                    current,
                )
            except FeedRelayError as exc:
                logger.warning(
                    "Rejected round %d from %s: %s (%s)",
                    round_id,
                    caller,
                    exc.kind.value,
                    exc,
                )
                raise

            record: RoundRecord = RoundRecord(
                round_id=round_id,
                answer=answer,
                started_at=started_at,
                updated_at=updated_at,
                answered_in_round=answered_in_round,
            )
            self._store.append(record)
            self._metadata = self._metadata.model_copy(
                update={
                    "update_count": self._metadata.update_count + 1,
                    "last_update_timestamp": current,
                },
            )

        if (
            decimals != self._config.decimals
            or description != self._config.description
        ):
            logger.warning(
                "Round %d sent as (%d, %r), feed is (%d, %r)",
                round_id,
                decimals,
                description,
                self._config.decimals,
                self._config.description,
            )
        logger.info("Committed round %d answer=%d from %s", round_id, answer, caller)
        self._emit(
            PriceUpdated(
                round_id=record.round_id,
                answer=record.answer,
                started_at=record.started_at,
                updated_at=record.updated_at,
                answered_in_round=record.answered_in_round,
                relayer=caller,
            ),
        )
        return record

    def _check_gates(
        self,
        caller: str,
        round_id: int,
        answer: int,
        started_at: int,
        updated_at: int,
        answered_in_round: int,
        now: int,
    ) -> None:
        if caller not in self._relayers:
            raise Unauthorized(f"{caller!r} is not an authorized relayer")
        if self._feed_config.paused:
            raise FeedIsPaused("feed is paused")
        if answer <= 0:
            raise InvalidAnswer(f"answer must be positive, got {answer}")
        if answer > I128_MAX:
            raise InvalidAnswer(f"answer {answer} exceeds i128")
        for name, value in (
            ("round_id", round_id),
            ("answered_in_round", answered_in_round),
        ):
            if not 0 <= value <= U64_MAX:
                raise InvalidRoundId(f"{name} {value} is outside u64")

        previous: RoundRecord | None = self._store.latest()
        if previous is not None:
            if round_id <= previous.round_id:
                raise InvalidRoundId(
                    f"round {round_id} is not after latest round "
                    f"{previous.round_id}"
                )
            # Integer form of |a - p| / |p| > bps / 10_000
            change: int = abs(answer - previous.answer) * 10_000
            if change > self._config.max_deviation_bps * abs(previous.answer):
                raise DeviationTooHigh(
                    f"answer {answer} deviates from {previous.answer} by more "
                    f"than {self._config.max_deviation_bps} bps"
                )

        for name, value in (("started_at", started_at), ("updated_at", updated_at)):
            if not 0 <= value <= U64_MAX:
                raise StaleUpdate(f"{name} {value} is outside u64")
        age: int = now - updated_at
        if age > self._config.staleness_threshold:
            raise StaleUpdate(
                f"update is {age}s old, limit {self._config.staleness_threshold}s"
            )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_relayer_authorization(
        self,
        capability: AdminCapability,
        relayer: str,
        authorized: bool,
    ) -> None:
        """Grant or revoke commit rights; effective for the next call."""
        require_admin(self._admin, capability, "setRelayerAuthorization")
        with self._lock:
            if authorized:
                self._relayers.add(relayer)
            else:
                self._relayers.discard(relayer)
        logger.info("Relayer %s authorized=%s", relayer, authorized)
        self._emit(RelayerAuthorized(relayer=relayer, authorized=authorized))

    def set_paused(self, capability: AdminCapability, paused: bool) -> None:
        """Engage or release the circuit breaker."""
        require_admin(self._admin, capability, "setPaused")
        with self._lock:
            self._feed_config = self._feed_config.model_copy(
                update={"paused": paused},
            )
        if paused:
            logger.warning(
                "Feed %r paused by %s",
                self._config.description,
                capability.holder,
            )
        else:
            logger.info(
                "Feed %r resumed by %s",
                self._config.description,
                capability.holder,
            )
        self._emit(FeedPaused(paused=paused, actor=capability.holder))

    # ------------------------------------------------------------------
    # Read interface
    # ------------------------------------------------------------------

    def latest_round_data(self) -> RoundRecord | None:
        """Latest committed round, or ``None`` before the first commit."""
        return self._store.latest()

    def get_round_data(self, round_id: int) -> RoundRecord:
        """Committed round ``round_id``.

        Raises:
            RoundNotFound: If the round was never committed here.
        """
        record: RoundRecord | None = self._store.get(round_id)
        if record is None:
            raise RoundNotFound(f"no data for round {round_id}")
        return record

    def decimals(self) -> int:
        return self._feed_config.decimals

    def description(self) -> str:
        return self._feed_config.description

    def version(self) -> int:
        return self._feed_config.version

    @property
    def feed_config(self) -> FeedConfig:
        return self._feed_config

    @property
    def authorized_relayers(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._relayers)

    def is_authorized(self, relayer: str) -> bool:
        return relayer in self._relayers

    def get_feed_metadata(self) -> FeedMetadata:
        return self._metadata

    def get_health_metrics(self, now: int | None = None) -> HealthMetrics:
        """Freshness view of the latest round. No side effects."""
        current: int = now if now is not None else self._clock()
        return evaluate_health(
            latest=self._store.latest(),
            total_rounds=len(self._store),
            now=current,
            staleness_threshold=self._config.staleness_threshold,
        )

    def is_stale(self, now: int | None = None) -> bool:
        """``True`` with no data or when the latest round is too old."""
        return not self.get_health_metrics(now=now).healthy

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _emit(self, event: RelayEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)
