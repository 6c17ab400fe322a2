"""Periodic driver that asks a publisher to relay the latest price.

:class:`RelayWorker` is the off-ledger operator loop: every
``interval_seconds`` it calls
:meth:`~core.publisher.SourcePublisher.relay_latest_price`, classifies
the result, and keeps a consecutive-failure count. It owns no relay
state of its own; every safety rule stays in the publisher.

Outcome classification:
    - ``UpdateTooFrequent`` is rate limiting, not a failure.
    - ``InvalidRoundId`` means the upstream has nothing new.
    - Other :class:`~core.errors.FeedRelayError` rejections (zero
      answer, stale upstream) are final for this cycle and count as a
      failure without retry.
    - Any other exception is transient and retried up to
      ``max_retries`` times with a linear delay.

After ``max_consecutive_failures`` failed cycles in a row the loop
stops with :class:`WorkerHalted`.

:class:`MultiFeedWorker` drives several named publishers from one loop.
Each feed gets its own :class:`RelayWorker`, so outcomes and failure
counts are tracked per feed; feeds run one after another with
``stagger_seconds`` between them, and one feed failing never stops
the others from being attempted in the same cycle.

Example:
    >>> import threading
    >>> from core.worker import RelayWorker, WorkerConfig
    >>> worker = RelayWorker(publisher, WorkerConfig(interval_seconds=70))
    >>> stop = threading.Event()
    >>> worker.run(stop)  # doctest: +SKIP
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Mapping

from pydantic import BaseModel, ConfigDict, Field

from core.errors import (
    ConfigurationError,
    FeedRelayError,
    InvalidRoundId,
    UpdateTooFrequent,
)
from core.events import PriceUpdateEmitted
from core.publisher import SourcePublisher

logger: logging.Logger = logging.getLogger(__name__)


class WorkerHalted(RuntimeError):
    """Raised by :meth:`RelayWorker.run` after too many failed cycles."""


class WorkerConfig(BaseModel):
    """Configuration for :class:`RelayWorker`.

    Attributes:
        interval_seconds: Wait between cycles.
        max_retries: Attempts per cycle for transient failures.
        retry_delay_seconds: Base of the linear retry delay
            (``retry_delay_seconds * attempt``).
        max_consecutive_failures: Failed cycles in a row before halting.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    interval_seconds: float = Field(default=70.0, gt=0.0)
    max_retries: int = Field(default=3, gt=0)
    retry_delay_seconds: float = Field(default=5.0, ge=0.0)
    max_consecutive_failures: int = Field(default=10, gt=0)


class WorkerOutcome(str, Enum):
    """Result of one worker cycle."""

    RELAYED = "RELAYED"
    RATE_LIMITED = "RATE_LIMITED"
    SKIPPED = "SKIPPED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class RelayWorker:
    """Interval loop around :meth:`SourcePublisher.relay_latest_price`.

    Args:
        publisher: Publisher to drive.
        config: Worker configuration. Defaults to ``WorkerConfig()``.
        sleep: Sleeper for retry delays, injectable for tests.
    """

    def __init__(
        self,
        publisher: SourcePublisher,
        config: WorkerConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._publisher: SourcePublisher = publisher
        self._config: WorkerConfig = config or WorkerConfig()
        self._sleep: Callable[[float], None] = sleep
        self._consecutive_failures: int = 0
        self._cycles: int = 0
        self._relayed: int = 0
        self._last_event: PriceUpdateEmitted | None = None

    def run_once(self, now: int | None = None) -> WorkerOutcome:
        """Run one relay cycle and update the failure counter."""
        self._cycles += 1
        outcome: WorkerOutcome = self._attempt(now)
        if outcome in (WorkerOutcome.REJECTED, WorkerOutcome.FAILED):
            self._consecutive_failures += 1
        else:
            self._consecutive_failures = 0
        return outcome

    def _attempt(self, now: int | None) -> WorkerOutcome:
        retries: int = self._config.max_retries
        for attempt in range(1, retries + 1):
            try:
                event: PriceUpdateEmitted = self._publisher.relay_latest_price(now=now)
            except UpdateTooFrequent:
                logger.info("Rate limited, waiting for next cycle")
                return WorkerOutcome.RATE_LIMITED
            except InvalidRoundId:
                logger.info("No new upstream round")
                return WorkerOutcome.SKIPPED
            except FeedRelayError as exc:
                logger.warning("Relay rejected: %s (%s)", exc.kind.value, exc)
                return WorkerOutcome.REJECTED
            except Exception:
                logger.exception("Relay attempt %d/%d failed", attempt, retries)
                if attempt < retries:
                    self._sleep(self._config.retry_delay_seconds * attempt)
                continue

            self._relayed += 1
            self._last_event = event
            logger.info(
                "Relayed round %d answer=%d",
                event.round_id,
                event.answer,
            )
            return WorkerOutcome.RELAYED
        return WorkerOutcome.FAILED

    def run(self, stop_event: threading.Event) -> None:
        """Cycle until ``stop_event`` is set.

        Raises:
            WorkerHalted: After ``max_consecutive_failures`` failed cycles.
        """
        logger.info(
            "RelayWorker started (interval=%.0fs)",
            self._config.interval_seconds,
        )
        while not stop_event.is_set():
            self.run_once()
            if self._consecutive_failures >= self._config.max_consecutive_failures:
                logger.error(
                    "Halting after %d consecutive failures",
                    self._consecutive_failures,
                )
                raise WorkerHalted(
                    f"{self._consecutive_failures} consecutive relay failures"
                )
            stop_event.wait(self._config.interval_seconds)
        logger.info("RelayWorker stopped after %d cycles", self._cycles)

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def relayed(self) -> int:
        return self._relayed

    @property
    def last_event(self) -> PriceUpdateEmitted | None:
        return self._last_event


class MultiFeedConfig(BaseModel):
    """Configuration for :class:`MultiFeedWorker`.

    Attributes:
        interval_seconds: Wait between full cycles over all feeds.
        stagger_seconds: Pause between two feeds within a cycle.
        worker: Retry and halting settings applied to every feed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    interval_seconds: float = Field(default=90.0, gt=0.0)
    stagger_seconds: float = Field(default=5.0, ge=0.0)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)


class MultiFeedWorker:
    """One loop relaying several feeds in turn.

    Args:
        publishers: Publishers keyed by feed name, relayed in mapping
            order.
        config: Loop configuration. Defaults to ``MultiFeedConfig()``.
        sleep: Sleeper for stagger and retry delays, injectable for tests.

    Raises:
        ConfigurationError: If ``publishers`` is empty.
    """

    def __init__(
        self,
        publishers: Mapping[str, SourcePublisher],
        config: MultiFeedConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not publishers:
            raise ConfigurationError("MultiFeedWorker needs at least one feed")
        self._config: MultiFeedConfig = config or MultiFeedConfig()
        self._sleep: Callable[[float], None] = sleep
        self._workers: dict[str, RelayWorker] = {
            name: RelayWorker(publisher, config=self._config.worker, sleep=sleep)
            for name, publisher in publishers.items()
        }
        self._last_outcomes: dict[str, WorkerOutcome] = {}
        self._cycles: int = 0

    def run_cycle(self, now: int | None = None) -> dict[str, WorkerOutcome]:
        """Relay every feed once, staggered. Returns outcomes by feed."""
        self._cycles += 1
        outcomes: dict[str, WorkerOutcome] = {}
        for index, (name, worker) in enumerate(self._workers.items()):
            if index:
                self._sleep(self._config.stagger_seconds)
            outcome: WorkerOutcome = worker.run_once(now)
            outcomes[name] = outcome
            if outcome is WorkerOutcome.SKIPPED:
                logger.debug("%s: skipped, no new upstream round", name)
            elif outcome in (WorkerOutcome.REJECTED, WorkerOutcome.FAILED):
                logger.error(
                    "%s: %s (%d consecutive)",
                    name,
                    outcome.value,
                    worker.consecutive_failures,
                )
            else:
                logger.info("%s: %s", name, outcome.value)
        self._last_outcomes = outcomes
        return outcomes

    def run(self, stop_event: threading.Event) -> None:
        """Cycle over all feeds until ``stop_event`` is set.

        Raises:
            WorkerHalted: When any feed reaches
                ``worker.max_consecutive_failures``.
        """
        limit: int = self._config.worker.max_consecutive_failures
        logger.info(
            "MultiFeedWorker started: feeds=%s interval=%.0fs stagger=%.0fs",
            ", ".join(self._workers),
            self._config.interval_seconds,
            self._config.stagger_seconds,
        )
        while not stop_event.is_set():
            self.run_cycle()
            halted: list[str] = [
                name
                for name, worker in self._workers.items()
                if worker.consecutive_failures >= limit
            ]
            if halted:
                logger.error(
                    "Halting: %s reached %d consecutive failures",
                    ", ".join(halted),
                    limit,
                )
                raise WorkerHalted(
                    f"{', '.join(halted)}: {limit} consecutive relay failures"
                )
            stop_event.wait(self._config.interval_seconds)
        logger.info("MultiFeedWorker stopped after %d cycles", self._cycles)

    @property
    def feeds(self) -> list[str]:
        return list(self._workers)

    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def consecutive_failures(self) -> dict[str, int]:
        return {
            name: worker.consecutive_failures
            for name, worker in self._workers.items()
        }

    def stats(self) -> dict[str, dict[str, object]]:
        """Per-feed counters and the outcome of the latest cycle."""
        return {
            name: {
                "relayed": worker.relayed,
                "consecutive_failures": worker.consecutive_failures,
                "last_outcome": self._last_outcomes.get(name),
            }
            for name, worker in self._workers.items()
        }
