"""Unit tests for core.worker module.

The publisher is a Mock so each exception class can be injected;
retry delays go through an injected sleep.
"""

import threading
from unittest.mock import Mock, call

import pytest
from pydantic import ValidationError

from core.errors import (
    ConfigurationError,
    InvalidAnswer,
    InvalidRoundId,
    StaleUpdate,
    UpdateTooFrequent,
)
from core.events import PriceUpdateEmitted
from core.worker import (
    MultiFeedConfig,
    MultiFeedWorker,
    RelayWorker,
    WorkerConfig,
    WorkerHalted,
    WorkerOutcome,
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


@pytest.fixture()
def publisher() -> Mock:
    mock = Mock()
    mock.relay_latest_price.return_value = _event()
    return mock


@pytest.fixture()
def sleep() -> Mock:
    return Mock()


@pytest.fixture()
def worker(publisher: Mock, sleep: Mock) -> RelayWorker:
    return RelayWorker(
        publisher=publisher,
        config=WorkerConfig(interval_seconds=0.01, retry_delay_seconds=5.0),
        sleep=sleep,
    )


class TestWorkerConfig:
    def test_defaults(self) -> None:
        config: WorkerConfig = WorkerConfig()
        assert config.interval_seconds == 70.0
        assert config.max_retries == 3
        assert config.max_consecutive_failures == 10

    def test_zero_interval_rejected(self) -> None:
        with pytest.raises(ValidationError):
            WorkerConfig(interval_seconds=0)


# ---------------------------------------------------------------------------
# run_once
# ---------------------------------------------------------------------------


class TestRunOnce:
    """Outcome classification for a single cycle."""

    def test_relayed(self, worker: RelayWorker, publisher: Mock) -> None:
        assert worker.run_once(now=123) is WorkerOutcome.RELAYED
        publisher.relay_latest_price.assert_called_once_with(now=123)
        assert worker.relayed == 1
        assert worker.last_event == _event()

    def test_rate_limited_is_not_failure(
        self,
        worker: RelayWorker,
        publisher: Mock,
    ) -> None:
        publisher.relay_latest_price.side_effect = UpdateTooFrequent("wait")
        assert worker.run_once() is WorkerOutcome.RATE_LIMITED
        assert worker.consecutive_failures == 0

    def test_no_new_round_skipped(self, worker: RelayWorker, publisher: Mock) -> None:
        publisher.relay_latest_price.side_effect = InvalidRoundId("nothing new")
        assert worker.run_once() is WorkerOutcome.SKIPPED
        assert worker.consecutive_failures == 0

    @pytest.mark.parametrize("error", [InvalidAnswer("zero"), StaleUpdate("old")])
    def test_rejection_not_retried(
        self,
        worker: RelayWorker,
        publisher: Mock,
        sleep: Mock,
        error: Exception,
    ) -> None:
        publisher.relay_latest_price.side_effect = error
        assert worker.run_once() is WorkerOutcome.REJECTED
        assert publisher.relay_latest_price.call_count == 1
        sleep.assert_not_called()
        assert worker.consecutive_failures == 1

    def test_transient_error_retried(
        self,
        worker: RelayWorker,
        publisher: Mock,
        sleep: Mock,
    ) -> None:
        publisher.relay_latest_price.side_effect = [
            ConnectionError("rpc down"),
            _event(2),
        ]
        assert worker.run_once() is WorkerOutcome.RELAYED
        sleep.assert_called_once_with(5.0)
        assert worker.last_event.round_id == 2

    def test_transient_error_exhausts(
        self,
        worker: RelayWorker,
        publisher: Mock,
        sleep: Mock,
    ) -> None:
        publisher.relay_latest_price.side_effect = ConnectionError("rpc down")
        assert worker.run_once() is WorkerOutcome.FAILED
        assert publisher.relay_latest_price.call_count == 3
        assert sleep.call_args_list == [call(5.0), call(10.0)]
        assert worker.consecutive_failures == 1

    def test_success_resets_failures(
        self,
        worker: RelayWorker,
        publisher: Mock,
    ) -> None:
        publisher.relay_latest_price.side_effect = [
            InvalidAnswer("zero"),
            InvalidAnswer("zero"),
            _event(),
        ]
        worker.run_once()
        worker.run_once()
        assert worker.consecutive_failures == 2
        worker.run_once()
        assert worker.consecutive_failures == 0
        assert worker.cycles == 3


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


class TestRun:
    def test_stops_on_event(self, worker: RelayWorker, publisher: Mock) -> None:
        stop: threading.Event = threading.Event()

        def relay(now: int | None = None) -> PriceUpdateEmitted:
            stop.set()
            return _event()

        publisher.relay_latest_price.side_effect = relay
        worker.run(stop)
        assert worker.cycles == 1

    def test_not_started_when_already_stopped(
        self,
        worker: RelayWorker,
        publisher: Mock,
    ) -> None:
        stop: threading.Event = threading.Event()
        stop.set()
        worker.run(stop)
        publisher.relay_latest_price.assert_not_called()

    def test_halts_after_consecutive_failures(
        self,
        publisher: Mock,
        sleep: Mock,
    ) -> None:
        publisher.relay_latest_price.side_effect = InvalidAnswer("zero")
        sut = RelayWorker(
            publisher=publisher,
            config=WorkerConfig(interval_seconds=0.001, max_consecutive_failures=2),
            sleep=sleep,
        )
        with pytest.raises(WorkerHalted):
            sut.run(threading.Event())
        assert sut.cycles == 2


# ---------------------------------------------------------------------------
# MultiFeedWorker
# ---------------------------------------------------------------------------


def _publishers(*names: str) -> dict[str, Mock]:
    publishers: dict[str, Mock] = {}
    for name in names:
        mock = Mock()
        mock.relay_latest_price.return_value = _event()
        publishers[name] = mock
    return publishers


class TestMultiFeedConfig:
    def test_defaults(self) -> None:
        config: MultiFeedConfig = MultiFeedConfig()
        assert config.interval_seconds == 90.0
        assert config.stagger_seconds == 5.0
        assert config.worker == WorkerConfig()

    def test_negative_stagger_rejected(self) -> None:
        with pytest.raises(ValidationError):
            MultiFeedConfig(stagger_seconds=-1.0)


class TestMultiFeedWorker:
    def test_requires_a_feed(self) -> None:
        with pytest.raises(ConfigurationError):
            MultiFeedWorker({})

    def test_cycle_relays_every_feed_staggered(self, sleep: Mock) -> None:
        publishers = _publishers("ETH/USD", "BTC/USD", "LINK/USD")
        sut = MultiFeedWorker(publishers, sleep=sleep)

        outcomes = sut.run_cycle(now=500)

        assert outcomes == {
            "ETH/USD": WorkerOutcome.RELAYED,
            "BTC/USD": WorkerOutcome.RELAYED,
            "LINK/USD": WorkerOutcome.RELAYED,
        }
        assert sleep.call_args_list == [call(5.0), call(5.0)]
        for publisher in publishers.values():
            publisher.relay_latest_price.assert_called_once_with(now=500)
        assert sut.feeds == ["ETH/USD", "BTC/USD", "LINK/USD"]
        assert sut.cycles == 1

    def test_single_feed_has_no_stagger(self, sleep: Mock) -> None:
        sut = MultiFeedWorker(_publishers("ETH/USD"), sleep=sleep)
        sut.run_cycle()
        sleep.assert_not_called()

    def test_failing_feed_does_not_block_others(self, sleep: Mock) -> None:
        publishers = _publishers("ETH/USD", "BTC/USD", "LINK/USD")
        publishers["ETH/USD"].relay_latest_price.side_effect = StaleUpdate("old")
        publishers["BTC/USD"].relay_latest_price.side_effect = InvalidRoundId("none")
        sut = MultiFeedWorker(publishers, sleep=sleep)

        outcomes = sut.run_cycle()

        assert outcomes == {
            "ETH/USD": WorkerOutcome.REJECTED,
            "BTC/USD": WorkerOutcome.SKIPPED,
            "LINK/USD": WorkerOutcome.RELAYED,
        }
        assert sut.consecutive_failures == {
            "ETH/USD": 1,
            "BTC/USD": 0,
            "LINK/USD": 0,
        }
        stats = sut.stats()
        assert stats["LINK/USD"]["relayed"] == 1
        assert stats["ETH/USD"]["last_outcome"] is WorkerOutcome.REJECTED

    def test_failure_counts_are_per_feed(self, sleep: Mock) -> None:
        publishers = _publishers("ETH/USD", "BTC/USD")
        publishers["BTC/USD"].relay_latest_price.side_effect = [
            InvalidAnswer("zero"),
            _event(2),
        ]
        publishers["ETH/USD"].relay_latest_price.side_effect = InvalidAnswer("zero")
        sut = MultiFeedWorker(publishers, sleep=sleep)

        sut.run_cycle()
        sut.run_cycle()

        assert sut.consecutive_failures == {"ETH/USD": 2, "BTC/USD": 0}

    def test_run_stops_on_event(self, sleep: Mock) -> None:
        publishers = _publishers("ETH/USD", "BTC/USD")
        stop: threading.Event = threading.Event()

        def relay(now: int | None = None) -> PriceUpdateEmitted:
            stop.set()
            return _event()

        publishers["BTC/USD"].relay_latest_price.side_effect = relay
        sut = MultiFeedWorker(publishers, sleep=sleep)
        sut.run(stop)

        assert sut.cycles == 1
        publishers["ETH/USD"].relay_latest_price.assert_called_once()

    def test_run_halts_naming_the_feed(self, sleep: Mock) -> None:
        publishers = _publishers("ETH/USD", "BTC/USD")
        publishers["BTC/USD"].relay_latest_price.side_effect = InvalidAnswer("zero")
        sut = MultiFeedWorker(
            publishers,
            config=MultiFeedConfig(
                interval_seconds=0.001,
                worker=WorkerConfig(max_consecutive_failures=2),
            ),
            sleep=sleep,
        )

        with pytest.raises(WorkerHalted, match="BTC/USD"):
            sut.run(threading.Event())
        assert sut.cycles == 2
        assert publishers["ETH/USD"].relay_latest_price.call_count == 2
