"""In-memory upstream price feed.

:class:`MockPriceFeed` implements the read-only "latest round" interface
the source publisher consumes, plus setters to drive it from demos and
tests. It stands in for an on-ledger aggregator: the relay never writes
to it, only the operator (or a test) does.

Example:
    >>> from infra.mock_feed import MockPriceFeed
    >>> feed = MockPriceFeed(description="ETH / USD", decimals=8)
    >>> feed.latest_round_data().answer
    200000000000
    >>> feed.set_price(210_000_000_000).round_id
    2
"""

import logging
import threading
import time

from core.errors import RoundNotFound
from core.events import RoundRecord

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_ANSWER: int = 200_000_000_000
"""$2000 at 8 decimals."""


class MockPriceFeed:
    """Settable upstream feed with an append-only round history.

    Args:
        description: Feed description.
        decimals: Scaling of answers.
        initial_answer: Answer of round 1, or ``None`` to start empty.
        version: Feed version.
        now: Timestamp of round 1; defaults to the wall clock.
    """

    def __init__(
        self,
        description: str,
        decimals: int,
        initial_answer: int | None = DEFAULT_ANSWER,
        version: int = 1,
        now: int | None = None,
    ) -> None:
        self._description: str = description
        self._decimals: int = decimals
        self._version: int = version
        self._rounds: dict[int, RoundRecord] = {}
        self._latest: RoundRecord | None = None
        self._lock: threading.Lock = threading.Lock()
        if initial_answer is not None:
            self.set_price(initial_answer, now=now)

    def set_price(self, answer: int, now: int | None = None) -> RoundRecord:
        """Start a new round with ``answer`` at ``now``."""
        current: int = now if now is not None else int(time.time())
        with self._lock:
            round_id: int = self._latest.round_id + 1 if self._latest else 1
        return self.set_round_data(
            round_id=round_id,
            answer=answer,
            started_at=current,
            updated_at=current,
            answered_in_round=round_id,
        )

    def set_round_data(
        self,
        round_id: int,
        answer: int,
        started_at: int,
        updated_at: int,
        answered_in_round: int,
    ) -> RoundRecord:
        """Overwrite the latest round with arbitrary values.

        No validation is applied, so tests can feed the publisher zero
        prices, stale timestamps or repeated round ids.
        """
        record: RoundRecord = RoundRecord.model_construct(
            round_id=round_id,
            answer=answer,
            started_at=started_at,
            updated_at=updated_at,
            answered_in_round=answered_in_round,
        )
        with self._lock:
            self._rounds[round_id] = record
            self._latest = record
        logger.debug("Mock feed round %d answer=%d", round_id, answer)
        return record

    def latest_round_data(self) -> RoundRecord | None:
        return self._latest

    def get_round_data(self, round_id: int) -> RoundRecord:
        record: RoundRecord | None = self._rounds.get(round_id)
        if record is None:
            raise RoundNotFound(f"no data for round {round_id}")
        return record

    def decimals(self) -> int:
        return self._decimals

    def description(self) -> str:
        return self._description

    def version(self) -> int:
        return self._version
