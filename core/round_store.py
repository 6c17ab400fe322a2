"""Append-only round history with constant-time latest lookup.

Records live in a list in commit order (the arena), with a
``round_id -> index`` map for random reads and the last slot serving as
the latest pointer. Round ids may be sparse: an upstream feed can skip
rounds and the relay may drop some, so only strict monotonicity is
enforced, not density.

Thread safety:
    **NOT thread-safe.** Each owning component serializes access under
    its own lock.

Example:
    >>> from core.round_store import RoundStore
    >>> from core.events import RoundRecord
    >>> store = RoundStore()
    >>> store.append(RoundRecord(
    ...     round_id=7, answer=1, started_at=0, updated_at=0,
    ...     answered_in_round=7,
    ... ))
    >>> store.latest().round_id
    7
    >>> 7 in store
    True
"""

from typing import Iterator

from core.errors import InvalidRoundId
from core.events import RoundRecord


class RoundStore:
    """Append-only, strictly increasing history of :class:`RoundRecord`."""

    __slots__ = ("_records", "_index")

    def __init__(self) -> None:
        self._records: list[RoundRecord] = []
        self._index: dict[int, int] = {}

    def append(self, record: RoundRecord) -> None:
        """Commit ``record`` as the new latest round.

        Raises:
            InvalidRoundId: If ``record.round_id`` is not strictly
                greater than the current latest round id.
        """
        latest: RoundRecord | None = self.latest()
        if latest is not None and record.round_id <= latest.round_id:
            raise InvalidRoundId(
                f"round {record.round_id} is not after latest round "
                f"{latest.round_id}"
            )
        self._index[record.round_id] = len(self._records)
        self._records.append(record)

    def latest(self) -> RoundRecord | None:
        """Return the most recently committed record, or ``None``."""
        if not self._records:
            return None
        return self._records[-1]

    def get(self, round_id: int) -> RoundRecord | None:
        """Return the record for ``round_id``, or ``None`` if unknown."""
        position: int | None = self._index.get(round_id)
        if position is None:
            return None
        return self._records[position]

    def __contains__(self, round_id: object) -> bool:
        return round_id in self._index

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[RoundRecord]:
        return iter(self._records)
