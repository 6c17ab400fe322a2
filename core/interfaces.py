"""Structural interfaces at the component boundaries.

:class:`FeedReader` is the read-only "latest round" surface shared by
the upstream feed and the destination store, so a downstream consumer
cannot tell a mirrored feed from an original one.
:class:`DestinationEndpoint` is what the dispatcher calls to commit a
relayed update.
"""

from typing import Protocol, runtime_checkable

from core.events import RoundRecord


@runtime_checkable
class FeedReader(Protocol):
    """Read interface of a price feed."""

    def latest_round_data(self) -> RoundRecord | None: ...

    def get_round_data(self, round_id: int) -> RoundRecord: ...

    def decimals(self) -> int: ...

    def description(self) -> str: ...

    def version(self) -> int: ...


class DestinationEndpoint(Protocol):
    """Commit interface the dispatcher relays into.

    Implementations raise a :class:`~core.errors.FeedRelayError` for a
    validation rejection and any other exception for a transient
    delivery failure. Freshness is judged against the endpoint's own
    clock; callers cannot supply the current time.
    """

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
    ) -> RoundRecord: ...
