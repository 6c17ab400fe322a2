"""Domain records and observability events for the price feed relay.

This module defines the value types that flow between the source
publisher, the dispatcher and the destination store. All models are
Pydantic-based with ``frozen=True`` so a committed record can never be
mutated after the fact.

Integer ranges:
    Field bounds mirror the ledger integer widths: round ids and
    timestamps are ``u64``, answers are ``i128`` (signed, scaled by
    ``decimals``), decimals are ``u8``. Answers are Python ``int`` and
    never pass through ``float``, so a relayed value is bit-exact at
    the destination.

Timestamp convention:
    All timestamps are unix seconds, the unit the upstream feed reports
    ``updated_at`` in.

Example:
    >>> from core.events import RoundRecord
    >>> record = RoundRecord(
    ...     round_id=1,
    ...     answer=200_000_000_000,
    ...     started_at=1_760_000_000,
    ...     updated_at=1_760_000_000,
    ...     answered_in_round=1,
    ... )
    >>> record.answer
    200000000000
"""

from typing import Callable, Union

from pydantic import BaseModel, ConfigDict, Field

from core.errors import ErrorKind

# ---------------------------------------------------------------------------
# Integer bounds
# ---------------------------------------------------------------------------

U8_MAX: int = 2**8 - 1
U32_MAX: int = 2**32 - 1
U64_MAX: int = 2**64 - 1
I64_MIN: int = -(2**63)
I64_MAX: int = 2**63 - 1
I128_MIN: int = -(2**127)
I128_MAX: int = 2**127 - 1

PRICE_UPDATE_EVENT_SIGNATURE: str = (
    "PriceUpdateEmitted(uint64,int128,uint64,uint8,string,uint64,uint64)"
)
"""Canonical signature of the publisher's outbound notification."""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class RoundRecord(BaseModel):
    """One accepted feed update.

    Also the return type of every ``latest_round_data()`` /
    ``get_round_data()`` read, so upstream feeds and mirrored feeds are
    indistinguishable to a consumer.

    Attributes:
        round_id: Strictly increasing within a store.
        answer: Signed value scaled by the feed's ``decimals``.
        started_at: Round start timestamp.
        updated_at: Round last-update timestamp.
        answered_in_round: Round in which the answer was computed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    round_id: int = Field(ge=0, le=U64_MAX, description="Round identifier")
    answer: int = Field(
        ge=I128_MIN,
        le=I128_MAX,
        description="Signed answer scaled by decimals",
    )
    started_at: int = Field(ge=0, le=U64_MAX, description="Round start (unix s)")
    updated_at: int = Field(ge=0, le=U64_MAX, description="Last update (unix s)")
    answered_in_round: int = Field(
        ge=0,
        le=U64_MAX,
        description="Round in which the answer was computed",
    )


class FeedMetadata(BaseModel):
    """Descriptive metadata and counters owned by a publisher or store.

    Replaced wholesale via ``model_copy(update=...)`` on each successful
    commit; never mutated in place.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    description: str
    decimals: int = Field(ge=0, le=U8_MAX)
    version: int = Field(default=1, ge=0, le=U64_MAX)
    update_count: int = Field(default=0, ge=0, le=U64_MAX)
    last_update_timestamp: int = Field(default=0, ge=0, le=U64_MAX)


class FeedConfig(BaseModel):
    """Destination feed configuration. ``paused`` is admin-toggled."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    decimals: int = Field(ge=0, le=U8_MAX)
    description: str
    version: int = Field(default=1, ge=0, le=U64_MAX)
    paused: bool = False


class Notification(BaseModel):
    """Envelope delivered by the cross-ledger transport to the dispatcher.

    Attributes:
        source_chain_id: Ledger the event was observed on.
        source_contract: Emitting publisher identifier on that ledger.
        event_signature: Signature of the observed event.
        payload: Encoded 7-field price update (see :mod:`core.codec`).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    source_chain_id: int = Field(ge=0, le=U64_MAX)
    source_contract: str = Field(min_length=1)
    event_signature: str = Field(min_length=1)
    payload: bytes


# ---------------------------------------------------------------------------
# Source publisher events
# ---------------------------------------------------------------------------


class PriceUpdateEmitted(BaseModel):
    """Outbound notification of a vetted update (the 7-field wire payload).

    Field order is the wire order and must not change.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    round_id: int = Field(ge=0, le=U64_MAX)
    answer: int = Field(ge=I128_MIN, le=I128_MAX)
    updated_at: int = Field(ge=0, le=U64_MAX)
    decimals: int = Field(ge=0, le=U8_MAX)
    description: str
    destination_chain_id: int = Field(ge=0, le=U64_MAX)
    version: int = Field(ge=0, le=U64_MAX)


class FeedMetadataUpdated(BaseModel):
    """Emitted when a publisher is created with its feed metadata."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    description: str
    decimals: int = Field(ge=0, le=U8_MAX)
    version: int = Field(ge=0, le=U64_MAX)


class MinUpdateIntervalUpdated(BaseModel):
    """Emitted when the publisher's rate limit changes."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    previous_interval: int = Field(ge=0)
    new_interval: int = Field(ge=0)
    actor: str


# ---------------------------------------------------------------------------
# Dispatcher events
# ---------------------------------------------------------------------------


class SubscriptionCreated(BaseModel):
    """Emitted for every new subscription, duplicates included."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    subscription_id: int = Field(ge=0)
    source_chain_id: int = Field(ge=0, le=U64_MAX)
    source_contract: str
    event_signature: str


class SubscriptionDeactivated(BaseModel):
    """Emitted when a subscription is soft-deactivated."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    subscription_id: int = Field(ge=0)
    actor: str


class DestinationConfigured(BaseModel):
    """Emitted when the dispatcher's destination changes."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    chain_id: int = Field(gt=0, le=U64_MAX)
    contract_id: str
    actor: str


class DispatchFailed(BaseModel):
    """Operator-facing signal that a payload was dropped after retries.

    Attributes:
        round_id: Round of the dropped payload.
        answer: Answer of the dropped payload.
        destination_chain_id: Configured destination chain.
        destination_contract: Configured destination contract.
        attempts: Number of delivery attempts made.
        error_kind: Always :attr:`ErrorKind.DISPATCH_EXHAUSTED`.
        last_error: ``repr`` of the final transient failure.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    round_id: int = Field(ge=0, le=U64_MAX)
    answer: int = Field(ge=I128_MIN, le=I128_MAX)
    destination_chain_id: int = Field(ge=0, le=U64_MAX)
    destination_contract: str
    attempts: int = Field(gt=0)
    error_kind: ErrorKind = ErrorKind.DISPATCH_EXHAUSTED
    last_error: str


# ---------------------------------------------------------------------------
# Destination store events
# ---------------------------------------------------------------------------


class PriceUpdated(BaseModel):
    """Emitted on every committed destination round."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    round_id: int = Field(ge=0, le=U64_MAX)
    answer: int = Field(ge=I128_MIN, le=I128_MAX)
    started_at: int = Field(ge=0, le=U64_MAX)
    updated_at: int = Field(ge=0, le=U64_MAX)
    answered_in_round: int = Field(ge=0, le=U64_MAX)
    relayer: str


class RelayerAuthorized(BaseModel):
    """Emitted when a relayer identity is granted or revoked."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    relayer: str
    authorized: bool


class FeedPaused(BaseModel):
    """Emitted when the destination circuit breaker is toggled."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    paused: bool
    actor: str


# ---------------------------------------------------------------------------
# Callback type
# ---------------------------------------------------------------------------

RelayEvent = Union[
    PriceUpdateEmitted,
    FeedMetadataUpdated,
    MinUpdateIntervalUpdated,
    SubscriptionCreated,
    SubscriptionDeactivated,
    DestinationConfigured,
    DispatchFailed,
    PriceUpdated,
    RelayerAuthorized,
    FeedPaused,
]
"""Union of every observability event emitted by the core components."""

EventCallback = Callable[[RelayEvent], None]
"""Observer signature: ``(event) -> None``. Runs inline in the caller."""
