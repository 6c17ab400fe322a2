"""Protobuf codec for the cross-ledger price update notification.

The 7-field payload is carried as a betterproto message. Field numbers
follow the canonical order ``(round_id, answer, updated_at, decimals,
description, destination_chain_id, version)``.

Answer encoding:
    Protobuf has no 128-bit integer, so ``answer`` travels as exactly
    16 bytes of big-endian two's complement. Any other length is a
    decode failure.

Error contract:
    :func:`decode_payload` raises :class:`PayloadDecodeError` for every
    malformed input (truncated protobuf, wrong answer width, out of
    range fields). The dispatcher treats that as "discard, no state
    change".

Example:
    >>> from core.codec import decode_payload, encode_payload
    >>> from core.events import PriceUpdateEmitted
    >>> event = PriceUpdateEmitted(
    ...     round_id=1, answer=200_000_000_000, updated_at=1_760_000_000,
    ...     decimals=8, description="ETH / USD",
    ...     destination_chain_id=84532, version=1,
    ... )
    >>> decode_payload(encode_payload(event)) == event
    True
"""

from dataclasses import dataclass

import betterproto
from pydantic import ValidationError

from core.errors import PayloadDecodeError
from core.events import PriceUpdateEmitted

ANSWER_WIDTH_BYTES: int = 16
"""Width of the two's complement ``answer`` field (i128)."""


@dataclass(eq=False, repr=False)
class PriceUpdateMessage(betterproto.Message):
    """Wire form of :class:`~core.events.PriceUpdateEmitted`."""

    round_id: int = betterproto.uint64_field(1)
    answer: bytes = betterproto.bytes_field(2)
    updated_at: int = betterproto.uint64_field(3)
    decimals: int = betterproto.uint32_field(4)
    description: str = betterproto.string_field(5)
    destination_chain_id: int = betterproto.uint64_field(6)
    version: int = betterproto.uint64_field(7)


def encode_answer(answer: int) -> bytes:
    """Encode a signed i128 answer as 16 big-endian bytes.

    Raises:
        OverflowError: If ``answer`` does not fit in 128 bits.
    """
    return answer.to_bytes(ANSWER_WIDTH_BYTES, byteorder="big", signed=True)


def decode_answer(raw: bytes) -> int:
    """Decode 16 big-endian two's complement bytes into an ``int``.

    Raises:
        PayloadDecodeError: If ``raw`` is not exactly 16 bytes.
    """
    if len(raw) != ANSWER_WIDTH_BYTES:
        raise PayloadDecodeError(
            f"answer must be {ANSWER_WIDTH_BYTES} bytes, got {len(raw)}"
        )
    return int.from_bytes(raw, byteorder="big", signed=True)


def encode_payload(event: PriceUpdateEmitted) -> bytes:
    """Serialize a price update notification to protobuf bytes."""
    message: PriceUpdateMessage = PriceUpdateMessage(
        round_id=event.round_id,
        answer=encode_answer(event.answer),
        updated_at=event.updated_at,
        decimals=event.decimals,
        description=event.description,
        destination_chain_id=event.destination_chain_id,
        version=event.version,
    )
    return bytes(message)


def decode_payload(data: bytes) -> PriceUpdateEmitted:
    """Parse protobuf bytes into a validated :class:`PriceUpdateEmitted`.

    Raises:
        PayloadDecodeError: If the bytes are not a well-formed payload.
    """
    try:
        message: PriceUpdateMessage = PriceUpdateMessage().parse(data)
    except Exception as exc:
        raise PayloadDecodeError(f"malformed protobuf payload: {exc}") from exc

    answer: int = decode_answer(message.answer)
    try:
        return PriceUpdateEmitted(
            round_id=message.round_id,
            answer=answer,
            updated_at=message.updated_at,
            decimals=message.decimals,
            description=message.description,
            destination_chain_id=message.destination_chain_id,
            version=message.version,
        )
    except ValidationError as exc:
        raise PayloadDecodeError(f"payload field out of range: {exc}") from exc
