"""Error taxonomy for the price feed relay.

Every rejected operation raises a subclass of :class:`FeedRelayError`
whose ``kind`` attribute names the specific failure. Operators and
monitoring can therefore tell adversarial or invalid input
(``InvalidAnswer``, ``DeviationTooHigh``, ...) apart from transient
infrastructure failure (``DispatchExhausted``).

Propagation:
    Validation-gate errors are raised synchronously by the component
    that evaluated the gate and leave its state untouched. The caller
    must build a fresh candidate; nothing is partially retried.

Example:
    >>> from core.errors import ErrorKind, InvalidAnswer
    >>> try:
    ...     raise InvalidAnswer("answer must be positive, got 0")
    ... except InvalidAnswer as exc:
    ...     exc.kind
    <ErrorKind.INVALID_ANSWER: 'InvalidAnswer'>
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Machine-readable error kinds carried by every relay error."""

    INVALID_ANSWER = "InvalidAnswer"
    INVALID_ROUND_ID = "InvalidRoundId"
    STALE_UPDATE = "StaleUpdate"
    UPDATE_TOO_FREQUENT = "UpdateTooFrequent"
    DEVIATION_TOO_HIGH = "DeviationTooHigh"
    UNAUTHORIZED = "Unauthorized"
    FEED_IS_PAUSED = "FeedIsPaused"
    DISPATCH_EXHAUSTED = "DispatchExhausted"
    CONFIGURATION = "ConfigurationError"
    ROUND_NOT_FOUND = "RoundNotFound"
    PAYLOAD_DECODE = "PayloadDecodeError"


class FeedRelayError(Exception):
    """Base class for all relay errors.

    Attributes:
        kind: The :class:`ErrorKind` identifying this failure.
    """

    kind: ErrorKind


class InvalidAnswer(FeedRelayError):
    """Non-positive answer at the publish or commit gate."""

    kind = ErrorKind.INVALID_ANSWER


class InvalidRoundId(FeedRelayError):
    """Round id not strictly greater than the latest committed one."""

    kind = ErrorKind.INVALID_ROUND_ID


class StaleUpdate(FeedRelayError):
    """Payload timestamp older than the freshness bound."""

    kind = ErrorKind.STALE_UPDATE


class UpdateTooFrequent(FeedRelayError):
    """Publish attempted before the minimum update interval elapsed."""

    kind = ErrorKind.UPDATE_TOO_FREQUENT


class DeviationTooHigh(FeedRelayError):
    """Relative change from the previous answer exceeds the anomaly guard."""

    kind = ErrorKind.DEVIATION_TOO_HIGH


class Unauthorized(FeedRelayError):
    """Caller lacks the admin capability or relayer authorization."""

    kind = ErrorKind.UNAUTHORIZED


class FeedIsPaused(FeedRelayError):
    """Destination circuit breaker is engaged."""

    kind = ErrorKind.FEED_IS_PAUSED


class DispatchExhausted(FeedRelayError):
    """Dispatcher retry budget consumed without a successful commit.

    Never raised to the source publisher. Carried inside the
    ``DispatchFailed`` operator event.
    """

    kind = ErrorKind.DISPATCH_EXHAUSTED


class ConfigurationError(FeedRelayError):
    """Rejected administrative or construction-time configuration."""

    kind = ErrorKind.CONFIGURATION


class RoundNotFound(FeedRelayError, KeyError):
    """Read of a round id that was never committed."""

    kind = ErrorKind.ROUND_NOT_FOUND

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return Exception.__str__(self)


class PayloadDecodeError(FeedRelayError):
    """Notification payload could not be decoded into a price update."""

    kind = ErrorKind.PAYLOAD_DECODE
