"""Confidence scoring and drift accounting for the dispatcher.

These are pure functions over :class:`TemporalState` so the relay
decision can be tested without any transport or destination.

Confidence scale:
    Basis points, ``0..10_000``. A payload scoring at or above
    ``MAX_CONFIDENCE_THRESHOLD`` is relayed immediately; below
    ``MIN_CONFIDENCE_THRESHOLD`` it is withheld and the drift-healing
    path runs instead. Scores in between are relayed but logged as
    degraded by the dispatcher.

Default scoring (:func:`compute_confidence`):
    ``freshness - drift_penalty``, where freshness falls linearly from
    10 000 at age 0 to 0 at ``staleness_threshold``, and the penalty
    grows with ``|cumulative_drift|`` up to ``max_drift_penalty``. The
    penalty cap equals ``BPS - MIN_CONFIDENCE_THRESHOLD`` by default,
    so a perfectly fresh payload is never withheld by drift alone.

Drift accounting:
    Every transition, relay or heal, first halves ``cumulative_drift``
    and then adds the excess lag, the part of ``now - updated_at``
    beyond ``drift_tolerance``. Drift therefore stays bounded by twice
    the recent excess lag: a steady lag settles at ``2 * excess`` and
    on-time payloads shrink it geometrically, whether they are relayed
    or withheld.

    - Successful relay (:func:`record_relay`): crossing
      ``drift_healing_threshold`` counts a healing attempt.
    - Withheld relay (:func:`record_heal`): a healing attempt is
      always counted.

Example:
    >>> from core.drift import TemporalState, compute_confidence
    >>> state = TemporalState(last_origin_update=0, last_destination_relay=0)
    >>> compute_confidence(updated_at=1000, now=1000, state=state)
    10000
    >>> compute_confidence(updated_at=1000, now=2800, state=state)
    5000
"""

import logging
from enum import Enum
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from core.events import I64_MAX, I64_MIN, U32_MAX, U64_MAX

logger: logging.Logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BPS: int = 10_000
"""Full confidence, in basis points."""

MAX_CONFIDENCE_THRESHOLD: int = 8_000
"""At or above this score a payload is relayed immediately."""

MIN_CONFIDENCE_THRESHOLD: int = 5_000
"""Below this score a payload is withheld and drift healing runs."""

DRIFT_HEALING_THRESHOLD: int = 5_000
"""Cumulative drift (seconds) beyond which a healing attempt is counted."""

DRIFT_TOLERANCE_SECONDS: int = 100
"""Relay lag up to this many seconds counts as on time."""

DEFAULT_STALENESS_THRESHOLD: int = 3_600


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class TemporalState(BaseModel):
    """Dispatcher timing state carried across relay cycles.

    Attributes:
        last_origin_update: ``updated_at`` of the last relayed payload.
        last_destination_relay: When the last relay committed.
        cumulative_drift: Signed accumulated lag, in seconds.
        healing_attempts: Number of drift-healing events so far.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    last_origin_update: int = Field(ge=0, le=U64_MAX)
    last_destination_relay: int = Field(ge=0, le=U64_MAX)
    cumulative_drift: int = Field(default=0, ge=I64_MIN, le=I64_MAX)
    healing_attempts: int = Field(default=0, ge=0, le=U32_MAX)


class RelayDecision(str, Enum):
    """Outcome of classifying a confidence score."""

    RELAY = "RELAY"
    DEGRADED = "DEGRADED"
    HEAL = "HEAL"


ConfidencePolicy = Callable[[int, int, TemporalState], int]
"""Pluggable scorer: ``(updated_at, now, state) -> confidence_bps``."""


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def compute_confidence(
    updated_at: int,
    now: int,
    state: TemporalState,
    staleness_threshold: int = DEFAULT_STALENESS_THRESHOLD,
    drift_healing_threshold: int = DRIFT_HEALING_THRESHOLD,
    max_drift_penalty: int = BPS - MIN_CONFIDENCE_THRESHOLD,
) -> int:
    """Score a payload's trustworthiness in basis points.

    Timestamps from the future are scored as age zero.

    Args:
        updated_at: Payload timestamp.
        now: Current time.
        state: Dispatcher temporal state.
        staleness_threshold: Age at which freshness reaches zero.
        drift_healing_threshold: Drift at which the penalty is maxed.
        max_drift_penalty: Upper bound of the drift penalty.

    Returns:
        Confidence in ``0..BPS``.
    """
    age: int = max(0, now - updated_at)
    if age >= staleness_threshold:
        freshness: int = 0
    else:
        freshness = (staleness_threshold - age) * BPS // staleness_threshold

    penalty: int = min(
        max_drift_penalty,
        abs(state.cumulative_drift) * max_drift_penalty // drift_healing_threshold,
    )
    return max(0, freshness - penalty)


def make_confidence_policy(
    staleness_threshold: int = DEFAULT_STALENESS_THRESHOLD,
    drift_healing_threshold: int = DRIFT_HEALING_THRESHOLD,
    max_drift_penalty: int = BPS - MIN_CONFIDENCE_THRESHOLD,
) -> ConfidencePolicy:
    """Bind :func:`compute_confidence` parameters into a policy callable."""

    def policy(updated_at: int, now: int, state: TemporalState) -> int:
        return compute_confidence(
            updated_at=updated_at,
            now=now,
            state=state,
            staleness_threshold=staleness_threshold,
            drift_healing_threshold=drift_healing_threshold,
            max_drift_penalty=max_drift_penalty,
        )

    return policy


def classify_confidence(
    confidence: int,
    min_threshold: int = MIN_CONFIDENCE_THRESHOLD,
    max_threshold: int = MAX_CONFIDENCE_THRESHOLD,
) -> RelayDecision:
    """Map a confidence score to a :class:`RelayDecision`."""
    if confidence >= max_threshold:
        return RelayDecision.RELAY
    if confidence < min_threshold:
        return RelayDecision.HEAL
    return RelayDecision.DEGRADED


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------


def _clamp_drift(value: int) -> int:
    return max(I64_MIN, min(I64_MAX, value))


def _bump_attempts(attempts: int) -> int:
    return min(U32_MAX, attempts + 1)


def _halve(value: int) -> int:
    """Halve toward zero without going through ``float``."""
    return value // 2 if value >= 0 else -(-value // 2)


def excess_lag(updated_at: int, now: int, drift_tolerance: int) -> int:
    """Signed part of ``now - updated_at`` beyond the tolerance, else 0."""
    lag: int = now - updated_at
    if abs(lag) <= drift_tolerance:
        return 0
    return lag - drift_tolerance if lag > 0 else lag + drift_tolerance


def _decayed(
    state: TemporalState,
    updated_at: int,
    now: int,
    drift_tolerance: int,
) -> int:
    return _clamp_drift(
        _halve(state.cumulative_drift)
        + excess_lag(updated_at, now, drift_tolerance),
    )


def record_relay(
    state: TemporalState,
    updated_at: int,
    now: int,
    drift_tolerance: int = DRIFT_TOLERANCE_SECONDS,
    drift_healing_threshold: int = DRIFT_HEALING_THRESHOLD,
) -> TemporalState:
    """Return the state after a payload committed at the destination."""
    drift: int = _decayed(state, updated_at, now, drift_tolerance)

    attempts: int = state.healing_attempts
    if abs(drift) > drift_healing_threshold:
        attempts = _bump_attempts(attempts)
        logger.warning(
            "Cumulative drift %ds exceeds healing threshold %ds",
            drift,
            drift_healing_threshold,
        )

    return TemporalState(
        last_origin_update=updated_at,
        last_destination_relay=now,
        cumulative_drift=drift,
        healing_attempts=attempts,
    )


def record_heal(
    state: TemporalState,
    updated_at: int,
    now: int,
    drift_tolerance: int = DRIFT_TOLERANCE_SECONDS,
) -> TemporalState:
    """Return the state after a payload was withheld for low confidence."""
    return state.model_copy(
        update={
            "cumulative_drift": _decayed(state, updated_at, now, drift_tolerance),
            "healing_attempts": _bump_attempts(state.healing_attempts),
        },
    )
