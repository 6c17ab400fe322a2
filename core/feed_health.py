"""Freshness evaluation for committed feeds.

Computes the derived health view a destination store exposes through
``get_health_metrics()`` and ``is_stale()``. Purely functional: nothing
here reads a clock or mutates state, the caller passes ``now``.

Startup-aware state:
    A feed that has never committed a round is reported unhealthy and
    stale, with ``seconds_since_update`` set to ``None`` so callers can
    tell "no data yet" from "data went stale".

Example:
    >>> from core.feed_health import evaluate_health
    >>> evaluate_health(latest=None, total_rounds=0, now=100).healthy
    False
"""

from pydantic import BaseModel, ConfigDict, Field

from core.events import RoundRecord

DEFAULT_STALENESS_THRESHOLD: int = 3_600
"""Seconds after ``updated_at`` when a round stops being fresh."""


class HealthMetrics(BaseModel):
    """Health snapshot of a committed feed.

    Attributes:
        healthy: A round exists and is within the staleness bound.
        last_update_timestamp: ``updated_at`` of the latest round, or 0.
        total_rounds: Number of committed rounds.
        seconds_since_update: ``now - updated_at``, or ``None`` before
            the first commit. Never negative.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    healthy: bool
    last_update_timestamp: int = Field(ge=0)
    total_rounds: int = Field(ge=0)
    seconds_since_update: int | None = Field(default=None, ge=0)


def is_fresh(
    updated_at: int,
    now: int,
    staleness_threshold: int = DEFAULT_STALENESS_THRESHOLD,
) -> bool:
    """Return ``True`` if ``now - updated_at`` is within the bound."""
    return now - updated_at <= staleness_threshold


def evaluate_health(
    latest: RoundRecord | None,
    total_rounds: int,
    now: int,
    staleness_threshold: int = DEFAULT_STALENESS_THRESHOLD,
) -> HealthMetrics:
    """Build :class:`HealthMetrics` for the feed whose latest round is ``latest``."""
    if latest is None:
        return HealthMetrics(
            healthy=False,
            last_update_timestamp=0,
            total_rounds=total_rounds,
        )
    return HealthMetrics(
        healthy=is_fresh(latest.updated_at, now, staleness_threshold),
        last_update_timestamp=latest.updated_at,
        total_rounds=total_rounds,
        seconds_since_update=max(0, now - latest.updated_at),
    )
