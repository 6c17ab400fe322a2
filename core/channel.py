"""Bounded message channel between the transport and the dispatcher.

The transport collaborator produces :class:`~core.events.Notification`
envelopes from its IO thread via :meth:`NotificationChannel.push`; the
dispatcher drains them from its own thread via
:meth:`NotificationChannel.poll`. This is the explicit message-passing
boundary between the source side and the dispatcher: the producer never
waits for the consumer.

SPSC contract:
    Strictly single-producer, single-consumer. ``push()`` and ``poll()``
    are lock-free and rely on CPython's atomic ``deque.append()`` /
    ``deque.popleft()``. Multi-producer use needs ``queue.Queue``.

Backpressure policy:
    Drop-oldest. A full channel evicts the oldest pending notification.
    Losing a notification is within the relay contract (delivery is
    at-most-once and consumers tolerate gaps), while the newest round
    is the one most worth relaying.

Counters:
    ``total_pushed - total_dropped - total_polled == pending`` holds
    whenever no push or poll is in flight.

Example:
    >>> from core.channel import ChannelConfig, NotificationChannel
    >>> channel = NotificationChannel(config=ChannelConfig(maxlen=2))
    >>> for item in ("a", "b", "c"):
    ...     channel.push(item)
    >>> channel.poll(max_events=10)
    ['b', 'c']
    >>> channel.stats().total_dropped
    1
"""

import collections
import logging
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Configuration & snapshots
# ---------------------------------------------------------------------------


class ChannelConfig(BaseModel):
    """Configuration for :class:`NotificationChannel`.

    Attributes:
        maxlen: Pending notifications held before drop-oldest applies.
        ema_alpha: Smoothing factor of the drop-rate EMA.
        drop_warning_threshold: Drop-rate EMA that triggers a warning.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    maxlen: int = Field(default=10_000, gt=0)
    ema_alpha: float = Field(default=0.05, gt=0.0, le=1.0)
    drop_warning_threshold: float = Field(default=0.01, gt=0.0, le=1.0)


class ChannelStats(BaseModel):
    """Counter snapshot returned by :meth:`NotificationChannel.stats`."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    total_pushed: int = Field(ge=0)
    total_polled: int = Field(ge=0)
    total_dropped: int = Field(ge=0)
    pending: int = Field(ge=0)
    maxlen: int = Field(gt=0)


class ChannelHealth(BaseModel):
    """Health snapshot returned by :meth:`NotificationChannel.health`."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    drop_rate_ema: float = Field(ge=0.0)
    utilization: float = Field(ge=0.0, le=1.0)
    total_dropped: int = Field(ge=0)
    total_pushed: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------


class NotificationChannel(Generic[T]):
    """Drop-oldest bounded queue, typically ``NotificationChannel[Notification]``.

    Args:
        config: Channel configuration. Defaults to ``ChannelConfig()``.
    """

    def __init__(self, config: ChannelConfig | None = None) -> None:
        self._config: ChannelConfig = config or ChannelConfig()
        self._maxlen: int = self._config.maxlen
        self._queue: collections.deque[T] = collections.deque(maxlen=self._maxlen)

        # push thread writes _total_pushed/_total_dropped/_drop_rate_ema,
        # poll thread writes _total_polled
        self._total_pushed: int = 0
        self._total_polled: int = 0
        self._total_dropped: int = 0
        self._drop_rate_ema: float = 0.0
        self._warned: bool = False

    def push(self, item: T) -> None:
        """Enqueue ``item``, evicting the oldest pending one when full."""
        sample: float = 0.0
        if len(self._queue) == self._maxlen:
            self._total_dropped += 1
            sample = 1.0
        self._queue.append(item)
        self._total_pushed += 1

        alpha: float = self._config.ema_alpha
        self._drop_rate_ema = alpha * sample + (1.0 - alpha) * self._drop_rate_ema
        threshold: float = self._config.drop_warning_threshold
        if self._drop_rate_ema > threshold and not self._warned:
            logger.warning(
                "Notification drop rate %.4f exceeds %.4f; dispatcher is "
                "falling behind",
                self._drop_rate_ema,
                threshold,
            )
            self._warned = True
        elif self._drop_rate_ema <= threshold and self._warned:
            logger.info(
                "Notification drop rate %.4f back under %.4f",
                self._drop_rate_ema,
                threshold,
            )
            self._warned = False

    def poll(self, max_events: int = 100) -> list[T]:
        """Dequeue up to ``max_events`` pending items in FIFO order.

        Raises:
            ValueError: If ``max_events`` is not positive.
        """
        if max_events <= 0:
            raise ValueError(f"max_events must be > 0, got {max_events}")
        items: list[T] = []
        for _ in range(max_events):
            if not self._queue:
                break
            items.append(self._queue.popleft())
        self._total_polled += len(items)
        return items

    def clear(self) -> None:
        """Discard pending items and reset counters. Not concurrent-safe."""
        if self._queue:
            logger.warning("Discarding %d pending notifications", len(self._queue))
        self._queue.clear()
        self._total_pushed = 0
        self._total_polled = 0
        self._total_dropped = 0
        self._drop_rate_ema = 0.0
        self._warned = False

    def __len__(self) -> int:
        return len(self._queue)

    def stats(self) -> ChannelStats:
        """Eventually consistent counter snapshot."""
        return ChannelStats(
            total_pushed=self._total_pushed,
            total_polled=self._total_polled,
            total_dropped=self._total_dropped,
            pending=len(self._queue),
            maxlen=self._maxlen,
        )

    def health(self) -> ChannelHealth:
        """Drop-rate and utilization snapshot."""
        return ChannelHealth(
            drop_rate_ema=self._drop_rate_ema,
            utilization=len(self._queue) / self._maxlen,
            total_dropped=self._total_dropped,
            total_pushed=self._total_pushed,
        )

    def _invariant_ok(self) -> bool:
        return (
            self._total_pushed - self._total_dropped - self._total_polled
            == len(self._queue)
        )
