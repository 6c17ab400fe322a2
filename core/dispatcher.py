"""Event-driven relay from source notifications to one destination store.

:class:`RelayDispatcher` is invoked by the transport collaborator for
every observed notification, either directly through
:meth:`RelayDispatcher.on_notification` or by draining its
:class:`~core.channel.NotificationChannel` with
:meth:`RelayDispatcher.process_pending`. It never polls a publisher.

Handler pipeline (per notification):
    1. Match ``(source_chain_id, source_contract)`` against the active
       subscriptions. No match, an undecodable payload, or a payload
       addressed to another destination chain is discarded without any
       state change. Each matching subscription, duplicates included,
       runs steps 2-4 independently.
    2. Score confidence with the :data:`~core.drift.ConfidencePolicy`.
       Below ``min_confidence_threshold`` the payload is withheld and
       the drift-healing path runs. At or above
       ``max_confidence_threshold`` it is relayed; in between it is
       relayed and logged as degraded.
    3. Call the destination endpoint. Validation rejections
       (:class:`~core.errors.FeedRelayError`) are final. Any other
       exception is transient and retried per :class:`RetryPolicy`;
       after the last attempt the payload is dropped and a
       :class:`~core.events.DispatchFailed` event is emitted.
    4. On commit, update :class:`~core.drift.TemporalState`.

Thread safety:
    Handler and admin calls are serialized under one re-entrant lock,
    so the dispatcher behaves as a single-threaded state machine. The
    lock is held across retry backoff; a dispatch either succeeds or
    exhausts its attempts and cannot be cancelled midway.

Example:
    >>> from core.admin import AdminCapability
    >>> from core.dispatcher import DispatcherConfig, RelayDispatcher
    >>> owner = AdminCapability.issue("ops")
    >>> dispatcher = RelayDispatcher(
    ...     config=DispatcherConfig(), admin=owner, relayer_id="relayer-1",
    ... )
    >>> sub = dispatcher.subscribe(owner, 11155111, "0xpublisher", "PriceUpdateEmitted")
    >>> dispatcher.subscription_count
    1
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field, model_validator

from core.admin import AdminCapability, require_admin
from core.channel import NotificationChannel
from core.codec import decode_payload
from core.drift import (
    BPS,
    DRIFT_HEALING_THRESHOLD,
    DRIFT_TOLERANCE_SECONDS,
    MAX_CONFIDENCE_THRESHOLD,
    MIN_CONFIDENCE_THRESHOLD,
    ConfidencePolicy,
    RelayDecision,
    TemporalState,
    classify_confidence,
    make_confidence_policy,
    record_heal,
    record_relay,
)
from core.errors import ConfigurationError, FeedRelayError, PayloadDecodeError
from core.events import (
    U64_MAX,
    DestinationConfigured,
    DispatchFailed,
    EventCallback,
    Notification,
    PriceUpdateEmitted,
    RelayEvent,
    SubscriptionCreated,
    SubscriptionDeactivated,
)
from core.interfaces import DestinationEndpoint
from core.retry import MAX_RELAY_ATTEMPTS, RetryPolicy

logger: logging.Logger = logging.getLogger(__name__)

# Rate limiting for discard and handler-error logs: first N, then every Nth.
_LOG_FIRST_N: int = 10
_LOG_EVERY_N: int = 1000


# ---------------------------------------------------------------------------
# Configuration & value types
# ---------------------------------------------------------------------------


class DispatcherConfig(BaseModel):
    """Configuration for :class:`RelayDispatcher`.

    Attributes:
        max_relay_attempts: Delivery attempts per payload, first included.
        min_confidence_threshold: Below this score the payload is withheld.
        max_confidence_threshold: At or above this score the payload is
            relayed without a degraded warning.
        drift_healing_threshold: Cumulative drift counted as a healing event.
        staleness_threshold: Age at which default confidence reaches zero.
        drift_tolerance_seconds: Relay lag treated as on time.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_relay_attempts: int = Field(default=MAX_RELAY_ATTEMPTS, gt=0, le=100)
    min_confidence_threshold: int = Field(
        default=MIN_CONFIDENCE_THRESHOLD, ge=0, le=BPS,
    )
    max_confidence_threshold: int = Field(
        default=MAX_CONFIDENCE_THRESHOLD, ge=0, le=BPS,
    )
    drift_healing_threshold: int = Field(default=DRIFT_HEALING_THRESHOLD, gt=0)
    staleness_threshold: int = Field(default=3_600, gt=0)
    drift_tolerance_seconds: int = Field(default=DRIFT_TOLERANCE_SECONDS, ge=0)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "DispatcherConfig":
        if self.min_confidence_threshold > self.max_confidence_threshold:
            raise ValueError(
                f"min_confidence_threshold ({self.min_confidence_threshold}) "
                f"must not exceed max_confidence_threshold "
                f"({self.max_confidence_threshold})"
            )
        return self


class Subscription(BaseModel):
    """Registration of interest in one source publisher's events."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    subscription_id: int = Field(ge=0)
    source_chain_id: int = Field(ge=0, le=U64_MAX)
    source_contract: str = Field(min_length=1)
    event_signature: str = Field(min_length=1)
    active: bool = True

    def matches(self, notification: Notification) -> bool:
        return (
            self.active
            and self.source_chain_id == notification.source_chain_id
            and self.source_contract == notification.source_contract
        )


class DispatchOutcome(str, Enum):
    """Result of running one payload through the pipeline."""

    RELAYED = "RELAYED"
    REJECTED = "REJECTED"
    EXHAUSTED = "EXHAUSTED"
    HEALED = "HEALED"
    DISCARDED = "DISCARDED"
    NO_DESTINATION = "NO_DESTINATION"
    HANDLER_ERROR = "HANDLER_ERROR"


class DispatcherStats(BaseModel):
    """Counter snapshot returned by :meth:`RelayDispatcher.stats`."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    notifications_received: int = Field(ge=0)
    discarded: int = Field(ge=0)
    relayed: int = Field(ge=0)
    degraded: int = Field(ge=0)
    healed: int = Field(ge=0)
    rejected: int = Field(ge=0)
    exhausted: int = Field(ge=0)
    retries: int = Field(ge=0)
    no_destination: int = Field(ge=0)
    handler_errors: int = Field(ge=0)
    subscriptions: int = Field(ge=0)
    active_subscriptions: int = Field(ge=0)
    pending: int = Field(ge=0)


def is_null_identifier(value: str) -> bool:
    """``True`` for an empty identifier or an all-zero hex address."""
    if not value:
        return True
    if value.lower().startswith("0x"):
        return set(value[2:]) <= {"0"}
    return False


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class RelayDispatcher:
    """Bridge between source notifications and a destination store.

    Args:
        config: Dispatcher configuration.
        admin: Capability allowed to subscribe and configure destinations.
        relayer_id: Identity presented to the destination as ``caller``.
        channel: Inbound notification channel. A default one is created
            when omitted.
        retry_policy: Delivery retry schedule. Defaults to
            ``RetryPolicy(max_attempts=config.max_relay_attempts)``.
        confidence_policy: Confidence scorer. Defaults to
            :func:`~core.drift.make_confidence_policy` bound to ``config``.
        on_event: Observer for subscription, destination and
            dispatch-failure events.
        sleep: Backoff sleeper, injectable for tests.
        now: Initial timestamp of the temporal state; defaults to the
            wall clock.
    """

    def __init__(
        self,
        config: DispatcherConfig,
        admin: AdminCapability,
        relayer_id: str,
        channel: NotificationChannel[Notification] | None = None,
        retry_policy: RetryPolicy | None = None,
        confidence_policy: ConfidencePolicy | None = None,
        on_event: EventCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: int | None = None,
    ) -> None:
        if not relayer_id:
            raise ConfigurationError("relayer_id must not be empty")

        self._config: DispatcherConfig = config
        self._admin: AdminCapability = admin
        self._relayer_id: str = relayer_id
        self._channel: NotificationChannel[Notification] = (
            channel if channel is not None else NotificationChannel()
        )
        self._retry: RetryPolicy = retry_policy or RetryPolicy(
            max_attempts=config.max_relay_attempts,
        )
        self._confidence: ConfidencePolicy = confidence_policy or (
            make_confidence_policy(
                staleness_threshold=config.staleness_threshold,
                drift_healing_threshold=config.drift_healing_threshold,
                max_drift_penalty=BPS - config.min_confidence_threshold,
            )
        )
        self._on_event: EventCallback | None = on_event
        self._sleep: Callable[[float], None] = sleep
        self._lock: threading.RLock = threading.RLock()

        self._subscriptions: list[Subscription] = []
        self._destination: tuple[int, str] | None = None
        self._endpoints: dict[tuple[int, str], DestinationEndpoint] = {}

        started: int = now if now is not None else int(time.time())
        self._state: TemporalState = TemporalState(
            last_origin_update=started,
            last_destination_relay=started,
        )

        self._received: int = 0
        self._discarded: int = 0
        self._relayed: int = 0
        self._degraded: int = 0
        self._healed: int = 0
        self._rejected: int = 0
        self._exhausted: int = 0
        self._retries: int = 0
        self._no_destination: int = 0
        self._handler_errors: int = 0

        logger.info(
            "RelayDispatcher created (relayer=%s, attempts=%d, "
            "confidence %d..%d bps)",
            relayer_id,
            self._retry.max_attempts,
            config.min_confidence_threshold,
            config.max_confidence_threshold,
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def subscribe(
        self,
        capability: AdminCapability,
        source_chain_id: int,
        source_contract: str,
        event_signature: str,
    ) -> Subscription:
        """Append an active subscription. Equivalent ones are not merged."""
        require_admin(self._admin, capability, "subscribe")
        with self._lock:
            subscription: Subscription = Subscription(
                subscription_id=len(self._subscriptions),
                source_chain_id=source_chain_id,
                source_contract=source_contract,
                event_signature=event_signature,
            )
            self._subscriptions.append(subscription)
        logger.info(
            "Subscription %d created: chain=%d contract=%s",
            subscription.subscription_id,
            source_chain_id,
            source_contract,
        )
        self._emit(
            SubscriptionCreated(
                subscription_id=subscription.subscription_id,
                source_chain_id=source_chain_id,
                source_contract=source_contract,
                event_signature=event_signature,
            ),
        )
        return subscription

    def deactivate_subscription(
        self,
        capability: AdminCapability,
        subscription_id: int,
    ) -> Subscription:
        """Soft-deactivate a subscription. Idempotent.

        Raises:
            ConfigurationError: If ``subscription_id`` is unknown.
        """
        require_admin(self._admin, capability, "deactivateSubscription")
        with self._lock:
            if not 0 <= subscription_id < len(self._subscriptions):
                raise ConfigurationError(f"unknown subscription {subscription_id}")
            current: Subscription = self._subscriptions[subscription_id]
            if not current.active:
                return current
            updated: Subscription = current.model_copy(update={"active": False})
            self._subscriptions[subscription_id] = updated
        logger.info("Subscription %d deactivated", subscription_id)
        self._emit(
            SubscriptionDeactivated(
                subscription_id=subscription_id,
                actor=capability.holder,
            ),
        )
        return updated

    def set_destination(
        self,
        capability: AdminCapability,
        chain_id: int,
        contract_id: str,
    ) -> None:
        """Point the dispatcher at ``(chain_id, contract_id)``.

        Raises:
            Unauthorized: ``capability`` is not this dispatcher's admin.
            ConfigurationError: Null contract id or non-positive chain id.
        """
        require_admin(self._admin, capability, "setDestination")
        self._validate_destination(chain_id, contract_id)
        with self._lock:
            self._destination = (chain_id, contract_id)
        logger.info("Destination set to chain=%d contract=%s", chain_id, contract_id)
        self._emit(
            DestinationConfigured(
                chain_id=chain_id,
                contract_id=contract_id,
                actor=capability.holder,
            ),
        )

    def register_endpoint(
        self,
        capability: AdminCapability,
        chain_id: int,
        contract_id: str,
        endpoint: DestinationEndpoint,
    ) -> None:
        """Bind a destination identifier to the object that commits to it."""
        require_admin(self._admin, capability, "registerEndpoint")
        self._validate_destination(chain_id, contract_id)
        with self._lock:
            self._endpoints[(chain_id, contract_id)] = endpoint
        logger.info("Endpoint registered for chain=%d contract=%s", chain_id, contract_id)

    @staticmethod
    def _validate_destination(chain_id: int, contract_id: str) -> None:
        if chain_id <= 0 or is_null_identifier(contract_id):
            raise ConfigurationError(
                f"Invalid destination: chain={chain_id} contract={contract_id!r}"
            )

    # ------------------------------------------------------------------
    # Handler
    # ------------------------------------------------------------------

    def on_notification(
        self,
        notification: Notification,
        now: int | None = None,
    ) -> list[DispatchOutcome]:
        """Run one notification through the relay pipeline.

        Returns:
            One outcome per matching subscription, or a single
            ``DISCARDED`` / ``NO_DESTINATION`` when nothing is dispatched.
        """
        with self._lock:
            current: int = now if now is not None else int(time.time())
            self._received += 1

            matches: list[Subscription] = [
                s for s in self._subscriptions if s.matches(notification)
            ]
            if not matches:
                self._discard(
                    "no active subscription for chain=%d contract=%s",
                    notification.source_chain_id,
                    notification.source_contract,
                )
                return [DispatchOutcome.DISCARDED]

            try:
                payload: PriceUpdateEmitted = decode_payload(notification.payload)
            except PayloadDecodeError as exc:
                self._discard(
                    "undecodable payload from %s: %s",
                    notification.source_contract,
                    exc,
                )
                return [DispatchOutcome.DISCARDED]

            if self._destination is None:
                self._no_destination += 1
                logger.error(
                    "No destination configured; round %d not relayed",
                    payload.round_id,
                )
                return [DispatchOutcome.NO_DESTINATION]

            if payload.destination_chain_id != self._destination[0]:
                self._discard(
                    "round %d addressed to chain %d, destination is chain %d",
                    payload.round_id,
                    payload.destination_chain_id,
                    self._destination[0],
                )
                return [DispatchOutcome.DISCARDED]

            destination: tuple[int, str] = self._destination
            return [
                self._dispatch(payload, sub, destination, current)
                for sub in matches
            ]

    def process_pending(
        self,
        max_events: int = 100,
        now: int | None = None,
    ) -> list[DispatchOutcome]:
        """Drain up to ``max_events`` notifications from the channel.

        Each notification is handled in isolation: an exception from the
        handler (an observer or a pluggable policy) is logged, counted
        and reported as ``HANDLER_ERROR``, and the rest of the batch
        still runs.
        """
        outcomes: list[DispatchOutcome] = []
        for notification in self._channel.poll(max_events=max_events):
            try:
                outcomes.extend(self.on_notification(notification, now=now))
            except Exception:
                self._log_handler_error(notification)
                outcomes.append(DispatchOutcome.HANDLER_ERROR)
        return outcomes

    def _dispatch(
        self,
        payload: PriceUpdateEmitted,
        subscription: Subscription,
        destination: tuple[int, str],
        now: int,
    ) -> DispatchOutcome:
        confidence: int = self._confidence(payload.updated_at, now, self._state)
        decision: RelayDecision = classify_confidence(
            confidence,
            min_threshold=self._config.min_confidence_threshold,
            max_threshold=self._config.max_confidence_threshold,
        )

        if decision is RelayDecision.HEAL:
            self._state = record_heal(
                self._state,
                payload.updated_at,
                now,
                drift_tolerance=self._config.drift_tolerance_seconds,
            )
            self._healed += 1
            logger.warning(
                "Round %d withheld: confidence %d bps < %d (drift=%ds, "
                "healing attempts=%d)",
                payload.round_id,
                confidence,
                self._config.min_confidence_threshold,
                self._state.cumulative_drift,
                self._state.healing_attempts,
            )
            return DispatchOutcome.HEALED
        if decision is RelayDecision.DEGRADED:
            self._degraded += 1
            logger.warning(
                "Relaying round %d with degraded confidence %d bps",
                payload.round_id,
                confidence,
            )

        endpoint: DestinationEndpoint | None = self._endpoints.get(destination)
        if endpoint is None:
            self._no_destination += 1
            logger.error(
                "No endpoint registered for chain=%d contract=%s",
                *destination,
            )
            return DispatchOutcome.NO_DESTINATION

        return self._deliver(endpoint, payload, subscription, destination, now)

    def _deliver(
        self,
        endpoint: DestinationEndpoint,
        payload: PriceUpdateEmitted,
        subscription: Subscription,
        destination: tuple[int, str],
        now: int,
    ) -> DispatchOutcome:
        last_error: Exception | None = None
        attempts: int = self._retry.max_attempts
        for attempt in range(1, attempts + 1):
            delay: float = self._retry.delay_before(attempt)
            if delay > 0:
                self._sleep(delay)
            if attempt > 1:
                self._retries += 1
            try:
                endpoint.update_price(
                    caller=self._relayer_id,
                    round_id=payload.round_id,
                    answer=payload.answer,
                    started_at=payload.updated_at,
                    updated_at=payload.updated_at,
                    answered_in_round=payload.round_id,
                    decimals=payload.decimals,
                    description=payload.description,
                )
            except FeedRelayError as exc:
                self._rejected += 1
                logger.warning(
                    "Destination rejected round %d (subscription %d): %s (%s)",
                    payload.round_id,
                    subscription.subscription_id,
                    exc.kind.value,
                    exc,
                )
                return DispatchOutcome.REJECTED
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Relay attempt %d/%d for round %d failed: %r",
                    attempt,
                    attempts,
                    payload.round_id,
                    exc,
                )
                continue

            self._state = record_relay(
                self._state,
                updated_at=payload.updated_at,
                now=now,
                drift_tolerance=self._config.drift_tolerance_seconds,
                drift_healing_threshold=self._config.drift_healing_threshold,
            )
            self._relayed += 1
            logger.info(
                "Relayed round %d answer=%d (attempt %d, subscription %d)",
                payload.round_id,
                payload.answer,
                attempt,
                subscription.subscription_id,
            )
            return DispatchOutcome.RELAYED

        self._exhausted += 1
        chain_id, contract_id = destination
        logger.error(
            "Dropping round %d after %d attempts: %r",
            payload.round_id,
            attempts,
            last_error,
        )
        self._emit(
            DispatchFailed(
                round_id=payload.round_id,
                answer=payload.answer,
                destination_chain_id=chain_id,
                destination_contract=contract_id,
                attempts=attempts,
                last_error=repr(last_error),
            ),
        )
        return DispatchOutcome.EXHAUSTED

    def _log_handler_error(self, notification: Notification) -> None:
        with self._lock:
            self._handler_errors += 1
            count: int = self._handler_errors
        if count <= _LOG_FIRST_N:
            logger.exception(
                "Handler error for notification from chain=%d contract=%s",
                notification.source_chain_id,
                notification.source_contract,
            )
        elif count % _LOG_EVERY_N == 0:
            logger.error(
                "Handler error (total %d) for notification from %s",
                count,
                notification.source_contract,
            )

    def _discard(self, msg: str, *args: object) -> None:
        self._discarded += 1
        count: int = self._discarded
        if count <= _LOG_FIRST_N:
            logger.warning("Discarded notification: " + msg, *args)
        elif count % _LOG_EVERY_N == 0:
            logger.warning(
                "Discarded notification (total %d): " + msg, count, *args,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def channel(self) -> NotificationChannel[Notification]:
        return self._channel

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        return tuple(self._subscriptions)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def destination(self) -> tuple[int, str] | None:
        """Configured ``(chain_id, contract_id)``, or ``None``."""
        return self._destination

    @property
    def temporal_state(self) -> TemporalState:
        return self._state

    @property
    def relayer_id(self) -> str:
        return self._relayer_id

    def stats(self) -> DispatcherStats:
        """Counter snapshot."""
        with self._lock:
            return DispatcherStats(
                notifications_received=self._received,
                discarded=self._discarded,
                relayed=self._relayed,
                degraded=self._degraded,
                healed=self._healed,
                rejected=self._rejected,
                exhausted=self._exhausted,
                retries=self._retries,
                no_destination=self._no_destination,
                handler_errors=self._handler_errors,
                subscriptions=len(self._subscriptions),
                active_subscriptions=sum(1 for s in self._subscriptions if s.active),
                pending=len(self._channel),
            )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _emit(self, event: RelayEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)
