"""
Reward Dispatcher
=================

Turns accepted reward events into unit payments.

Ordering contract:
    1. ``advance(snapshot)`` runs detection against the payment baseline and
       replaces that baseline synchronously, before anything is awaited.
    2. ``dispatch(event, recipient)`` then pays one unit at a time.

Because the baseline moves first, a tick that fires while an earlier
payment is still in flight sees ``delta == 0`` for the same counters and
cannot pay twice. The flip side: a failed payment is not retried. The game
event counts as consumed, and the failure is recorded in a per-slot,
player-clearable error log and pushed to observers.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, List, Optional

from goldenpie.config import RewardConfig
from goldenpie.payments import PaymentProvider, PaymentResult

from .detector import Baseline, EventDetector, RewardEvent, RewardKind
from .events import EventBus
from .sampler import Snapshot

logger = logging.getLogger(__name__)

ProviderResolver = Callable[[], Optional[PaymentProvider]]


@dataclass(frozen=True)
class PaymentAttempt:
    """One unit payment and its outcome."""
    slot: int
    kind: RewardKind
    amount: int
    recipient: str
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: float = 0.0

    @property
    def outcome(self) -> str:
        return "success" if self.success else "failure"

    def to_dict(self) -> Dict:
        return {
            "slot": self.slot,
            "kind": self.kind.value,
            "amount": self.amount,
            "recipient": self.recipient,
            "outcome": self.outcome,
            "transaction_id": self.transaction_id,
            "error": self.error,
            "timestamp": self.timestamp,
        }


class PaymentErrorLog:
    """Failed attempts per slot, until the player clears them."""

    def __init__(self, slots: Iterable[int] = (1, 2, 3, 4)):
        self._errors: Dict[int, List[PaymentAttempt]] = {slot: [] for slot in slots}

    def append(self, attempt: PaymentAttempt) -> None:
        self._errors.setdefault(attempt.slot, []).append(attempt)

    def get(self, slot: int) -> List[PaymentAttempt]:
        return list(self._errors.get(slot, []))

    def clear(self, slot: int) -> int:
        cleared = len(self._errors.get(slot, []))
        self._errors[slot] = []
        return cleared

    def counts(self) -> Dict[int, int]:
        return {slot: len(errors) for slot, errors in self._errors.items()}


class RewardDispatcher:
    """Owns the payment baseline and issues unit payments."""

    def __init__(
        self,
        detector: EventDetector,
        provider_resolver: ProviderResolver,
        rewards: Optional[RewardConfig] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        history_size: int = 500,
    ):
        self.detector = detector
        self.provider_resolver = provider_resolver
        self.rewards = rewards or RewardConfig()
        self.bus = bus
        self._clock = clock

        self.paid_baseline = Baseline.zero(detector.slots)
        self.errors = PaymentErrorLog(detector.slots)
        self.earnings: Dict[int, int] = {slot: 0 for slot in detector.slots}
        self.attempts: Deque[PaymentAttempt] = deque(maxlen=history_size)
        self._in_flight = 0

    def reset(self) -> None:
        """New game session: payment baseline back to zero."""
        self.paid_baseline = Baseline.zero(self.detector.slots)

    def advance(self, snapshot: Snapshot) -> List[RewardEvent]:
        """
        Consume the snapshot against the payment baseline.

        Synchronous: the baseline is replaced before the caller
        can await anything. Suspect jumps are consumed without events.
        """
        detection = self.detector.detect(self.paid_baseline, snapshot)
        self.paid_baseline = detection.baseline

        for obs in detection.suspects:
            logger.warning(
                f"Large {obs.kind.value} jump (+{obs.delta}) for Spook {obs.slot} - "
                f"skipping payment (likely false positive)"
            )
        return detection.events

    def reward_amount(self, kind: RewardKind) -> int:
        if kind is RewardKind.KILL:
            return self.rewards.kill_reward or 1
        return self.rewards.headshot_reward or 1

    def memo(self, kind: RewardKind, slot: int) -> str:
        template = self.rewards.kill_memo if kind is RewardKind.KILL else self.rewards.headshot_memo
        return template.format(slot=slot)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def dispatch(self, event: RewardEvent, recipient: Optional[str]) -> List[PaymentAttempt]:
        """
        Pay ``event.unit_count`` units to ``recipient``, sequentially.

        No-op when the recipient is unbound or no provider is configured.
        The provider is resolved once for the whole event.
        """
        if not recipient:
            return []

        provider = self.provider_resolver()
        if provider is None:
            logger.debug(f"No payment provider configured; skipping {event.kind.value} for Spook {event.slot}")
            return []

        amount = self.reward_amount(event.kind)
        memo = self.memo(event.kind, event.slot)
        attempts: List[PaymentAttempt] = []

        logger.info(f"Processing {event.unit_count} {event.kind.value} reward(s) for Spook {event.slot}")

        self._in_flight += 1
        try:
            for _ in range(event.unit_count):
                try:
                    result = await provider.send(recipient, amount, memo)
                except Exception as e:
                    logger.error(f"Payment provider {provider.name} raised: {e}", exc_info=True)
                    result = PaymentResult.failed(str(e) or type(e).__name__)

                attempt = PaymentAttempt(
                    slot=event.slot,
                    kind=event.kind,
                    amount=amount,
                    recipient=recipient,
                    success=result.success,
                    transaction_id=result.transaction_id,
                    error=result.error,
                    timestamp=self._clock(),
                )
                self._record(attempt)
                attempts.append(attempt)
        finally:
            self._in_flight -= 1

        return attempts

    def _record(self, attempt: PaymentAttempt) -> None:
        self.attempts.append(attempt)

        if attempt.success:
            self.earnings[attempt.slot] = self.earnings.get(attempt.slot, 0) + attempt.amount
            if self.bus:
                self.bus.publish("payment", slot=attempt.slot, attempt=attempt.to_dict())
            return

        logger.error(f"Failed to send {attempt.kind.value} reward to Spook {attempt.slot}: {attempt.error}")
        self.errors.append(attempt)
        if self.bus:
            self.bus.publish("payment-error", slot=attempt.slot, error=attempt.to_dict())

    def get_stats(self) -> Dict:
        succeeded = sum(1 for a in self.attempts if a.success)
        return {
            "attempts": len(self.attempts),
            "succeeded": succeeded,
            "failed": len(self.attempts) - succeeded,
            "in_flight": self._in_flight,
            "earnings": dict(self.earnings),
            "errors": self.errors.counts(),
        }
