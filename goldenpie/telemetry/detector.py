"""
Event Detector
==============

Turns counter deltas into reward events.

For each slot and each rewarded kind, ``delta = current - baseline``:

    delta <  0                 reset     baseline := current, no event
    delta == 0                 none      baseline unchanged
    0 < delta < threshold      increment one RewardEvent(unit_count=delta)
    delta >= threshold         suspect   no event, baseline := current

A counter whose read failed this tick is skipped: whatever fallback value
the sampler filled in is for display only and never moves a baseline.

A suspect jump is consumed by moving the baseline, so it cannot re-trigger
on the next tick. ``detect`` is pure: it returns a new ``Baseline`` instead
of touching the one it was given. Callers keep one baseline per consumer
(event logging and payment each own theirs).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Tuple

from .sampler import CounterKind, Snapshot, counter_name

JUMP_THRESHOLD = 10


class RewardKind(str, Enum):
    KILL = "kill"
    HEADSHOT = "headshot"

    @property
    def counter(self) -> CounterKind:
        return CounterKind.KILLS if self is RewardKind.KILL else CounterKind.HEADSHOTS


class DeltaClass(Enum):
    NONE = "none"
    INCREMENT = "increment"
    SUSPECT_JUMP = "suspect-jump"
    RESET = "reset"


@dataclass(frozen=True)
class RewardEvent:
    """``unit_count`` discrete rewardable occurrences for one slot."""
    slot: int
    kind: RewardKind
    unit_count: int
    tick: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return {
            "slot": self.slot,
            "kind": self.kind.value,
            "unit_count": self.unit_count,
            "tick": self.tick,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Observation:
    """A non-zero delta and how it was classified."""
    slot: int
    kind: RewardKind
    previous: int
    current: int
    classification: DeltaClass

    @property
    def delta(self) -> int:
        return self.current - self.previous


@dataclass(frozen=True)
class Baseline:
    """Last accepted counter value per (slot, kind)."""
    counts: Mapping[Tuple[int, RewardKind], int]

    def __post_init__(self):
        object.__setattr__(self, "counts", MappingProxyType(dict(self.counts)))

    @classmethod
    def zero(cls, slots: Iterable[int]) -> "Baseline":
        return cls({(slot, kind): 0 for slot in slots for kind in RewardKind})

    def get(self, slot: int, kind: RewardKind) -> int:
        return self.counts.get((slot, kind), 0)

    def updated(self, changes: Mapping[Tuple[int, RewardKind], int]) -> "Baseline":
        if not changes:
            return self
        counts = dict(self.counts)
        counts.update(changes)
        return Baseline(counts)


@dataclass
class Detection:
    """Result of one ``detect`` call."""
    events: List[RewardEvent]
    observations: List[Observation]
    baseline: Baseline

    @property
    def suspects(self) -> List[Observation]:
        return [o for o in self.observations if o.classification is DeltaClass.SUSPECT_JUMP]

    @property
    def resets(self) -> List[Observation]:
        return [o for o in self.observations if o.classification is DeltaClass.RESET]


class EventDetector:
    """Classifies per-slot deltas against a baseline."""

    def __init__(self, slots: Iterable[int] = (1, 2, 3, 4), jump_threshold: int = JUMP_THRESHOLD):
        if jump_threshold < 2:
            raise ValueError("jump_threshold must be at least 2")
        self.slots = tuple(slots)
        self.jump_threshold = jump_threshold

    def classify(self, delta: int) -> DeltaClass:
        if delta < 0:
            return DeltaClass.RESET
        if delta == 0:
            return DeltaClass.NONE
        if delta >= self.jump_threshold:
            return DeltaClass.SUSPECT_JUMP
        return DeltaClass.INCREMENT

    def detect(self, baseline: Baseline, snapshot: Snapshot) -> Detection:
        events: List[RewardEvent] = []
        observations: List[Observation] = []
        changes: Dict[Tuple[int, RewardKind], int] = {}

        for slot in self.slots:
            for kind in RewardKind:
                if counter_name(slot, kind.counter) in snapshot.failed:
                    continue
                previous = baseline.get(slot, kind)
                current = snapshot.counter(slot, kind.counter)
                classification = self.classify(current - previous)
                if classification is DeltaClass.NONE:
                    continue

                observations.append(Observation(slot, kind, previous, current, classification))
                changes[(slot, kind)] = current
                if classification is DeltaClass.INCREMENT:
                    events.append(RewardEvent(
                        slot=slot,
                        kind=kind,
                        unit_count=current - previous,
                        tick=snapshot.tick,
                        timestamp=snapshot.timestamp,
                    ))

        return Detection(events=events, observations=observations, baseline=baseline.updated(changes))
