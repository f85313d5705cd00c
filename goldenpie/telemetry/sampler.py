"""
Telemetry Sampler

One pass over every tracked counter per tick, producing an immutable
``Snapshot``. A failed read never aborts the pass; the counter falls back
according to the configured read-failure policy and is listed in
``Snapshot.failed``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional, Sequence

from .channel import ChannelError, MemoryChannel

logger = logging.getLogger(__name__)


class CounterKind(str, Enum):
    """Per-slot counters read from emulator memory."""
    KILLS = "kills"
    HEADSHOTS = "headshots"
    DEATHS = "deaths"


class ReadFailurePolicy(str, Enum):
    LAST_KNOWN = "last_known"
    ZERO = "zero"


def counter_name(slot: int, kind: CounterKind) -> str:
    return f"player{slot}_{CounterKind(kind).value}"


@dataclass(frozen=True)
class CounterSpec:
    """One tracked counter: where it lives and what it means."""
    name: str
    slot: int
    kind: CounterKind
    address: int


def build_counter_specs(addresses: Mapping[str, str]) -> List[CounterSpec]:
    """
    Turn ``{"player1_kills": "80079F0C", ...}`` into ordered specs.

    Order is fixed: kills, headshots, deaths, each for slots ascending.
    Unknown names are rejected rather than silently ignored.
    """
    parsed: Dict[str, CounterSpec] = {}
    for name, raw in addresses.items():
        prefix, _, kind = name.partition("_")
        if not prefix.startswith("player") or not prefix[6:].isdigit():
            raise ValueError(f"Counter name must look like player<N>_<kind>: {name}")
        slot = int(prefix[6:])
        address = int(str(raw), 16) if isinstance(raw, str) else int(raw)
        parsed[name] = CounterSpec(name, slot, CounterKind(kind), address)

    kind_order = {kind: i for i, kind in enumerate(CounterKind)}
    return sorted(parsed.values(), key=lambda s: (kind_order[s.kind], s.slot))


@dataclass(frozen=True)
class Snapshot:
    """Counter values read during one tick. Never mutated after creation."""
    values: Mapping[str, int]
    tick: int = 0
    timestamp: float = field(default_factory=time.time)
    failed: FrozenSet[str] = frozenset()

    def __post_init__(self):
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))
        object.__setattr__(self, "failed", frozenset(self.failed))

    def get(self, name: str, default: int = 0) -> int:
        return self.values.get(name, default)

    def counter(self, slot: int, kind: CounterKind) -> int:
        return self.values.get(counter_name(slot, kind), 0)

    @property
    def all_failed(self) -> bool:
        return bool(self.values) and len(self.failed) == len(self.values)

    def to_dict(self) -> Dict:
        return {
            "tick": self.tick,
            "timestamp": self.timestamp,
            "values": dict(self.values),
            "failed": sorted(self.failed),
        }


class TelemetrySampler:
    """Reads each counter in order through one MemoryChannel."""

    def __init__(
        self,
        channel: MemoryChannel,
        counters: Sequence[CounterSpec],
        byte_width: int = 1,
        failure_policy: ReadFailurePolicy = ReadFailurePolicy.LAST_KNOWN,
    ):
        self.channel = channel
        self.counters = list(counters)
        self.byte_width = byte_width
        self.failure_policy = ReadFailurePolicy(failure_policy)

        self._last_known: Dict[str, int] = {}
        self._samples = 0
        self._failed_reads = 0

    def reset(self) -> None:
        """Forget last-known values (new game session)."""
        self._last_known.clear()

    def _fallback(self, name: str) -> int:
        if self.failure_policy is ReadFailurePolicy.ZERO:
            return 0
        return self._last_known.get(name, 0)

    async def sample(self, tick: int = 0) -> Snapshot:
        values: Dict[str, int] = {}
        failed = set()

        # Sequential: the channel cannot correlate concurrent reads.
        for spec in self.counters:
            try:
                value = await self.channel.read(spec.address, self.byte_width)
            except ChannelError as e:
                logger.debug(f"Read failed for {spec.name} @ {spec.address:X}: {e}")
                failed.add(spec.name)
                values[spec.name] = self._fallback(spec.name)
                continue
            values[spec.name] = value
            self._last_known[spec.name] = value

        self._samples += 1
        self._failed_reads += len(failed)
        return Snapshot(values=values, tick=tick, timestamp=time.time(), failed=frozenset(failed))

    def get_stats(self) -> Dict:
        return {
            "counters": len(self.counters),
            "samples": self._samples,
            "failed_reads": self._failed_reads,
            "failure_policy": self.failure_policy.value,
        }
