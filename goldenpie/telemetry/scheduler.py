"""
Poll Loop

The heartbeat of the reward engine. Once per interval:

    sample -> detect (logging baseline) -> advance (payment baseline)
           -> cooldown gate -> broadcast + detached payment dispatch

Sampling and detection run to completion inside the tick. Payments are
spawned as detached tasks so a slow provider never delays the next tick;
the dispatcher's baseline-first ordering keeps overlapping ticks from
paying the same increase twice.

Usage:
    loop = PollLoop(sampler, detector, gate, dispatcher, recipients=players.get)
    await loop.start()
    ...
    await loop.stop()
"""

from __future__ import annotations

import asyncio
import time
import logging
from dataclasses import dataclass, field
from typing import Optional, Callable, Awaitable, List, Dict, Any, Set
from enum import Enum

from .cooldown import CooldownGate
from .detector import Baseline, Detection, EventDetector, RewardKind
from .dispatcher import RewardDispatcher
from .events import EventBus
from .sampler import CounterKind, Snapshot, TelemetrySampler

logger = logging.getLogger(__name__)


class LoopState(Enum):
    """Poll loop states."""
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class TickMetrics:
    """Metrics for a single poll tick."""
    tick_number: int
    timestamp: float
    duration_ms: float
    admitted: bool
    events: int
    suspects: int
    resets: int
    failed_reads: int
    dispatches: int
    warnings: List[str] = field(default_factory=list)


@dataclass
class LoopStats:
    """Current state of the poll loop."""
    loop_state: LoopState = LoopState.INITIALIZING
    tick_count: int = 0
    start_time: float = 0.0
    last_tick_time: float = 0.0
    avg_tick_duration_ms: float = 0.0
    tick_errors: int = 0
    consecutive_failed_samples: int = 0
    connected: Optional[bool] = None


@dataclass(frozen=True)
class ParticipantSlot:
    """Read-only view of one slot's counters and both baselines."""
    slot: int
    kills: int
    headshots: int
    deaths: int
    last_kills: int
    last_headshots: int
    last_paid_kills: int
    last_paid_headshots: int
    address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


# Type for tick callbacks
TickCallback = Callable[[TickMetrics], Awaitable[None]]
RecipientLookup = Callable[[int], Optional[str]]


class PollLoop:
    """Fixed-interval telemetry poll loop."""

    def __init__(
        self,
        sampler: TelemetrySampler,
        detector: EventDetector,
        gate: CooldownGate,
        dispatcher: RewardDispatcher,
        recipients: RecipientLookup,
        bus: Optional[EventBus] = None,
        interval: float = 1.0,
        connectivity_warning_after: int = 3,
        startup_delay: float = 0.0,
    ):
        self.sampler = sampler
        self.detector = detector
        self.gate = gate
        self.dispatcher = dispatcher
        self.recipients = recipients
        self.bus = bus or EventBus()
        self.interval = interval
        self.connectivity_warning_after = connectivity_warning_after
        self.startup_delay = startup_delay

        self.state = LoopStats()
        self.log_baseline = Baseline.zero(detector.slots)
        self.last_snapshot: Optional[Snapshot] = None

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._dispatch_tasks: Set[asyncio.Task] = set()

        # Tick callbacks (for metrics, logging, etc.)
        self._tick_callbacks: List[TickCallback] = []

        # Duration tracking for averaging
        self._recent_durations: List[float] = []
        self._max_duration_samples = 100

    def register_tick_callback(self, callback: TickCallback) -> None:
        """Register a callback to be called after each tick."""
        self._tick_callbacks.append(callback)

    async def _invoke_callbacks(self, metrics: TickMetrics) -> None:
        for callback in self._tick_callbacks:
            try:
                await callback(metrics)
            except Exception as e:
                logger.error(f"Tick callback error: {e}")

    def _update_avg_duration(self, duration_ms: float) -> None:
        self._recent_durations.append(duration_ms)
        if len(self._recent_durations) > self._max_duration_samples:
            self._recent_durations.pop(0)
        self.state.avg_tick_duration_ms = sum(self._recent_durations) / len(self._recent_durations)

    def reset(self) -> None:
        """Fresh game session: both baselines and the cooldown start over."""
        self.log_baseline = Baseline.zero(self.detector.slots)
        self.dispatcher.reset()
        self.sampler.reset()
        self.last_snapshot = None
        self.state = LoopStats()

    async def _tick(self) -> TickMetrics:
        """
        Execute a single poll tick.

        Returns:
            TickMetrics with all measured values
        """
        tick_start = time.perf_counter()
        tick_number = self.state.tick_count + 1
        warnings: List[str] = []

        # 1. Read every counter (sequential on the channel)
        snapshot = await self.sampler.sample(tick=tick_number)
        self.last_snapshot = snapshot
        self._track_connectivity(snapshot, warnings)

        # 2. Both baselines advance regardless of the gate
        detection = self.detector.detect(self.log_baseline, snapshot)
        self.log_baseline = detection.baseline
        payment_events = self.dispatcher.advance(snapshot)

        # 3. Cooldown decides whether anything leaves the pipeline
        admitted = self.gate.admit()
        dispatches = 0
        if admitted:
            self.bus.publish("snapshot", snapshot=snapshot.to_dict())
            self._log_detection(detection, warnings)
            for event in payment_events:
                recipient = self.recipients(event.slot)
                if recipient:
                    self._spawn_dispatch(event, recipient)
                    dispatches += 1
        elif detection.observations:
            logger.info(
                f"Startup cooldown active ({self.gate.remaining():.0f}s remaining) - "
                f"ignoring {len(detection.observations)} counter change(s)"
            )

        tick_end = time.perf_counter()
        duration_ms = (tick_end - tick_start) * 1000

        self.state.tick_count = tick_number
        self.state.last_tick_time = time.time()
        self._update_avg_duration(duration_ms)

        return TickMetrics(
            tick_number=tick_number,
            timestamp=snapshot.timestamp,
            duration_ms=duration_ms,
            admitted=admitted,
            events=len(detection.events) if admitted else 0,
            suspects=len(detection.suspects),
            resets=len(detection.resets),
            failed_reads=len(snapshot.failed),
            dispatches=dispatches,
            warnings=warnings,
        )

    def _log_detection(self, detection: Detection, warnings: List[str]) -> None:
        for obs in detection.suspects:
            warnings.append(
                f"Large {obs.kind.value} jump detected for Spook {obs.slot}: "
                f"+{obs.delta} (ignoring - likely false positive)"
            )
        for obs in detection.resets:
            logger.info(f"Spook {obs.slot} {obs.kind.value} counter reset {obs.previous} -> {obs.current}")

        for event in detection.events:
            recipient = self.recipients(event.slot)
            previous = detection.baseline.get(event.slot, event.kind) - event.unit_count
            logger.info(
                f"{event.kind.value.upper()} DETECTED: Spook {event.slot} "
                f"{previous} -> {previous + event.unit_count} (+{event.unit_count}) "
                f"[{recipient or 'not logged in'}]"
            )
            self.bus.publish("reward", event=event.to_dict(), recipient=recipient)

    def _track_connectivity(self, snapshot: Snapshot, warnings: List[str]) -> None:
        if snapshot.all_failed:
            self.state.consecutive_failed_samples += 1
            if (self.state.consecutive_failed_samples == self.connectivity_warning_after
                    and self.state.connected is not False):
                self.state.connected = False
                warnings.append(
                    f"No response from emulator for {self.state.consecutive_failed_samples} "
                    f"consecutive samples - check that network commands are enabled"
                )
                self.bus.publish("connectivity", connected=False,
                                 failed_samples=self.state.consecutive_failed_samples)
            return

        self.state.consecutive_failed_samples = 0
        if self.state.connected is not True:
            if self.state.connected is None:
                logger.info("Connected to emulator memory interface")
            else:
                logger.info("Emulator memory interface reachable again")
            self.state.connected = True
            self.bus.publish("connectivity", connected=True, failed_samples=0)

    def _spawn_dispatch(self, event, recipient: str) -> None:
        task = asyncio.create_task(self.dispatcher.dispatch(event, recipient))
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._on_dispatch_done)

    def _on_dispatch_done(self, task: asyncio.Task) -> None:
        self._dispatch_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Payment dispatch failed: {exc}")

    @property
    def pending_dispatches(self) -> int:
        return len(self._dispatch_tasks)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight payment dispatches. True if all finished."""
        if not self._dispatch_tasks:
            return True
        done, pending = await asyncio.wait(set(self._dispatch_tasks), timeout=timeout)
        return not pending

    def participants(self) -> List[ParticipantSlot]:
        snapshot = self.last_snapshot
        paid = self.dispatcher.paid_baseline
        views = []
        for slot in self.detector.slots:
            views.append(ParticipantSlot(
                slot=slot,
                kills=snapshot.counter(slot, CounterKind.KILLS) if snapshot else 0,
                headshots=snapshot.counter(slot, CounterKind.HEADSHOTS) if snapshot else 0,
                deaths=snapshot.counter(slot, CounterKind.DEATHS) if snapshot else 0,
                last_kills=self.log_baseline.get(slot, RewardKind.KILL),
                last_headshots=self.log_baseline.get(slot, RewardKind.HEADSHOT),
                last_paid_kills=paid.get(slot, RewardKind.KILL),
                last_paid_headshots=paid.get(slot, RewardKind.HEADSHOT),
                address=self.recipients(slot),
            ))
        return views

    async def run(self) -> None:
        """
        Run the poll loop until stop() is called.

        A failing tick is logged and the loop carries on.
        """
        self._running = True
        self.state.loop_state = LoopState.RUNNING
        self.state.start_time = time.time()

        if self.startup_delay > 0:
            await asyncio.sleep(self.startup_delay)

        self.gate.start()
        logger.info(f"Poll loop starting every {self.interval:.2f}s "
                    f"(startup cooldown {self.gate.duration:.0f}s)")

        while self._running:
            try:
                tick_start = time.perf_counter()

                metrics = await self._tick()
                self.state.loop_state = LoopState.RUNNING

                for warning in metrics.warnings:
                    logger.warning(warning)

                await self._invoke_callbacks(metrics)

                elapsed = time.perf_counter() - tick_start
                sleep_time = max(0, self.interval - elapsed)
                if sleep_time > 0:
                    await asyncio.sleep(sleep_time)
                else:
                    logger.warning(
                        f"Tick overrun: {elapsed*1000:.2f}ms > {self.interval*1000:.2f}ms"
                    )

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Tick error: {e}", exc_info=True)
                self.state.loop_state = LoopState.ERROR
                self.state.tick_errors += 1
                self.bus.publish("session", status="error", error=str(e))
                await asyncio.sleep(self.interval)

        self.state.loop_state = LoopState.STOPPED
        logger.info("Poll loop stopped")

    async def start(self) -> None:
        """Start the poll loop as a background task."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Stop the poll loop. Safe to call when not running."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.state.loop_state = LoopState.STOPPED

    @property
    def running(self) -> bool:
        return self._task is not None

    def get_stats(self) -> Dict[str, Any]:
        uptime = time.time() - self.state.start_time if self.state.start_time else 0
        return {
            "state": self.state.loop_state.value,
            "tick_count": self.state.tick_count,
            "uptime_seconds": uptime,
            "avg_tick_duration_ms": self.state.avg_tick_duration_ms,
            "tick_errors": self.state.tick_errors,
            "connected": self.state.connected,
            "cooldown_remaining": self.gate.remaining(),
            "pending_dispatches": self.pending_dispatches,
        }
