"""
Reward Engine

Wires the telemetry pipeline for one game session and owns everything a
session needs outside the per-tick path: the authenticated player registry,
auto-load style timers, payment error lists and earnings.

Nothing in this package schedules a timer itself. ``schedule_timer`` is the
hook a game launcher uses for its auto-load delays, and ``stop`` cancels
whatever it left pending.

    engine = RewardEngine(config)
    engine.set_authenticated_players({1: "alice@example.com"})
    await engine.start()
    ...
    await engine.stop()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from .config import GoldenPieConfig, get_config
from .payments import PaymentProvider, resolve_provider
from .telemetry.channel import ChannelError, MemoryChannel
from .telemetry.cooldown import CooldownGate
from .telemetry.detector import EventDetector
from .telemetry.dispatcher import PaymentAttempt, RewardDispatcher
from .telemetry.events import EventBus
from .telemetry.sampler import ReadFailurePolicy, TelemetrySampler, build_counter_specs
from .telemetry.scheduler import ParticipantSlot, PollLoop

logger = logging.getLogger(__name__)

ProviderResolver = Callable[[], Optional[PaymentProvider]]


class RewardEngine:
    """One emulator, up to four players, one poll loop."""

    def __init__(
        self,
        config: Optional[GoldenPieConfig] = None,
        channel: Optional[MemoryChannel] = None,
        provider_resolver: Optional[ProviderResolver] = None,
        bus: Optional[EventBus] = None,
    ):
        self.config = config or get_config()
        cfg = self.config

        self.bus = bus or EventBus()
        self.channel = channel or MemoryChannel(
            host=cfg.channel.host,
            port=cfg.channel.port,
            read_timeout=cfg.channel.read_timeout,
            command_timeout=cfg.channel.command_timeout,
        )
        # Settings are re-read per dispatch so provider changes apply mid-session
        self.provider_resolver = provider_resolver or (lambda: resolve_provider(self.config.payments))

        self.detector = EventDetector(jump_threshold=cfg.poll.jump_threshold)
        self.sampler = TelemetrySampler(
            self.channel,
            build_counter_specs(cfg.counters.addresses),
            byte_width=cfg.channel.byte_width,
            failure_policy=ReadFailurePolicy(cfg.poll.read_failure_policy),
        )
        self.gate = CooldownGate(duration=cfg.poll.cooldown)
        self.dispatcher = RewardDispatcher(
            self.detector,
            self.provider_resolver,
            rewards=cfg.rewards,
            bus=self.bus,
        )
        self.players: Dict[int, str] = {}
        self.loop = PollLoop(
            self.sampler,
            self.detector,
            self.gate,
            self.dispatcher,
            recipients=self.players.get,
            bus=self.bus,
            interval=cfg.poll.interval,
            connectivity_warning_after=cfg.poll.connectivity_warning_after,
            startup_delay=cfg.poll.startup_delay,
        )

        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._timer_tasks: set = set()
        self._sessions = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self.loop.running

    async def probe(self) -> Optional[str]:
        """Ask the emulator for its VERSION. None when unreachable."""
        try:
            version = await self.channel.send_command("VERSION")
        except ChannelError as e:
            logger.warning(f"Emulator did not answer VERSION ({e}) - is the network command interface enabled?")
            return None
        logger.info(f"Emulator reachable: {version}")
        return version

    async def start(self) -> bool:
        """Start a game session. Returns False if one is already running."""
        if self.running:
            logger.info("Reward engine already running")
            return False

        self.loop.reset()
        self.gate.reset()
        if self.config.poll.probe_on_start:
            await self.probe()

        await self.loop.start()
        self._sessions += 1
        logger.info(f"Reward engine started ({len(self.players)} authenticated player(s))")
        self.bus.publish("session", status="started", players=self.authenticated_players())
        return True

    async def stop(self, drain_timeout: Optional[float] = 5.0) -> bool:
        """
        Tear down the session. Safe to call when nothing is running.

        In-flight payments are given ``drain_timeout`` seconds to settle and
        are never cancelled.
        """
        was_running = self.running
        self.cancel_timers()
        await self.loop.stop()

        if self.loop.pending_dispatches:
            if not await self.loop.drain(drain_timeout):
                logger.warning(f"{self.loop.pending_dispatches} payment(s) still in flight after stop")

        await self.channel.close()
        self.gate.reset()

        if was_running:
            logger.info("Reward engine stopped")
            self.bus.publish("session", status="stopped")
        return was_running

    # ------------------------------------------------------------------
    # Players
    # ------------------------------------------------------------------

    def set_authenticated_players(self, players: Mapping[int, Optional[str]]) -> None:
        """Replace the whole registry. Falsy addresses unbind the slot."""
        self.players.clear()
        for slot, address in players.items():
            slot = int(slot)
            if slot not in self.detector.slots:
                raise ValueError(f"Unknown player slot: {slot}")
            if address:
                self.players[slot] = address
        logger.info(f"Authenticated players updated: {sorted(self.players)}")

    def bind_player(self, slot: int, address: str) -> None:
        if slot not in self.detector.slots:
            raise ValueError(f"Unknown player slot: {slot}")
        self.players[slot] = address
        logger.info(f"Spook {slot} bound to {address}")

    def unbind_player(self, slot: int) -> bool:
        return self.players.pop(slot, None) is not None

    def authenticated_players(self) -> Dict[int, str]:
        return dict(self.players)

    # ------------------------------------------------------------------
    # Errors and earnings
    # ------------------------------------------------------------------

    def payment_errors(self, slot: int) -> List[PaymentAttempt]:
        return self.dispatcher.errors.get(slot)

    def clear_payment_errors(self, slot: int) -> int:
        cleared = self.dispatcher.errors.clear(slot)
        if cleared:
            logger.info(f"Cleared {cleared} payment error(s) for Spook {slot}")
        return cleared

    def earnings(self, slot: Optional[int] = None) -> Any:
        if slot is None:
            return dict(self.dispatcher.earnings)
        return self.dispatcher.earnings.get(slot, 0)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def schedule_timer(self, name: str, delay: float, callback: Callable[[], Any]) -> None:
        """Run ``callback`` after ``delay`` seconds unless cancelled first. Replaces a timer of the same name."""
        self.cancel_timer(name)
        loop = asyncio.get_running_loop()
        self._timers[name] = loop.call_later(delay, self._fire_timer, name, callback)

    def _fire_timer(self, name: str, callback: Callable[[], Any]) -> None:
        self._timers.pop(name, None)
        try:
            result = callback()
        except Exception as e:
            logger.error(f"Timer {name} failed: {e}", exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._timer_tasks.add(task)
            task.add_done_callback(self._timer_tasks.discard)

    def cancel_timer(self, name: str) -> bool:
        handle = self._timers.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_timers(self) -> int:
        count = len(self._timers)
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for task in list(self._timer_tasks):
            task.cancel()
        return count

    @property
    def pending_timers(self) -> List[str]:
        return sorted(self._timers)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def participants(self) -> List[ParticipantSlot]:
        return self.loop.participants()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "sessions": self._sessions,
            "players": self.authenticated_players(),
            "loop": self.loop.get_stats(),
            "sampler": self.sampler.get_stats(),
            "channel": self.channel.get_stats(),
            "payments": self.dispatcher.get_stats(),
            "timers": self.pending_timers,
        }
