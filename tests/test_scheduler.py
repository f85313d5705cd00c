"""
Tests for the poll loop: tick pipeline, cooldown, connectivity, lifecycle.
"""

import pytest

from conftest import FakeChannel, HangingProvider

from goldenpie.config import default_counter_addresses
from goldenpie.payments import MockProvider
from goldenpie.telemetry.cooldown import CooldownGate
from goldenpie.telemetry.detector import EventDetector, RewardKind
from goldenpie.telemetry.dispatcher import RewardDispatcher
from goldenpie.telemetry.events import EventBus
from goldenpie.telemetry.sampler import ReadFailurePolicy, TelemetrySampler, build_counter_specs
from goldenpie.telemetry.scheduler import LoopState, PollLoop


def build_loop(channel, provider, clock, players=None, cooldown=10.0, **kwargs):
    detector = EventDetector()
    bus = EventBus()
    players = {1: "p1@example.com"} if players is None else players
    loop = PollLoop(
        TelemetrySampler(channel, build_counter_specs(default_counter_addresses())),
        detector,
        CooldownGate(duration=cooldown, clock=clock),
        RewardDispatcher(detector, lambda: provider, bus=bus),
        recipients=players.get,
        bus=bus,
        **kwargs,
    )
    return loop


class TestTick:

    @pytest.mark.asyncio
    async def test_cooldown_suppresses_but_baselines_advance(self, fake_channel, mock_provider, clock):
        loop = build_loop(fake_channel, mock_provider, clock)
        loop.gate.start()

        fake_channel.set_counter("player1_kills", 3)
        metrics = await loop._tick()
        await loop.drain()

        assert metrics.admitted is False
        assert mock_provider.sent == []
        assert loop.bus.history("reward") == []
        assert loop.bus.history("snapshot") == []
        assert loop.log_baseline.get(1, RewardKind.KILL) == 3
        assert loop.dispatcher.paid_baseline.get(1, RewardKind.KILL) == 3

        # No backlog fires when the window closes
        clock.advance(10)
        metrics = await loop._tick()
        await loop.drain()
        assert metrics.admitted is True
        assert metrics.dispatches == 0
        assert mock_provider.sent == []

        fake_channel.set_counter("player1_kills", 4)
        metrics = await loop._tick()
        await loop.drain()
        assert metrics.dispatches == 1
        assert len(mock_provider.sent) == 1
        assert len(loop.bus.history("reward")) == 1

    @pytest.mark.asyncio
    async def test_end_to_end_sequence(self, fake_channel, mock_provider, clock):
        loop = build_loop(fake_channel, mock_provider, clock)

        for kills in (0, 1, 1, 3):
            fake_channel.set_counter("player1_kills", kills)
            await loop._tick()
        await loop.drain()

        rewards = loop.bus.history("reward")
        assert [r["event"]["unit_count"] for r in rewards] == [1, 2]
        assert len(mock_provider.sent) == 3
        assert all(a.kind is RewardKind.KILL for a in loop.dispatcher.attempts)

    @pytest.mark.asyncio
    async def test_slow_payment_does_not_block_or_repeat(self, fake_channel, clock):
        provider = HangingProvider()
        loop = build_loop(fake_channel, provider, clock)

        fake_channel.set_counter("player1_kills", 1)
        await loop._tick()
        assert loop.pending_dispatches == 1

        # Second tick completes while the first payment still hangs
        metrics = await loop._tick()
        assert metrics.dispatches == 0
        assert provider.calls == ["p1@example.com"]

        provider.release.set()
        assert await loop.drain(timeout=1.0)
        assert loop.pending_dispatches == 0
        assert len(loop.dispatcher.attempts) == 1

    @pytest.mark.asyncio
    async def test_unbound_slot_is_logged_not_paid(self, fake_channel, mock_provider, clock):
        loop = build_loop(fake_channel, mock_provider, clock, players={})

        fake_channel.set_counter("player2_kills", 1)
        metrics = await loop._tick()

        assert metrics.events == 1
        assert metrics.dispatches == 0
        assert loop.bus.history("reward")[0]["recipient"] is None
        assert mock_provider.sent == []

    @pytest.mark.asyncio
    async def test_suspect_jump_warns(self, fake_channel, mock_provider, clock):
        loop = build_loop(fake_channel, mock_provider, clock)

        fake_channel.set_counter("player1_kills", 25)
        metrics = await loop._tick()

        assert metrics.suspects == 1
        assert metrics.dispatches == 0
        assert any("jump" in w for w in metrics.warnings)

    @pytest.mark.asyncio
    async def test_connectivity_events(self, mock_provider, clock):
        channel = FakeChannel()
        loop = build_loop(channel, mock_provider, clock, connectivity_warning_after=2)

        await loop._tick()
        assert loop.bus.history("connectivity")[-1]["connected"] is True

        channel.fail_all()
        await loop._tick()
        assert len(loop.bus.history("connectivity")) == 1
        metrics = await loop._tick()
        assert loop.bus.history("connectivity")[-1]["connected"] is False
        assert metrics.warnings

        channel.failing.clear()
        await loop._tick()
        assert loop.bus.history("connectivity")[-1]["connected"] is True

    @pytest.mark.asyncio
    async def test_participants_view(self, fake_channel, mock_provider, clock):
        loop = build_loop(fake_channel, mock_provider, clock)
        fake_channel.set_counter("player1_kills", 2)
        fake_channel.set_counter("player1_deaths", 1)
        await loop._tick()
        await loop.drain()

        p1 = loop.participants()[0]
        assert (p1.slot, p1.kills, p1.deaths) == (1, 2, 1)
        assert p1.last_kills == 2
        assert p1.last_paid_kills == 2
        assert p1.address == "p1@example.com"
        assert loop.participants()[1].address is None

    @pytest.mark.asyncio
    async def test_zero_policy_failed_read_is_not_paid_again(self, fake_channel, mock_provider, clock):
        loop = build_loop(fake_channel, mock_provider, clock)
        loop.sampler.failure_policy = ReadFailurePolicy.ZERO

        fake_channel.set_counter("player1_kills", 5)
        await loop._tick()
        await loop.drain()
        assert len(mock_provider.sent) == 5

        fake_channel.fail_counter("player1_kills")
        metrics = await loop._tick()
        await loop.drain()
        assert loop.last_snapshot.get("player1_kills") == 0
        assert metrics.resets == 0
        assert loop.log_baseline.get(1, RewardKind.KILL) == 5
        assert loop.dispatcher.paid_baseline.get(1, RewardKind.KILL) == 5

        fake_channel.failing.clear()
        metrics = await loop._tick()
        await loop.drain()
        assert metrics.events == 0
        assert metrics.dispatches == 0
        assert len(mock_provider.sent) == 5


class TestBaselineIndependence:

    @pytest.mark.asyncio
    async def test_payment_reset_leaves_log_baseline(self, fake_channel, mock_provider, clock):
        loop = build_loop(fake_channel, mock_provider, clock)
        fake_channel.set_counter("player1_kills", 3)
        await loop._tick()
        await loop.drain()
        assert len(loop.bus.history("reward")) == 1

        loop.dispatcher.reset()
        assert loop.log_baseline.get(1, RewardKind.KILL) == 3

        metrics = await loop._tick()
        await loop.drain()

        # Logging sees no change, payment re-counts from zero
        assert metrics.events == 0
        assert len(loop.bus.history("reward")) == 1
        assert metrics.dispatches == 1
        assert len(mock_provider.sent) == 6
        assert loop.log_baseline.get(1, RewardKind.KILL) == 3

    @pytest.mark.asyncio
    async def test_log_baseline_jump_leaves_payments(self, fake_channel, mock_provider, clock):
        loop = build_loop(fake_channel, mock_provider, clock)
        fake_channel.set_counter("player1_kills", 3)
        await loop._tick()
        await loop.drain()

        loop.log_baseline = loop.log_baseline.updated({(1, RewardKind.KILL): 50})
        fake_channel.set_counter("player1_kills", 4)
        metrics = await loop._tick()
        await loop.drain()

        assert metrics.resets == 1
        assert metrics.events == 0
        assert metrics.dispatches == 1
        assert len(mock_provider.sent) == 4
        assert loop.dispatcher.paid_baseline.get(1, RewardKind.KILL) == 4
        assert loop.log_baseline.get(1, RewardKind.KILL) == 4


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_stop(self, fake_channel, eventually):
        loop = build_loop(fake_channel, MockProvider(), clock=lambda: 0.0, cooldown=0.0, interval=0.01)

        await loop.start()
        await loop.start()
        assert loop.running
        assert await eventually(lambda: loop.state.tick_count >= 3)

        await loop.stop()
        assert not loop.running
        assert loop.state.loop_state is LoopState.STOPPED

        await loop.stop()

    @pytest.mark.asyncio
    async def test_tick_error_is_survived(self, fake_channel, eventually):
        loop = build_loop(fake_channel, MockProvider(), clock=lambda: 0.0, cooldown=0.0, interval=0.01)
        calls = {"n": 0}
        original = loop.sampler.sample

        async def flaky(tick=0):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("boom")
            return await original(tick)

        loop.sampler.sample = flaky
        await loop.start()
        assert await eventually(lambda: loop.state.tick_count >= 2)
        await loop.stop()

        assert loop.state.tick_errors == 1
        assert loop.bus.history("session")[0]["status"] == "error"

    @pytest.mark.asyncio
    async def test_reset_clears_baselines(self, fake_channel, mock_provider, clock):
        loop = build_loop(fake_channel, mock_provider, clock)
        fake_channel.set_counter("player1_kills", 4)
        await loop._tick()
        await loop.drain()

        loop.reset()
        assert loop.log_baseline.get(1, RewardKind.KILL) == 0
        assert loop.dispatcher.paid_baseline.get(1, RewardKind.KILL) == 0
        assert loop.state.tick_count == 0
