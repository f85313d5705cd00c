"""
Shared fixtures for the GoldenPie test suite.

FakeChannel stands in for the emulator's memory channel so the pipeline can
be driven tick by tick with exact counter values.
"""

import asyncio
from typing import Dict, List, Optional, Set

import pytest

from goldenpie.config import GoldenPieConfig, default_counter_addresses
from goldenpie.payments import MockProvider, PaymentProvider, PaymentResult
from goldenpie.telemetry.channel import TransportTimeout


class FakeChannel:
    """In-memory MemoryChannel: counters by address, optional failing addresses."""

    def __init__(self, addresses: Optional[Dict[str, str]] = None):
        self.addresses = {name: int(addr, 16) for name, addr in (addresses or default_counter_addresses()).items()}
        self.memory: Dict[int, int] = {}
        self.failing: Set[int] = set()
        self.reads: List[int] = []
        self.commands: List[str] = []
        self.version: Optional[str] = "1.15.0"
        self.closed = 0
        self._in_flight = 0
        self.max_in_flight = 0

    def set_counter(self, name: str, value: int) -> None:
        self.memory[self.addresses[name]] = value

    def fail_counter(self, name: str) -> None:
        self.failing.add(self.addresses[name])

    def fail_all(self) -> None:
        self.failing.update(self.addresses.values())

    async def read(self, address: int, byte_width: int = 1) -> int:
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            await asyncio.sleep(0)
            self.reads.append(address)
            if address in self.failing:
                raise TransportTimeout(f"No response for {address:X}")
            return self.memory.get(address, 0)
        finally:
            self._in_flight -= 1

    async def send_command(self, command: str) -> str:
        self.commands.append(command)
        if self.version is None:
            raise TransportTimeout("No response to VERSION")
        return self.version

    async def close(self) -> None:
        self.closed += 1

    @property
    def is_open(self) -> bool:
        return False

    def get_stats(self) -> dict:
        return {"reads": len(self.reads), "closed": self.closed}


class HangingProvider(PaymentProvider):
    """Blocks every send until ``release`` is set."""

    name = "hanging"

    def __init__(self):
        self.release = asyncio.Event()
        self.calls: List[str] = []

    async def send(self, address: str, amount_sats: int, memo: str = "") -> PaymentResult:
        self.calls.append(address)
        await self.release.wait()
        return PaymentResult(success=True, transaction_id=f"hang-{len(self.calls)}",
                             amount=amount_sats, recipient=address)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def mock_provider():
    return MockProvider()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    """Fast config: short interval, no cooldown, no VERSION probe."""
    config = GoldenPieConfig()
    config.poll.interval = 0.01
    config.poll.cooldown = 0.0
    config.poll.probe_on_start = False
    return config


@pytest.fixture
def eventually():
    """Poll an async-world predicate until it holds."""

    async def wait(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()

    return wait
