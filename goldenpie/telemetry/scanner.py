"""
Memory Scanner

Finds the address of a counter by value: scan a range for addresses that
hold value N, play until the counter changes, then filter the hits down to
the ones that now hold the new value. Repeat until a handful remain and copy
them into ``counters.addresses`` in the config file.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from .channel import ChannelError, MemoryChannel

logger = logging.getLogger(__name__)

SCAN_START = 0x80000000
SCAN_END = 0x80800000
SCAN_STEP = 4

ProgressCallback = Callable[[int, int, int], None]


class MemoryScanner:
    """Value scanner over a MemoryChannel. Reads stay sequential."""

    def __init__(
        self,
        channel: MemoryChannel,
        start: int = SCAN_START,
        end: int = SCAN_END,
        step: int = SCAN_STEP,
        byte_width: int = 1,
    ):
        if end <= start or step <= 0:
            raise ValueError("Scan range must be non-empty with a positive step")
        self.channel = channel
        self.start = start
        self.end = end
        self.step = step
        self.byte_width = byte_width
        self.results: Dict[int, int] = {}

    async def _read(self, address: int) -> Optional[int]:
        try:
            return await self.channel.read(address, self.byte_width)
        except ChannelError:
            return None

    async def scan(self, value: int, progress: Optional[ProgressCallback] = None) -> Dict[int, int]:
        """Initial pass over the whole range."""
        self.results = {}
        total = (self.end - self.start + self.step - 1) // self.step
        logger.info(f"Scanning {self.start:#x}-{self.end:#x} for value {value}")

        for scanned, address in enumerate(range(self.start, self.end, self.step), start=1):
            if await self._read(address) == value:
                self.results[address] = value
            if progress and (scanned % 100 == 0 or scanned == total):
                progress(scanned, total, len(self.results))

        logger.info(f"Initial scan complete: {len(self.results)} match(es) for {value}")
        return dict(self.results)

    async def filter(self, value: int, progress: Optional[ProgressCallback] = None) -> Dict[int, int]:
        """Keep only previous hits that now hold ``value``."""
        if not self.results:
            raise LookupError("No previous scan results to filter; run scan first")

        addresses = list(self.results)
        remaining: Dict[int, int] = {}
        for checked, address in enumerate(addresses, start=1):
            if await self._read(address) == value:
                remaining[address] = value
            if progress and (checked % 10 == 0 or checked == len(addresses)):
                progress(checked, len(addresses), len(remaining))

        self.results = remaining
        logger.info(f"Filter complete: {len(remaining)} address(es) now hold {value}")
        return dict(remaining)
