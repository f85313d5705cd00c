"""
Memory Channel
==============

Request/response client for the emulator's network command interface.

Wire format (one datagram each way):

    -> READ_CORE_MEMORY <address-hex> <byte-width>
    <- READ_CORE_MEMORY <address-hex> <value-hex> [<value-hex> ...]

The protocol carries no correlation id. A response is matched to the
outstanding request by being the next inbound datagram whose address token
equals the requested address. Only one request may be in flight on the
socket at a time; the channel serializes callers with a lock, so reads under
one tick are strictly sequential.

The socket is created lazily on first use and reused until ``close()``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)

READ_COMMAND = "READ_CORE_MEMORY"


class ChannelError(Exception):
    """Base class for memory channel failures."""


class TransportTimeout(ChannelError):
    """No matching response arrived within the read window."""


class TransportError(ChannelError):
    """The datagram could not be sent, or the emulator rejected the request."""


def format_read_command(address: int, byte_width: int = 1) -> str:
    return f"{READ_COMMAND} {address:X} {byte_width}"


def parse_read_response(response: str, byte_width: int = 1) -> Tuple[int, int]:
    """
    Parse a read response into ``(address, value)``.

    Multi-byte values are returned as the space-separated bytes in memory
    order, combined big-endian. Raises ``TransportError`` on a malformed or
    rejected response (the emulator answers ``-1`` for unreadable memory).
    """
    parts = response.split()
    if len(parts) < 3:
        raise TransportError(f"Malformed response: {response!r}")
    try:
        address = int(parts[1], 16)
    except ValueError:
        raise TransportError(f"Malformed address in response: {response!r}")
    if parts[2] == "-1":
        raise TransportError(f"Read rejected for address {parts[1]}")

    tokens = parts[2:2 + byte_width] if byte_width > 1 else parts[2:3]
    try:
        if len(tokens) == 1:
            return address, int(tokens[0], 16)
        return address, int.from_bytes(bytes(int(t, 16) for t in tokens), "big")
    except ValueError:
        raise TransportError(f"Malformed value in response: {response!r}")


class _ChannelProtocol(asyncio.DatagramProtocol):
    """Hands inbound datagrams and socket errors back to the channel."""

    def __init__(self, channel: "MemoryChannel"):
        self._channel = channel

    def datagram_received(self, data: bytes, addr) -> None:
        self._channel._on_datagram(data)

    def error_received(self, exc: Exception) -> None:
        self._channel._on_error(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            self._channel._on_error(exc)


class MemoryChannel:
    """
    Sequential request/response client over UDP.

    Usage:
        channel = MemoryChannel()
        kills = await channel.read(0x80079F0C)
        await channel.close()
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 55355,
        read_timeout: float = 0.05,
        command_timeout: float = 2.0,
    ):
        self.host = host
        self.port = port
        self.read_timeout = read_timeout
        self.command_timeout = command_timeout

        self._transport: Optional[asyncio.DatagramTransport] = None
        self._lock = asyncio.Lock()
        self._pending: Optional[asyncio.Future] = None
        self._accept: Optional[Callable[[str], bool]] = None

        self._stats = {
            "requests": 0,
            "timeouts": 0,
            "errors": 0,
            "discarded": 0,
        }

    @property
    def is_open(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    async def _ensure_open(self) -> asyncio.DatagramTransport:
        if self.is_open:
            return self._transport

        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _ChannelProtocol(self),
                remote_addr=(self.host, self.port),
            )
        except OSError as e:
            raise TransportError(f"Cannot open channel to {self.host}:{self.port}: {e}") from e

        self._transport = transport
        logger.info(f"Memory channel opened to {self.host}:{self.port}")
        return transport

    async def request(
        self,
        command: str,
        timeout: Optional[float] = None,
        accept: Optional[Callable[[str], bool]] = None,
    ) -> str:
        """
        Send one command and wait for its response line.

        ``accept`` filters inbound datagrams; rejected ones (late answers to
        a request that already timed out) are discarded and waiting continues.
        """
        timeout = self.command_timeout if timeout is None else timeout

        async with self._lock:
            transport = await self._ensure_open()
            loop = asyncio.get_running_loop()
            future = loop.create_future()
            self._pending = future
            self._accept = accept
            self._stats["requests"] += 1

            try:
                try:
                    transport.sendto(command.encode("ascii"))
                except OSError as e:
                    self._stats["errors"] += 1
                    raise TransportError(f"Send failed: {e}") from e

                try:
                    return await asyncio.wait_for(future, timeout)
                except asyncio.TimeoutError:
                    self._stats["timeouts"] += 1
                    raise TransportTimeout(f"No response to {command!r} within {timeout:.3f}s")
                except TransportError:
                    self._stats["errors"] += 1
                    raise
            finally:
                self._pending = None
                self._accept = None

    async def read(self, address: int, byte_width: int = 1) -> int:
        """Read ``byte_width`` bytes at ``address`` and return the value."""

        def matches(line: str) -> bool:
            parts = line.split()
            if len(parts) < 2 or parts[0] != READ_COMMAND:
                return False
            try:
                return int(parts[1], 16) == address
            except ValueError:
                return False

        response = await self.request(
            format_read_command(address, byte_width),
            timeout=self.read_timeout,
            accept=matches,
        )
        _, value = parse_read_response(response, byte_width)
        return value

    async def send_command(self, command: str) -> str:
        """Send an arbitrary command (e.g. ``VERSION``) and return the reply."""
        return await self.request(command, timeout=self.command_timeout)

    def _on_datagram(self, data: bytes) -> None:
        future = self._pending
        line = data.decode("ascii", errors="replace").strip()
        if future is None or future.done():
            self._stats["discarded"] += 1
            logger.debug(f"Discarding unsolicited datagram: {line!r}")
            return
        if self._accept is not None and not self._accept(line):
            self._stats["discarded"] += 1
            logger.debug(f"Discarding stale datagram: {line!r}")
            return
        future.set_result(line)

    def _on_error(self, exc: Exception) -> None:
        future = self._pending
        if future is not None and not future.done():
            future.set_exception(TransportError(str(exc)))
        else:
            logger.debug(f"Socket error with no request in flight: {exc}")

    async def close(self) -> None:
        """Close the socket. Safe to call repeatedly."""
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            transport.close()
        except Exception as e:
            logger.warning(f"Error closing memory channel: {e}")
        else:
            logger.info("Memory channel closed")

    def get_stats(self) -> dict:
        return {"open": self.is_open, **self._stats}
