"""
Framed Transport
================
Length-prefixed binary frames over an asyncio byte stream.

Wire format of one frame:
    [unsigned big-endian length, 8 bytes (or 4)] [payload, exactly length bytes]

Every read and write is a suspension point bounded by a deadline. Any
failure (I/O error, peer closure, oversized header, expired deadline)
surfaces as ``TransportError`` and there is no retry: later messages depend
on session state established by earlier ones.
"""

import asyncio
import struct
from typing import Optional

from finance_core.errors import TransportError


HEADER_FORMATS = {
    4: struct.Struct("!I"),
    8: struct.Struct("!Q"),
}


class FramedChannel:
    """
    One session's framed view of a stream connection.

    A frame is written with a single ``write`` call followed by ``drain``,
    so the receiver never observes a partial frame as a message.
    """

    def __init__(self,
                 reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter,
                 max_frame_size: int = 256 * 1024 * 1024,
                 io_timeout: Optional[float] = 30.0,
                 header_size: int = 8):
        if header_size not in HEADER_FORMATS:
            raise ValueError("header_size must be 4 or 8")
        self.reader = reader
        self.writer = writer
        self.max_frame_size = max_frame_size
        self.io_timeout = io_timeout
        self._header = HEADER_FORMATS[header_size]

        self.frames_sent = 0
        self.frames_received = 0
        self.bytes_sent = 0
        self.bytes_received = 0
        self._closed = False

    @classmethod
    def from_config(cls, reader, writer, config) -> 'FramedChannel':
        return cls(
            reader,
            writer,
            max_frame_size=config.max_frame_size,
            io_timeout=config.io_timeout,
            header_size=config.header_size,
        )

    @property
    def peer(self) -> str:
        peername = self.writer.get_extra_info('peername')
        if isinstance(peername, tuple) and len(peername) >= 2:
            return f"{peername[0]}:{peername[1]}"
        return str(peername) if peername else "unknown"

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()

    async def send_frame(self, payload: bytes) -> None:
        """Write one frame: length header followed by the payload"""
        if self.closed:
            raise TransportError("channel is closed", reason="closed")
        if len(payload) > self.max_frame_size:
            raise TransportError(
                f"frame of {len(payload)} bytes exceeds limit {self.max_frame_size}",
                reason="oversized",
            )

        self.writer.write(self._header.pack(len(payload)) + bytes(payload))
        await self._with_deadline(self.writer.drain(), "write")

        self.frames_sent += 1
        self.bytes_sent += len(payload)

    async def recv_frame(self) -> bytes:
        """Block until one complete frame has arrived"""
        if self._closed:
            raise TransportError("channel is closed", reason="closed")

        header = await self._read_exactly(self._header.size, "length header")
        (length,) = self._header.unpack(header)
        if length > self.max_frame_size:
            raise TransportError(
                f"length header {length} exceeds limit {self.max_frame_size}",
                reason="oversized",
            )

        payload = await self._read_exactly(length, "payload") if length else b""
        self.frames_received += 1
        self.bytes_received += length
        return payload

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=1.0)
        except (OSError, asyncio.TimeoutError):
            # Peer already gone; nothing left to flush
            pass

    def get_stats(self) -> dict:
        return {
            'frames_sent': self.frames_sent,
            'frames_received': self.frames_received,
            'bytes_sent': self.bytes_sent,
            'bytes_received': self.bytes_received,
        }

    async def _read_exactly(self, count: int, what: str) -> bytes:
        try:
            return await self._with_deadline(self.reader.readexactly(count), f"{what} read")
        except asyncio.IncompleteReadError as e:
            if not e.partial and what == "length header":
                raise TransportError("peer closed the connection", reason="closed") from e
            raise TransportError(
                f"peer closed after {len(e.partial)} of {count} {what} bytes",
                reason="truncated",
            ) from e

    async def _with_deadline(self, awaitable, what: str):
        try:
            if self.io_timeout is None:
                return await awaitable
            return await asyncio.wait_for(awaitable, timeout=self.io_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"{what} exceeded the {self.io_timeout}s deadline", reason="timeout"
            ) from e
        except (ConnectionError, OSError) as e:
            raise TransportError(f"{what} failed: {e}", reason="io") from e


async def send_frame(channel: FramedChannel, payload: bytes) -> None:
    await channel.send_frame(payload)


async def recv_frame(channel: FramedChannel) -> bytes:
    return await channel.recv_frame()


async def open_channel(host: str, port: int, config) -> FramedChannel:
    """Connect to a compute party and wrap the stream"""
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=config.connect_timeout
        )
    except asyncio.TimeoutError as e:
        raise TransportError(f"connect to {host}:{port} timed out", reason="timeout") from e
    except OSError as e:
        raise TransportError(f"connect to {host}:{port} failed: {e}", reason="io") from e
    return FramedChannel.from_config(reader, writer, config)
