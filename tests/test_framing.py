"""
Framed Transport Tests
======================
Length-prefixed frames over a local TCP connection.
"""

import asyncio
import struct

import pytest

from finance_core.errors import TransportError
from exchange.framing import FramedChannel, recv_frame, send_frame

from conftest import open_loopback


def run(coro):
    return asyncio.run(coro)


class TestFraming:
    """Tests for FramedChannel"""

    @pytest.mark.parametrize("size", [0, 1, 48 * 1024])
    def test_frame_roundtrip(self, size):
        payload = bytes(i % 251 for i in range(size))

        async def scenario():
            client, peer, server = await open_loopback()
            try:
                await send_frame(client, payload)
                return await recv_frame(peer)
            finally:
                await client.close()
                await peer.close()
                server.close()

        assert run(scenario()) == payload

    def test_frames_arrive_in_order(self):
        async def scenario():
            client, peer, server = await open_loopback()
            try:
                for i in range(5):
                    await client.send_frame(f"frame-{i}".encode())
                received = [await peer.recv_frame() for _ in range(5)]
                return received, client.get_stats(), peer.get_stats()
            finally:
                await client.close()
                await peer.close()
                server.close()

        received, sent_stats, recv_stats = run(scenario())
        assert received == [f"frame-{i}".encode() for i in range(5)]
        assert sent_stats['frames_sent'] == 5
        assert recv_stats['frames_received'] == 5

    def test_header_is_big_endian_eight_bytes(self):
        async def scenario():
            reader = asyncio.StreamReader()
            reader.feed_data(struct.pack("!Q", 3) + b"abc")
            reader.feed_eof()
            channel = FramedChannel(reader, writer=None, io_timeout=1.0)
            return await channel.recv_frame()

        assert run(scenario()) == b"abc"

    def test_four_byte_header(self):
        async def scenario():
            reader = asyncio.StreamReader()
            reader.feed_data(struct.pack("!I", 2) + b"ok")
            reader.feed_eof()
            channel = FramedChannel(reader, writer=None, io_timeout=1.0, header_size=4)
            return await channel.recv_frame()

        assert run(scenario()) == b"ok"

    def test_oversized_length_header(self):
        async def scenario():
            reader = asyncio.StreamReader()
            reader.feed_data(struct.pack("!Q", 1 << 40))
            channel = FramedChannel(reader, writer=None, max_frame_size=1024, io_timeout=1.0)
            await channel.recv_frame()

        with pytest.raises(TransportError, match="exceeds limit") as exc:
            run(scenario())
        assert exc.value.reason == "oversized"

    def test_oversized_payload_not_sent(self):
        async def scenario():
            client, peer, server = await open_loopback(max_frame_size=16)
            try:
                await client.send_frame(b"x" * 17)
            finally:
                await client.close()
                await peer.close()
                server.close()

        with pytest.raises(TransportError) as exc:
            run(scenario())
        assert exc.value.reason == "oversized"

    def test_peer_closes_between_frames(self):
        async def scenario():
            client, peer, server = await open_loopback()
            try:
                await client.close()
                await peer.recv_frame()
            finally:
                await peer.close()
                server.close()

        with pytest.raises(TransportError) as exc:
            run(scenario())
        assert exc.value.reason == "closed"

    def test_peer_closes_mid_frame(self):
        async def scenario():
            reader = asyncio.StreamReader()
            reader.feed_data(struct.pack("!Q", 100) + b"only a few bytes")
            reader.feed_eof()
            channel = FramedChannel(reader, writer=None, io_timeout=1.0)
            await channel.recv_frame()

        with pytest.raises(TransportError, match="peer closed after") as exc:
            run(scenario())
        assert exc.value.reason == "truncated"

    def test_truncated_header(self):
        async def scenario():
            reader = asyncio.StreamReader()
            reader.feed_data(b"\x00\x00\x00")
            reader.feed_eof()
            channel = FramedChannel(reader, writer=None, io_timeout=1.0)
            await channel.recv_frame()

        with pytest.raises(TransportError) as exc:
            run(scenario())
        assert exc.value.reason == "truncated"

    def test_read_deadline(self):
        async def scenario():
            client, peer, server = await open_loopback(io_timeout=0.2)
            try:
                await peer.recv_frame()
            finally:
                await client.close()
                await peer.close()
                server.close()

        with pytest.raises(TransportError, match="deadline") as exc:
            run(scenario())
        assert exc.value.reason == "timeout"

    def test_closed_channel_rejects_io(self):
        async def scenario():
            client, peer, server = await open_loopback()
            await client.close()
            await peer.close()
            server.close()
            await client.send_frame(b"late")

        with pytest.raises(TransportError, match="closed"):
            run(scenario())

    def test_invalid_header_size(self):
        with pytest.raises(ValueError, match="header_size"):
            FramedChannel(None, None, header_size=2)
