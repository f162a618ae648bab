from __future__ import annotations

import asyncio
import json
import logging
import socket

import pytest

from bridge.client_events import ClientHub
from bridge.datagram_link import (
    CommandSender,
    DatagramListener,
    motion_listener,
    telemetry_listener,
)


class _Collector(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data, addr) -> None:
        self.queue.put_nowait((data, addr))


async def _fake_board():
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        _Collector, local_addr=("127.0.0.1", 0)
    )
    return transport, protocol, transport.get_extra_info("sockname")[1]


async def _send_datagram(payload: bytes, address) -> None:
    loop = asyncio.get_running_loop()
    transport, _ = await loop.create_datagram_endpoint(
        asyncio.DatagramProtocol, remote_addr=address
    )
    try:
        transport.sendto(payload)
    finally:
        transport.close()


def test_command_becomes_exactly_one_identical_datagram():
    async def runner():
        board, collector, port = await _fake_board()
        sender = CommandSender("127.0.0.1", port)
        await sender.start()
        try:
            assert sender.send("LEFT") is True
            data, _addr = await asyncio.wait_for(collector.queue.get(), timeout=1)
            assert data == b"LEFT"
            await asyncio.sleep(0.1)
            assert collector.queue.empty()
        finally:
            await sender.stop()
            board.close()

    asyncio.run(runner())


def test_command_payload_is_not_trimmed_or_reencoded():
    async def runner():
        board, collector, port = await _fake_board()
        sender = CommandSender("127.0.0.1", port)
        await sender.start()
        try:
            assert sender.send(" PAN 15 ") is True
            data, _addr = await asyncio.wait_for(collector.queue.get(), timeout=1)
            assert data == b" PAN 15 "
        finally:
            await sender.stop()
            board.close()

    asyncio.run(runner())


def test_whitespace_command_is_sent_byte_for_byte():
    async def runner():
        board, collector, port = await _fake_board()
        sender = CommandSender("127.0.0.1", port)
        await sender.start()
        try:
            assert sender.send(" ") is True
            data, _addr = await asyncio.wait_for(collector.queue.get(), timeout=1)
            assert data == b" "
            assert sender.send("\t\n") is True
            data, _addr = await asyncio.wait_for(collector.queue.get(), timeout=1)
            assert data == b"\t\n"
        finally:
            await sender.stop()
            board.close()

    asyncio.run(runner())


def test_empty_command_is_rejected(caplog):
    async def runner():
        board, collector, port = await _fake_board()
        sender = CommandSender("127.0.0.1", port)
        await sender.start()
        try:
            assert sender.send("") is False
            assert sender.send(None) is False
            assert sender.send(12) is False
            await asyncio.sleep(0.1)
            assert collector.queue.empty()
        finally:
            await sender.stop()
            board.close()

    with caplog.at_level(logging.WARNING, logger="bridge.datagram"):
        asyncio.run(runner())
    assert "Ignoring empty servo command" in caplog.text


def test_send_before_start_is_logged_not_raised(caplog):
    sender = CommandSender("127.0.0.1", 9)
    with caplog.at_level(logging.ERROR, logger="bridge.datagram"):
        assert sender.send("STOP") is False
    assert "UDP send error (servo)" in caplog.text


def test_telemetry_datagrams_are_trimmed_and_broadcast():
    async def runner():
        hub = ClientHub()
        session = await hub.connect("browser")
        listener = telemetry_listener(hub, "127.0.0.1", 0)
        await listener.start()
        try:
            await _send_datagram(b"  dips=3 avg=1.25\n", listener.address)
            frame = json.loads(await asyncio.wait_for(session.outbox.get(), timeout=1))
            assert frame == {"event": "sample", "data": "dips=3 avg=1.25"}
        finally:
            await listener.stop()
        assert listener.address is None

    asyncio.run(runner())


def test_motion_datagrams_carry_receipt_timestamp():
    async def runner():
        hub = ClientHub()
        session = await hub.connect("browser")
        listener = motion_listener(hub, "127.0.0.1", 0, clock=lambda: 1_700_000_000.25)
        await listener.start()
        try:
            await _send_datagram(b"MOTION_DETECTED\r\n", listener.address)
            frame = json.loads(await asyncio.wait_for(session.outbox.get(), timeout=1))
            assert frame["event"] == "motion"
            assert frame["data"] == {
                "text": "MOTION_DETECTED",
                "timestamp": 1_700_000_000_250,
            }
        finally:
            await listener.stop()

    asyncio.run(runner())


def test_undecodable_bytes_are_replaced():
    async def runner():
        received = []
        listener = DatagramListener(
            "telemetry", "127.0.0.1", 0, lambda text, addr: received.append(text)
        )
        await listener.start()
        try:
            await _send_datagram(b"ok\xff\n", listener.address)
            for _ in range(50):
                if received:
                    break
                await asyncio.sleep(0.02)
        finally:
            await listener.stop()
        assert received == ["ok\ufffd"]

    asyncio.run(runner())


def test_bind_failure_propagates():
    async def runner():
        holder = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        holder.bind(("127.0.0.1", 0))
        port = holder.getsockname()[1]
        listener = DatagramListener("motion", "127.0.0.1", port, lambda text, addr: None)
        try:
            with pytest.raises(OSError):
                await listener.start()
        finally:
            holder.close()

    asyncio.run(runner())
