"""UDP link to the BeagleY board: servo commands out, telemetry and motion in."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imports for type checkers
    from bridge.client_events import ClientHub

log = logging.getLogger("bridge.datagram")

Address = tuple[str, int]
MessageHandler = Callable[[str, Address], None]


class _SenderProtocol(asyncio.DatagramProtocol):
    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def error_received(self, exc: Exception) -> None:
        self._logger.error("UDP send error (servo): %s", exc)


class CommandSender:
    """Fire-and-forget command channel to the board.

    Every accepted command becomes exactly one datagram carrying the command's
    bytes unchanged. Failures are logged; callers never see them.
    """

    def __init__(self, host: str, port: int, *, logger: logging.Logger | None = None) -> None:
        self._target: Address = (host, int(port))
        self._logger = logger or log
        self._transport: asyncio.DatagramTransport | None = None

    @property
    def target(self) -> Address:
        return self._target

    async def start(self) -> None:
        if self._transport is not None:
            return
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _SenderProtocol(self._logger),
            local_addr=("0.0.0.0", 0),
        )
        self._transport = transport

    async def stop(self) -> None:
        transport = self._transport
        self._transport = None
        if transport is not None:
            transport.close()

    def send(self, command: object) -> bool:
        if not isinstance(command, str) or not command:
            self._logger.warning("Ignoring empty servo command %r", command)
            return False
        transport = self._transport
        if transport is None or transport.is_closing():
            self._logger.error("UDP send error (servo): command channel is not open")
            return False
        message = command.encode("utf-8")
        try:
            transport.sendto(message, self._target)
        except OSError as exc:
            self._logger.error("UDP send error (servo): %s", exc)
            return False
        self._logger.info("Sent UDP servo command: %s", command)
        return True


class _ListenerProtocol(asyncio.DatagramProtocol):
    def __init__(self, listener: "DatagramListener") -> None:
        self._listener = listener

    def datagram_received(self, data: bytes, addr: Address) -> None:
        self._listener._dispatch(data, addr)

    def error_received(self, exc: Exception) -> None:
        self._listener._logger.warning("%s UDP receive error: %s", self._listener.name, exc)


class DatagramListener:
    """Bind a local UDP port and hand every trimmed text datagram to ``handler``."""

    def __init__(
        self,
        name: str,
        host: str,
        port: int,
        handler: MessageHandler,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self._bind: Address = (host, int(port))
        self._handler = handler
        self._logger = logger or log
        self._transport: asyncio.DatagramTransport | None = None

    @property
    def address(self) -> Address | None:
        transport = self._transport
        if transport is None:
            return None
        sockname = transport.get_extra_info("sockname")
        if not sockname:
            return None
        return sockname[0], sockname[1]

    async def start(self) -> None:
        """Bind the listening socket; bind failures propagate to the caller."""
        if self._transport is not None:
            return
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _ListenerProtocol(self),
            local_addr=self._bind,
        )
        self._transport = transport
        host, port = self.address or self._bind
        self._logger.info("%s UDP listening on %s:%s", self.name, host, port)

    async def stop(self) -> None:
        transport = self._transport
        self._transport = None
        if transport is not None:
            transport.close()

    def _dispatch(self, data: bytes, addr: Address) -> None:
        text = data.decode("utf-8", errors="replace").strip()
        self._logger.info("%s from %s:%s --> %s", self.name, addr[0], addr[1], text)
        try:
            self._handler(text, addr)
        except Exception:  # pragma: no cover
            self._logger.exception("%s handler failed", self.name)


def telemetry_listener(
    hub: "ClientHub",
    host: str,
    port: int,
    *,
    logger: logging.Logger | None = None,
) -> DatagramListener:
    """Republish sampler datagrams as ``sample`` events."""

    def _publish(text: str, _addr: Address) -> None:
        hub.broadcast("sample", text)

    return DatagramListener("telemetry", host, port, _publish, logger=logger)


def motion_listener(
    hub: "ClientHub",
    host: str,
    port: int,
    *,
    clock: Callable[[], float] = time.time,
    logger: logging.Logger | None = None,
) -> DatagramListener:
    """Republish motion detector datagrams as ``motion`` events stamped on receipt."""

    def _publish(text: str, _addr: Address) -> None:
        hub.broadcast("motion", {"text": text, "timestamp": int(clock() * 1000)})

    return DatagramListener("motion", host, port, _publish, logger=logger)


__all__ = [
    "CommandSender",
    "DatagramListener",
    "motion_listener",
    "telemetry_listener",
]
