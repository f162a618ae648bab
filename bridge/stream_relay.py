"""Pass-through relays for the board's camera and audio TCP streams.

Each browser request opens its own upstream connection. Bytes are copied to
the HTTP response exactly as received; nothing is parsed or reframed. The two
halves of a relay session share one lifetime: whichever side closes first
tears down the other.
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Mapping

from aiohttp import web

log = logging.getLogger("bridge.relay")

DEFAULT_CHUNK_SIZE = 64 * 1024


class RelayState(enum.Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSED = "closed"


@dataclass(slots=True, eq=False)
class RelaySession:
    """One browser viewer bound to one upstream connection."""

    id: int
    relay: str
    peer: str
    state: RelayState = RelayState.CONNECTING
    started_at: float = field(default_factory=time.time)
    bytes_relayed: int = 0
    close_reason: str = ""
    writer: asyncio.StreamWriter | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "relay": self.relay,
            "peer": self.peer,
            "state": self.state.value,
            "started_at": self.started_at,
            "bytes_relayed": self.bytes_relayed,
        }

    def close_upstream(self) -> None:
        writer = self.writer
        self.writer = None
        if writer is not None and not writer.is_closing():
            writer.close()


class StreamRelay:
    """Serve ``GET`` requests by streaming ``host:port`` into the response body."""

    _ids = itertools.count(1)

    def __init__(
        self,
        name: str,
        host: str,
        port: int,
        content_type: str,
        *,
        headers: Mapping[str, str] | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        logger: logging.Logger | None = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.name = name
        self.host = host
        self.port = int(port)
        self.content_type = content_type
        self._headers = dict(headers or {})
        self._chunk_size = int(chunk_size)
        self._logger = logger or log
        self._sessions: set[RelaySession] = set()

    def sessions(self) -> list[dict[str, object]]:
        return [session.to_dict() for session in sorted(self._sessions, key=lambda s: s.id)]

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    async def handle(self, request: web.Request) -> web.StreamResponse:
        headers = {"Content-Type": self.content_type, "Cache-Control": "no-store"}
        headers.update(self._headers)
        response = web.StreamResponse(status=200, headers=headers)
        if headers.get("Connection", "").lower() == "close":
            response.force_close()
        response.enable_chunked_encoding()
        await response.prepare(request)

        session = RelaySession(
            id=next(self._ids),
            relay=self.name,
            peer=request.remote or "",
        )
        self._sessions.add(session)
        try:
            await self._relay(session, response)
        except asyncio.CancelledError:
            session.close_reason = "browser closed"
            self._logger.info("Browser closed /%s", self.name)
            raise
        finally:
            self._teardown(session)
            if session.close_reason != "browser closed":
                await self._finish_response(response)
        return response

    async def _relay(self, session: RelaySession, response: web.StreamResponse) -> None:
        try:
            reader, writer = await asyncio.open_connection(self.host, self.port)
        except OSError as exc:
            session.close_reason = "connect failed"
            self._logger.error(
                "%s stream connect to %s:%s failed: %s", self.name, self.host, self.port, exc
            )
            return

        session.writer = writer
        session.state = RelayState.STREAMING
        self._logger.info("Connected to %s stream at %s:%s", self.name, self.host, self.port)

        while True:
            try:
                chunk = await reader.read(self._chunk_size)
            except OSError as exc:
                session.close_reason = "upstream error"
                self._logger.error("%s stream error: %s", self.name, exc)
                return
            if not chunk:
                session.close_reason = "upstream ended"
                self._logger.info("%s stream ended", self.name)
                return
            try:
                await response.write(chunk)
            except ConnectionResetError:
                session.close_reason = "browser closed"
                self._logger.info("Browser closed /%s", self.name)
                return
            session.bytes_relayed += len(chunk)

    def _teardown(self, session: RelaySession) -> None:
        session.state = RelayState.CLOSED
        session.close_upstream()
        self._sessions.discard(session)
        self._logger.debug(
            "%s session %s closed (%s, %d bytes)",
            self.name,
            session.id,
            session.close_reason or "unknown",
            session.bytes_relayed,
        )

    async def _finish_response(self, response: web.StreamResponse) -> None:
        try:
            await response.write_eof()
        except ConnectionResetError:
            pass
        except Exception as exc:  # pragma: no cover - transport quirks
            self._logger.debug("%s response close failed: %s", self.name, exc)

    async def close_all(self) -> None:
        """Close every upstream connection still open."""
        for session in list(self._sessions):
            session.close_reason = session.close_reason or "shutdown"
            session.close_upstream()


def camera_relay(settings: Mapping[str, object], *, logger: logging.Logger | None = None) -> StreamRelay:
    return StreamRelay(
        "camera",
        str(settings["host"]),
        int(settings["port"]),
        str(settings["content_type"]),
        chunk_size=int(settings.get("chunk_size") or DEFAULT_CHUNK_SIZE),
        logger=logger,
    )


def audio_relay(settings: Mapping[str, object], *, logger: logging.Logger | None = None) -> StreamRelay:
    return StreamRelay(
        "audio",
        str(settings["host"]),
        int(settings["port"]),
        str(settings["content_type"]),
        headers={"Connection": "close"},
        chunk_size=int(settings.get("chunk_size") or DEFAULT_CHUNK_SIZE),
        logger=logger,
    )


__all__ = [
    "RelaySession",
    "RelayState",
    "StreamRelay",
    "audio_relay",
    "camera_relay",
]
