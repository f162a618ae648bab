"""Registry of connected browsers and the broadcast that feeds them.

Every browser on ``/ws`` is a :class:`BrowserSession` with a bounded outbox of
ready-to-send JSON text frames. Datagram listeners and the clip service call
:meth:`ClientHub.broadcast`; the web-socket handler drains the outbox.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger("bridge.events")


@dataclass(eq=False)
class BrowserSession:
    peer: str
    outbox: asyncio.Queue
    connected_at: float = field(default_factory=time.time)
    dropped: int = 0

    def offer(self, frame: str) -> None:
        """Queue ``frame``, discarding the oldest pending frame when full."""
        while True:
            try:
                self.outbox.put_nowait(frame)
                return
            except asyncio.QueueFull:
                pass
            try:
                self.outbox.get_nowait()
            except asyncio.QueueEmpty:
                continue
            self.dropped += 1
            log.debug("outbox full for %s; dropped oldest frame", self.peer)


class ClientHub:
    """Fan events out to every connected browser.

    ``broadcast`` may be called from any thread. Frames are encoded once, at
    broadcast time, and handed to the sessions on the loop that registered
    them.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        max_queue_size: int = 128,
    ) -> None:
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")
        self._loop = loop
        self._max_queue_size = max_queue_size
        self._sessions: dict[BrowserSession, None] = {}
        self._lock = threading.Lock()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._loop = loop

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def peers(self) -> list[str]:
        with self._lock:
            sessions = list(self._sessions)
        return [session.peer for session in sessions]

    async def connect(self, peer: str) -> BrowserSession:
        session = BrowserSession(peer=peer, outbox=asyncio.Queue(maxsize=self._max_queue_size))
        loop = asyncio.get_running_loop()
        with self._lock:
            self._loop = loop
            self._sessions[session] = None
            count = len(self._sessions)
        log.debug("browser %s registered (%d connected)", peer, count)
        return session

    def disconnect(self, session: BrowserSession) -> None:
        with self._lock:
            self._sessions.pop(session, None)
            count = len(self._sessions)
        log.debug("browser %s unregistered (%d connected)", session.peer, count)

    def broadcast(self, event: str, data: Any) -> int:
        """Send ``{"event": event, "data": data}`` to every browser.

        Returns the number of sessions the frame was addressed to.
        """
        if not event or not isinstance(event, str):
            raise ValueError("event name must be a non-empty string")
        frame = json.dumps({"event": event, "data": data}, separators=(",", ":"))

        with self._lock:
            sessions = list(self._sessions)
            loop = self._loop
        if not sessions:
            return 0

        if loop is None or loop.is_closed():
            _deliver(sessions, frame)
        else:
            loop.call_soon_threadsafe(_deliver, sessions, frame)
        return len(sessions)


def _deliver(sessions: list[BrowserSession], frame: str) -> None:
    for session in sessions:
        session.offer(frame)


__all__ = ["BrowserSession", "ClientHub"]
