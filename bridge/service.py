"""Service object tying the browser hub to the board's sockets and clip store."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from bridge.client_events import ClientHub
from bridge.clips import ClipLibrary
from bridge.config import runtime_settings
from bridge.datagram_link import CommandSender, motion_listener, telemetry_listener
from bridge.stream_relay import audio_relay, camera_relay


class BridgeService:
    """Owns every socket the bridge opens.

    ``start`` binds the datagram listeners and opens the command channel; any
    bind failure propagates. ``stop`` closes the sockets and every live relay
    session.
    """

    def __init__(self, cfg: Mapping[str, Any], *, logger: logging.Logger | None = None) -> None:
        self.settings = runtime_settings(cfg)
        self._logger = logger or logging.getLogger("bridge")
        events_cfg = self.settings["events"]
        self.hub = ClientHub(
            max_queue_size=events_cfg["max_queue_size"],
        )
        command_cfg = self.settings["command"]
        self.commands = CommandSender(command_cfg["host"], command_cfg["port"])
        self.telemetry = telemetry_listener(
            self.hub,
            self.settings["telemetry"]["listen_host"],
            self.settings["telemetry"]["port"],
        )
        self.motion = motion_listener(
            self.hub,
            self.settings["motion"]["listen_host"],
            self.settings["motion"]["port"],
        )
        self.camera = camera_relay(self.settings["camera"])
        self.audio = audio_relay(self.settings["audio"])
        clips_cfg = self.settings["clips"]
        self.clips = ClipLibrary(
            self.settings["paths"]["clips_dir"],
            max_clips=clips_cfg["max_clips"],
            extensions=clips_cfg["extensions"],
            on_pruned=self._announce_pruned,
        )
        self.public_dir = self.settings["paths"]["public_dir"]
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self.hub.bind_loop(asyncio.get_running_loop())
        await asyncio.to_thread(self.clips.ensure_directory)
        self._logger.info("Using clips directory %s", self.clips.root)
        try:
            await self.telemetry.start()
            await self.motion.start()
            await self.commands.start()
        except OSError:
            await self._close_sockets()
            raise
        self._started = True

    async def stop(self) -> None:
        await self.camera.close_all()
        await self.audio.close_all()
        await self._close_sockets()
        self._started = False

    async def _close_sockets(self) -> None:
        await self.commands.stop()
        await self.motion.stop()
        await self.telemetry.stop()

    def send_command(self, command: object) -> bool:
        return self.commands.send(command)

    def _announce_pruned(self, deleted: list[str], remaining: list[str]) -> None:
        self.hub.broadcast("clips_pruned", {"deleted": deleted, "remaining": len(remaining)})

    def status(self) -> dict[str, Any]:
        def _addr(address: tuple[str, int] | None) -> str | None:
            if address is None:
                return None
            return f"{address[0]}:{address[1]}"

        host, port = self.commands.target
        return {
            "clients": self.hub.client_count,
            "browsers": self.hub.peers(),
            "command_target": f"{host}:{port}",
            "telemetry": _addr(self.telemetry.address),
            "motion": _addr(self.motion.address),
            "relays": {
                "camera": self.camera.sessions(),
                "audio": self.audio.sessions(),
            },
            "clips_dir": str(self.clips.root),
            "max_clips": self.clips.max_clips,
        }


__all__ = ["BridgeService"]
