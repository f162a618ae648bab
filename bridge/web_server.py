#!/usr/bin/env python3
"""
aiohttp web server bridging browsers and the BeagleY board.

Behavior:
- Browsers open a web-socket; ``servo`` frames become UDP commands to the
  board, and telemetry/motion datagrams from the board are pushed back to
  every connected browser.
- Camera and audio requests each open their own TCP connection to the board
  and stream it through untouched until either side hangs up.
- Clip listings prune the directory down to the newest clips first.

Endpoints:
  GET /                    -> Front-end bundle (index.html)
  GET /ws                  -> Web-socket event channel
  GET /camera              -> multipart camera stream passthrough
  GET /audio               -> chunked audio stream passthrough
  GET /api/clips           -> JSON array of clip names (newest first)
  GET /clips-browser       -> HTML clip listing
  Static /clips/*          -> Clip files
  GET /api/status          -> JSON {clients, relays, listeners, ...}
  GET /healthz             -> "ok"
"""

import argparse
import asyncio
import contextlib
import json
import logging
import threading
import time
import weakref
from typing import Any, Callable, Mapping

from aiohttp import WSCloseCode, WSMsgType, web
from aiohttp.web import AppKey

from bridge import webui
from bridge.config import ConfigError, get_cfg, log_level_name, reload_cfg, runtime_settings
from bridge.service import BridgeService

WEBSOCKET_HEARTBEAT_SECONDS = 30.0

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

SERVICE_KEY: AppKey[BridgeService] = web.AppKey("bridge_service", BridgeService)
WEBSOCKETS_KEY: AppKey[weakref.WeakSet] = web.AppKey("bridge_websockets", weakref.WeakSet)


def build_app(
    cfg: Mapping[str, Any] | None = None,
    *,
    service: BridgeService | None = None,
) -> web.Application:
    log = logging.getLogger("bridge")
    if service is None:
        service = BridgeService(get_cfg() if cfg is None else cfg)

    app = web.Application()
    app[SERVICE_KEY] = service
    app[WEBSOCKETS_KEY] = weakref.WeakSet()

    hub = service.hub
    clips = service.clips
    public_root = service.public_dir
    try:
        public_root_resolved = public_root.resolve()
    except OSError:
        public_root_resolved = public_root

    # Static routes need the directory to exist when registered.
    clips.ensure_directory()

    async def _start_service(_: web.Application) -> None:
        await service.start()

    async def _close_websockets(_: web.Application) -> None:
        for ws in list(app[WEBSOCKETS_KEY]):
            with contextlib.suppress(Exception):
                await ws.close(code=WSCloseCode.GOING_AWAY, message=b"server shutdown")

    async def _stop_service(_: web.Application) -> None:
        await service.stop()

    app.on_startup.append(_start_service)
    app.on_shutdown.append(_close_websockets)
    app.on_cleanup.append(_stop_service)

    def _on_servo(data: Any, peer: str) -> None:
        log.debug("servo command %r from %s", data, peer)
        service.send_command(data)

    frame_handlers: dict[str, Callable[[Any, str], None]] = {
        "servo": _on_servo,
    }

    def _dispatch_frame(raw: str, peer: str) -> None:
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            log.warning("Ignoring malformed web-socket frame from %s", peer)
            return
        if not isinstance(frame, dict):
            log.warning("Ignoring malformed web-socket frame from %s", peer)
            return
        event = frame.get("event")
        handler = frame_handlers.get(event) if isinstance(event, str) else None
        if handler is None:
            log.debug("Ignoring unknown web-socket event %r from %s", event, peer)
            return
        handler(frame.get("data"), peer)

    async def socket_channel(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=WEBSOCKET_HEARTBEAT_SECONDS)
        await ws.prepare(request)
        peer = request.remote or "unknown"
        session = await hub.connect(peer)
        app[WEBSOCKETS_KEY].add(ws)
        log.info("Browser connected: %s", peer)

        async def _forward_events() -> None:
            while True:
                frame = await session.outbox.get()
                try:
                    await ws.send_str(frame)
                except (ConnectionResetError, RuntimeError) as exc:
                    log.debug("web-socket send to %s failed: %s", peer, exc)
                    return

        forwarder = asyncio.create_task(_forward_events())
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    _dispatch_frame(msg.data, peer)
                elif msg.type == WSMsgType.ERROR:
                    log.warning("web-socket error from %s: %s", peer, ws.exception())
        finally:
            hub.disconnect(session)
            app[WEBSOCKETS_KEY].discard(ws)
            forwarder.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await forwarder
            log.info("Browser disconnected: %s", peer)
        return ws

    async def clips_api(_: web.Request) -> web.Response:
        log.info("GET /api/clips")
        try:
            names = await asyncio.to_thread(clips.list_clips)
        except OSError as exc:
            log.error("Error reading clips dir: %s", exc)
            return web.json_response({"error": "Failed to list clips"}, status=500)
        return web.json_response(names, headers={"Cache-Control": "no-store"})

    async def clips_browser(_: web.Request) -> web.Response:
        log.info("GET /clips-browser")
        try:
            names = await asyncio.to_thread(clips.list_clips)
        except OSError as exc:
            log.error("Error reading clips dir (browser): %s", exc)
            return web.Response(
                status=500,
                text="<h1>Error reading clips directory</h1>",
                content_type="text/html",
            )
        body = webui.render_template(
            "clips_browser.html",
            clips=[{"name": name, "url": clips.clip_url(name)} for name in names],
        )
        return web.Response(text=body, content_type="text/html")

    async def public_file(request: web.Request) -> web.StreamResponse:
        rel = request.match_info.get("path", "").strip("/") or "index.html"

        candidate = public_root / rel
        try:
            resolved = candidate.resolve()
        except (OSError, RuntimeError):
            raise web.HTTPNotFound() from None

        try:
            resolved.relative_to(public_root_resolved)
        except ValueError:
            raise web.HTTPNotFound()

        if resolved.is_dir():
            resolved = resolved / "index.html"
        if not resolved.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(resolved)

    async def status(_: web.Request) -> web.Response:
        return web.json_response(service.status(), headers={"Cache-Control": "no-store"})

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok\n")

    # Routes
    app.router.add_get("/ws", socket_channel)
    app.router.add_get("/camera", service.camera.handle)
    app.router.add_get("/audio", service.audio.handle)
    app.router.add_get("/api/clips", clips_api)
    app.router.add_get("/clips-browser", clips_browser)
    app.router.add_static("/clips/", clips.root, show_index=False)
    app.router.add_get("/api/status", status)
    app.router.add_get("/healthz", healthz)
    app.router.add_get("/{path:.*}", public_file)
    return app


class BridgeServerHandle:
    """Handle returned by start_bridge_in_thread(). Call stop() to cleanly shut down."""

    def __init__(
        self,
        thread: threading.Thread,
        loop: asyncio.AbstractEventLoop,
        runner: web.AppRunner,
        app: web.Application,
    ):
        self.thread = thread
        self.loop = loop
        self.runner = runner
        self.app = app

    @property
    def service(self) -> BridgeService:
        return self.app[SERVICE_KEY]

    def stop(self, timeout: float = 5.0):
        log = logging.getLogger("bridge")
        log.info("Stopping bridge ...")
        if self.loop.is_running():
            async def _cleanup():
                try:
                    await self.runner.cleanup()
                except Exception as e:
                    log.warning("Error during aiohttp runner cleanup: %r", e)

            fut = asyncio.run_coroutine_threadsafe(_cleanup(), self.loop)
            try:
                fut.result(timeout=timeout)
            except Exception as e:
                log.warning("Error awaiting cleanup: %r", e)
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        log.info("bridge stopped")


def start_bridge_in_thread(
    host: str = "0.0.0.0",
    port: int = 3000,
    *,
    cfg: Mapping[str, Any] | None = None,
    access_log: bool = False,
    log_level: str = "INFO",
) -> BridgeServerHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop.

    Startup failures (configuration errors, ports already in use) are raised
    here rather than inside the thread.
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    log = logging.getLogger("bridge")

    loop = asyncio.new_event_loop()
    started = threading.Event()
    box: dict[str, Any] = {}

    def _run():
        asyncio.set_event_loop(loop)
        runner: web.AppRunner | None = None
        try:
            app = build_app(cfg)
            runner = web.AppRunner(
                app,
                access_log=logging.getLogger("aiohttp.access") if access_log else None,
                handler_cancellation=True,
            )
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port)
            loop.run_until_complete(site.start())
        except BaseException as exc:
            box["error"] = exc
            if runner is not None:
                with contextlib.suppress(Exception):
                    loop.run_until_complete(runner.cleanup())
            loop.close()
            started.set()
            return

        box["runner"] = runner
        box["app"] = app
        log.info("bridge started on %s:%s", host, port)
        started.set()
        try:
            loop.run_forever()
        finally:
            with contextlib.suppress(Exception):
                loop.run_until_complete(runner.cleanup())
            loop.close()

    t = threading.Thread(target=_run, name="bridge", daemon=True)
    t.start()
    started.wait()

    if "error" in box:
        t.join()
        raise box["error"]

    return BridgeServerHandle(t, loop, box["runner"], box["app"])


def cli_main():
    parser = argparse.ArgumentParser(description="BeagleY browser bridge.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument(
        "--port",
        type=int,
        help="Override bind port (defaults to config).",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", help="Python logging level (defaults to config).")
    args = parser.parse_args()

    cfg = reload_cfg()
    try:
        settings = runtime_settings(cfg)
    except ConfigError as exc:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logging.getLogger("bridge").error("Invalid configuration: %s", exc)
        return 1

    log_level = args.log_level or log_level_name(settings)
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    log = logging.getLogger("bridge")

    web_cfg = settings["web_server"]
    bind_host = args.host if args.host else web_cfg["listen_host"]
    bind_port = args.port if args.port else web_cfg["listen_port"]
    log.info(
        "Starting bridge on %s:%s (access_log=%s)",
        bind_host,
        bind_port,
        "on" if args.access_log else "off",
    )

    try:
        handle = start_bridge_in_thread(
            host=bind_host,
            port=bind_port,
            cfg=cfg,
            access_log=args.access_log,
            log_level=log_level,
        )
    except OSError as exc:
        log.error("Unable to start bridge: %s", exc)
        return 1

    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        handle.stop()
        return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
