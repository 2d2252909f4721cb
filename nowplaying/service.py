#!/usr/bin/env python3
# nowplaying-monitor
# SPDX-License-Identifier: GPL-3.0-or-later

"""
NowPlayingService — HTTP + WebSocket surface for a now-playing UI.

Wires a PlaybackMonitor and an ArtworkCache together and pushes their output
to connected clients:

  GET  /ws                 — push feed: track_changed / position_changed
  GET  /now_playing        — last known track (for UI re-attach)
  POST /player/play_pause  — pass-through playback commands; the effect
  POST /player/next          shows up on a later poll
  POST /player/prev
  GET  /artwork/{name}     — serve a cached artwork file
  GET  /status             — source, poller and cache statistics

Run with ``python -m nowplaying`` or the ``nowplaying`` console script.
"""

import asyncio
import json
import logging
import signal

from aiohttp import web

from .lib.artwork import (
    DOWNLOAD_TIMEOUT,
    MAX_CACHE_BYTES,
    MAX_CACHE_ENTRIES,
    MAX_RETRIES,
    ArtworkCache,
)
from .lib.config import cfg
from .lib.monitor import DEFAULT_POLL_INTERVAL_MS, DEFAULT_SNAPSHOT_TIMEOUT, PlaybackMonitor
from .lib.track import POSITION_TOLERANCE, Track
from .sources import create_source

log = logging.getLogger(__name__)

DEFAULT_PORT = 8766
DEFAULT_CACHE_DIR = "~/.cache/nowplaying/artwork"


class NowPlayingService:

    def __init__(self, monitor: PlaybackMonitor, artwork: ArtworkCache,
                 port: int = DEFAULT_PORT, host: str = "0.0.0.0"):
        self.monitor = monitor
        self.artwork = artwork
        self.port = port
        self.host = host
        self._ws_clients: set[web.WebSocketResponse] = set()
        self._runner: web.AppRunner | None = None
        self._artwork_url: str | None = None
        self._unsubscribe = []
        self._tasks: set[asyncio.Task] = set()

    # ── Payloads ──

    def _artwork_path(self, uri: str | None) -> str | None:
        """Turn a cache file:// URI into the URL this server serves it on."""
        if not uri:
            return None
        return f"/artwork/{uri.rsplit('/', 1)[-1]}"

    def track_payload(self, track: Track | None) -> dict | None:
        if track is None or not track.is_active:
            return None
        data = track.to_dict()
        data["artwork"] = self._artwork_url
        return data

    # ── Monitor listeners ──

    async def _on_track_changed(self, track: Track | None):
        self._artwork_url = None
        if track is not None and track.is_active and track.art_reference:
            cached = self.artwork.get_cached(track.art_reference)
            if cached:
                self._artwork_url = self._artwork_path(cached)
            else:
                # Resolved off the poll tick, re-broadcast once cached
                self._spawn(self._fetch_artwork(track))
        await self.broadcast("track_changed", self.track_payload(track))

    async def _fetch_artwork(self, track: Track):
        uri = await self.artwork.resolve(track.art_reference)
        current = self.monitor.get_current_track()
        if (uri is None or current is None or not current.is_active
                or current.art_reference != track.art_reference):
            return
        self._artwork_url = self._artwork_path(uri)
        await self.broadcast("track_changed", self.track_payload(current), reason="artwork")

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _on_position_changed(self, position: float):
        await self.broadcast("position_changed", {"position": position})

    # ── WebSocket broadcasting ──

    async def broadcast(self, event: str, data, reason: str = "update"):
        """Push an event to all connected WebSocket clients."""
        if not self._ws_clients:
            return

        message = json.dumps({"type": event, "reason": reason, "data": data})

        disconnected = set()
        for ws in self._ws_clients:
            try:
                await ws.send_str(message)
            except Exception:
                disconnected.add(ws)

        self._ws_clients -= disconnected

        if event == "track_changed":
            log.info("Broadcast %s to %d clients", event, len(self._ws_clients))

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        self._ws_clients.add(ws)
        log.info("WebSocket client connected (%d total)", len(self._ws_clients))

        try:
            await ws.send_json({
                "type": "track_changed",
                "reason": "client_connect",
                "data": self.track_payload(self.monitor.get_current_track()),
            })
            # Push-only, client messages are ignored
            async for _msg in ws:
                pass
        finally:
            self._ws_clients.discard(ws)
            log.info("WebSocket client disconnected (%d remaining)", len(self._ws_clients))

        return ws

    # ── HTTP route handlers ──

    def _cors_headers(self):
        return {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
        }

    async def _handle_now_playing(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"track": self.track_payload(self.monitor.get_current_track())},
            headers=self._cors_headers())

    async def _command_response(self, ok: bool) -> web.Response:
        return web.json_response(
            {"status": "ok" if ok else "error"},
            headers=self._cors_headers())

    async def _handle_play_pause(self, request: web.Request) -> web.Response:
        return await self._command_response(await self.monitor.play_pause())

    async def _handle_next(self, request: web.Request) -> web.Response:
        return await self._command_response(await self.monitor.next_track())

    async def _handle_prev(self, request: web.Request) -> web.Response:
        return await self._command_response(await self.monitor.prev_track())

    async def _handle_artwork(self, request: web.Request) -> web.StreamResponse:
        path = self.artwork.path_for(request.match_info["name"])
        if path is None or not path.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(path, headers=self._cors_headers())

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.get_status(), headers=self._cors_headers())

    def get_status(self) -> dict:
        return {
            "source": getattr(self.monitor.source, "id", ""),
            "polling": self.monitor.running,
            "ws_clients": len(self._ws_clients),
            "artwork_cache": self.artwork.stats(),
        }

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws", self._handle_ws)
        app.router.add_get("/now_playing", self._handle_now_playing)
        app.router.add_post("/player/play_pause", self._handle_play_pause)
        app.router.add_post("/player/next", self._handle_next)
        app.router.add_post("/player/prev", self._handle_prev)
        app.router.add_get("/artwork/{name}", self._handle_artwork)
        app.router.add_get("/status", self._handle_status)
        return app

    # ── Lifecycle ──

    def attach(self):
        """Subscribe to the monitor's change events (once)."""
        if self._unsubscribe:
            return
        self._unsubscribe = [
            self.monitor.on_track_changed(self._on_track_changed),
            self.monitor.on_position_changed(self._on_position_changed),
        ]

    async def start(self):
        """Subscribe to the monitor, start the HTTP server, begin polling."""
        self.attach()

        self._runner = web.AppRunner(self.make_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("Now playing: HTTP + WebSocket on port %d", self.port)

        if not await self.monitor.source.check_available():
            log.warning("Source %s unavailable — polling anyway, UI will show nothing playing",
                        self.monitor.source.name)
        self.monitor.start()

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Clean up resources.  Safe to call more than once."""
        await self.monitor.stop()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.monitor.source.close()
        await self.artwork.dispose()

        for ws in list(self._ws_clients):
            await ws.close()
        self._ws_clients.clear()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None


def build_service() -> NowPlayingService:
    """Assemble source, monitor, artwork cache and service from config."""
    source = create_source(
        cfg("source", "type", default="auto"),
        player=cfg("source", "player", default=""),
        apps=cfg("source", "apps"),
        helper=cfg("source", "helper", default=""),
        helper_args=cfg("source", "helper_args", default=()),
    )
    monitor = PlaybackMonitor(
        source,
        poll_interval_ms=cfg("monitor", "poll_interval_ms", default=DEFAULT_POLL_INTERVAL_MS),
        snapshot_timeout=cfg("monitor", "snapshot_timeout", default=DEFAULT_SNAPSHOT_TIMEOUT),
        position_tolerance=cfg("monitor", "position_tolerance", default=POSITION_TOLERANCE),
    )
    artwork = ArtworkCache(
        cfg("artwork", "cache_dir", default=DEFAULT_CACHE_DIR),
        max_bytes=cfg("artwork", "max_bytes", default=MAX_CACHE_BYTES),
        max_entries=cfg("artwork", "max_entries", default=MAX_CACHE_ENTRIES),
        max_retries=cfg("artwork", "max_retries", default=MAX_RETRIES),
        download_timeout=cfg("artwork", "download_timeout", default=DOWNLOAD_TIMEOUT),
    )
    return NowPlayingService(monitor, artwork, port=cfg("server", "port", default=DEFAULT_PORT))


async def _run():
    service = build_service()
    await service.run()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
