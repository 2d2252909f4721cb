# nowplaying-monitor
# SPDX-License-Identifier: GPL-3.0-or-later

"""
MediaSessionSource — native media-session backend behind a helper process.

Platforms without a usable CLI (Windows SMTC) expose their media session
through a small long-running helper that speaks newline-delimited JSON on
stdin/stdout:

    helper → {"status": "ready"}                        once, at start-up
    us     → {"Action": "info"}
    helper → {"Title": ..., "Artist": ..., "Album": ..., "Status": ...,
              "ArtworkUri": ..., "Position": ..., "Duration": ..., "Player": ...}
    us     → {"Action": "playpause" | "next" | "previous"}
    helper → {"status": "ok"}   or   {"status": "error", "message": ...}

One request is outstanding at a time.  A helper that dies, hangs or gets out
of step is killed and restarted on the next request.
"""

import asyncio
import json
import logging

from ..lib.errors import MalformedSnapshot, SourceUnavailable
from .base import SnapshotSource

log = logging.getLogger(__name__)

REQUEST_TIMEOUT = 3.0  # seconds per helper reply

_FIELD_MAP = {
    "Title": "title",
    "Artist": "artist",
    "Album": "album",
    "ArtworkUri": "art_url",
    "Position": "position",
    "Duration": "duration",
    "Status": "status",
    "Player": "player",
}


class MediaSessionSource(SnapshotSource):
    id = "media_session"
    name = "Media session helper"

    def __init__(self, helper: str, args=(), timeout: float = REQUEST_TIMEOUT):
        self.helper = helper
        self.args = list(args)
        self.timeout = timeout
        self._proc: asyncio.subprocess.Process | None = None
        self._lock = asyncio.Lock()

    # ── Helper process ──

    async def _ensure_started(self) -> asyncio.subprocess.Process:
        if self._proc is not None and self._proc.returncode is None:
            return self._proc
        if not self.helper:
            raise SourceUnavailable("no media-session helper configured")

        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.helper, *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            self._proc = None
            raise SourceUnavailable(f"cannot start {self.helper}: {e}") from e

        try:
            hello = await self._read_message()
        except (asyncio.TimeoutError, MalformedSnapshot) as e:
            self._kill()
            raise SourceUnavailable(f"helper handshake failed: {e!r}") from e
        if hello.get("status") != "ready":
            self._kill()
            raise SourceUnavailable(f"unexpected helper handshake: {hello}")

        log.info("Media-session helper started (pid %d)", self._proc.pid)
        return self._proc

    async def _read_message(self) -> dict:
        while True:
            line = await asyncio.wait_for(self._proc.stdout.readline(), timeout=self.timeout)
            if not line:
                self._kill()
                raise SourceUnavailable("helper closed its output")
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                break
        try:
            message = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedSnapshot(f"invalid JSON from helper: {e}") from e
        if not isinstance(message, dict):
            raise MalformedSnapshot(f"helper reply is not an object: {text[:120]!r}")
        return message

    def _kill(self):
        proc, self._proc = self._proc, None
        if proc is not None and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    async def request(self, action: str) -> dict:
        """Send one action and return the helper's reply."""
        async with self._lock:
            proc = await self._ensure_started()
            try:
                proc.stdin.write((json.dumps({"Action": action}) + "\n").encode("utf-8"))
                await proc.stdin.drain()
                return await self._read_message()
            except asyncio.TimeoutError:
                self._kill()
                raise SourceUnavailable(f"helper did not answer {action!r} in time") from None
            except (BrokenPipeError, ConnectionResetError) as e:
                self._kill()
                raise SourceUnavailable(f"helper went away: {e}") from e
            except MalformedSnapshot:
                # Reply stream is no longer trustworthy
                self._kill()
                raise
            except asyncio.CancelledError:
                self._kill()
                raise

    # ── SnapshotSource ──

    async def fetch(self) -> dict | None:
        reply = await self.request("info")
        if reply.get("status") == "error":
            raise MalformedSnapshot(reply.get("message") or "helper reported an error")
        if not reply.get("Title"):
            return None
        return {key: reply[field] for field, key in _FIELD_MAP.items() if field in reply}

    async def _command(self, action: str) -> bool:
        try:
            reply = await self.request(action)
        except (SourceUnavailable, MalformedSnapshot) as e:
            log.error("Helper %s failed: %s", action, e)
            return False
        if reply.get("status") != "ok":
            log.warning("Helper %s rejected: %s", action, reply.get("message", reply))
            return False
        return True

    async def play_pause(self) -> bool:
        return await self._command("playpause")

    async def next_track(self) -> bool:
        return await self._command("next")

    async def prev_track(self) -> bool:
        return await self._command("previous")

    async def check_available(self) -> bool:
        try:
            async with self._lock:
                await self._ensure_started()
        except SourceUnavailable as e:
            log.warning("%s not available: %s", self.name, e)
            return False
        return True

    async def close(self):
        proc = self._proc
        self._kill()
        if proc is not None:
            await proc.wait()
