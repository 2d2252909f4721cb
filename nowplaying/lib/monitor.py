# nowplaying-monitor
# SPDX-License-Identifier: GPL-3.0-or-later

"""
PlaybackMonitor — turns a polled snapshot source into change events.

Each tick asks the source for a snapshot, normalizes it into a Track and
compares it with the last *emitted* Track:

    track changed     title / artist / status differ, or play state flipped
    position changed  same track, position moved more than the tolerance
    nothing           everything else (sub-tolerance jitter included)

A failed, timed-out or malformed snapshot is a "no track" tick.  Nothing
raised by the source ever escapes the poll loop.

Usage:
    monitor = PlaybackMonitor(source, poll_interval_ms=1000)
    monitor.on_track_changed(lambda track: ...)
    monitor.on_position_changed(lambda position: ...)
    monitor.start()
    ...
    await monitor.stop()
"""

import asyncio
import inspect
import logging

from .errors import MalformedSnapshot, SourceUnavailable
from .track import POSITION_TOLERANCE, ChangeEvent, Track, detect_change, normalize_snapshot

log = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 1000
DEFAULT_SNAPSHOT_TIMEOUT = 5.0  # seconds before a source call counts as failed
MIN_POLL_INTERVAL_MS = 50


class PlaybackMonitor:

    def __init__(self, source, poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
                 snapshot_timeout: float = DEFAULT_SNAPSHOT_TIMEOUT,
                 position_tolerance: float = POSITION_TOLERANCE):
        self.source = source
        self.poll_interval_ms = poll_interval_ms
        self.snapshot_timeout = snapshot_timeout
        self.position_tolerance = position_tolerance

        self._current: Track | None = None
        self._task: asyncio.Task | None = None
        self._tick_lock = asyncio.Lock()
        self._track_listeners: list = []
        self._position_listeners: list = []
        self._failure_streak = 0

    # ── Lifecycle ──

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, poll_interval_ms: int | None = None):
        """Begin polling.  A no-op while already running."""
        if self.running:
            return
        if poll_interval_ms is not None:
            self.poll_interval_ms = poll_interval_ms
        self._task = asyncio.create_task(self._poll_loop(), name="nowplaying-poller")
        log.info("Polling %s every %dms", getattr(self.source, "name", "source"),
                 self.poll_interval_ms)

    async def stop(self):
        """Cancel the poll loop.  Safe to call repeatedly or before start()."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("Polling stopped")

    # ── State ──

    @property
    def current_track(self) -> Track | None:
        return self._current

    def get_current_track(self) -> Track | None:
        """Last emitted track (or None).  No I/O."""
        return self._current

    # ── Subscriptions ──

    def on_track_changed(self, callback):
        """Register ``callback(track_or_none)``.  Returns an unsubscribe function."""
        self._track_listeners.append(callback)
        return lambda: self._discard(self._track_listeners, callback)

    def on_position_changed(self, callback):
        """Register ``callback(position_seconds)``.  Returns an unsubscribe function."""
        self._position_listeners.append(callback)
        return lambda: self._discard(self._position_listeners, callback)

    @staticmethod
    def _discard(listeners: list, callback):
        if callback in listeners:
            listeners.remove(callback)

    async def _emit(self, listeners: list, value):
        for callback in list(listeners):
            try:
                result = callback(value)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.error("Listener %r failed: %s", callback, e)

    # ── Polling ──

    async def _poll_loop(self):
        while True:
            await self.poll_once()
            interval = max(self.poll_interval_ms, MIN_POLL_INTERVAL_MS) / 1000
            await asyncio.sleep(interval)

    async def _snapshot(self) -> Track | None:
        """Fetch and normalize one snapshot; every failure folds into None."""
        try:
            payload = await asyncio.wait_for(self.source.fetch(), timeout=self.snapshot_timeout)
            track = normalize_snapshot(payload)
        except asyncio.TimeoutError:
            self._note_failure(f"snapshot timed out after {self.snapshot_timeout:.1f}s")
            return None
        except SourceUnavailable as e:
            self._note_failure(f"source unavailable: {e}")
            return None
        except MalformedSnapshot as e:
            self._note_failure(f"malformed snapshot: {e}")
            return None
        except Exception as e:
            self._note_failure(f"snapshot failed: {e!r}")
            return None

        if self._failure_streak:
            log.info("Source recovered after %d failed polls", self._failure_streak)
            self._failure_streak = 0
        return track

    def _note_failure(self, message: str):
        self._failure_streak += 1
        if self._failure_streak == 1:
            log.warning("%s — treating as no track", message)
        else:
            log.debug("%s (%d in a row)", message, self._failure_streak)

    async def poll_once(self) -> ChangeEvent | None:
        """Run a single tick.  Returns the event emitted, if any."""
        async with self._tick_lock:
            fresh = await self._snapshot()
            event = detect_change(self._current, fresh, self.position_tolerance)

            if event is ChangeEvent.TRACK:
                self._current = fresh
                if fresh is not None and fresh.is_active:
                    log.info("Track changed: %s — %s (%s)", fresh.artist, fresh.title,
                             fresh.status.value)
                else:
                    log.info("Playback stopped")
                await self._emit(self._track_listeners, fresh)
            elif event is ChangeEvent.POSITION:
                self._current = self._current.with_position(fresh.position)
                log.debug("Position changed: %.1fs", fresh.position)
                await self._emit(self._position_listeners, fresh.position)
            return event

    # ── Playback commands (pass-through) ──

    async def _command(self, name: str) -> bool:
        try:
            return bool(await asyncio.wait_for(getattr(self.source, name)(),
                                               timeout=self.snapshot_timeout))
        except asyncio.TimeoutError:
            log.error("%s timed out", name)
        except Exception as e:
            log.error("%s failed: %s", name, e)
        return False

    async def play_pause(self) -> bool:
        return await self._command("play_pause")

    async def next_track(self) -> bool:
        return await self._command("next_track")

    async def prev_track(self) -> bool:
        return await self._command("prev_track")
