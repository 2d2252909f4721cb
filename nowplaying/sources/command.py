# nowplaying-monitor
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Command-line snapshot sources.

Each poll spawns a short-lived process that prints one line of fields joined
by ``|||``:

    title ||| art url ||| artist ||| album ||| position ||| length ||| status ||| player

  PlayerctlSource    — playerctl / MPRIS (Linux)
  AppleScriptSource  — osascript against Music / Spotify (macOS)
"""

import asyncio
import logging

from ..lib.errors import MalformedSnapshot, SourceUnavailable
from .base import SnapshotSource

log = logging.getLogger(__name__)

COMMAND_TIMEOUT = 3.0  # seconds

FIELD_SEPARATOR = "|||"
SNAPSHOT_FIELDS = ("title", "art_url", "artist", "album", "position", "duration", "status", "player")


def parse_fields(output: str) -> dict | None:
    """Split a ``|||`` line into a snapshot dict.  Blank output → None."""
    text = output.strip()
    if not text:
        return None
    parts = text.split(FIELD_SEPARATOR)
    if len(parts) != len(SNAPSHOT_FIELDS):
        raise MalformedSnapshot(
            f"expected {len(SNAPSHOT_FIELDS)} fields, got {len(parts)}: {text[:120]!r}")
    return dict(zip(SNAPSHOT_FIELDS, (part.strip() for part in parts)))


class CommandLineSource(SnapshotSource):
    """Base for sources that shell out once per query."""

    executable: str = ""
    version_args: tuple = ("--version",)

    def __init__(self, timeout: float = COMMAND_TIMEOUT):
        self.timeout = timeout

    async def run(self, *args: str) -> tuple[int, str]:
        """Run the executable, return (exit code, stdout)."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.executable, *args,
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SourceUnavailable(f"cannot run {self.executable}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise SourceUnavailable(
                f"{self.executable} did not answer within {self.timeout:.1f}s") from None
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass

        if proc.returncode != 0:
            log.debug("%s %s exited %d: %s", self.executable, " ".join(args),
                      proc.returncode, stderr.decode(errors="replace").strip())
        return proc.returncode, stdout.decode(errors="replace")

    async def check_available(self) -> bool:
        try:
            code, _ = await self.run(*self.version_args)
        except SourceUnavailable as e:
            log.warning("%s not available: %s", self.name, e)
            return False
        if code != 0:
            log.warning("%s not available (exit %d)", self.name, code)
        return code == 0

    async def _control(self, *args: str) -> bool:
        try:
            code, _ = await self.run(*args)
        except SourceUnavailable as e:
            log.error("%s %s failed: %s", self.executable, " ".join(args), e)
            return False
        return code == 0


# ── playerctl ──

PLAYERCTL_FORMAT = FIELD_SEPARATOR.join((
    "{{title}}",
    "{{mpris:artUrl}}",
    "{{artist}}",
    "{{album}}",
    "{{duration(position)}}",
    "{{duration(mpris:length)}}",
    "{{status}}",
    "{{playerName}}",
))


class PlayerctlSource(CommandLineSource):
    id = "playerctl"
    name = "playerctl (MPRIS)"
    executable = "playerctl"

    def __init__(self, player: str = "", timeout: float = COMMAND_TIMEOUT):
        super().__init__(timeout=timeout)
        self.player = player

    def _player_args(self) -> list[str]:
        return ["-p", self.player] if self.player else []

    async def fetch(self) -> dict | None:
        code, output = await self.run(*self._player_args(), "metadata", "--format", PLAYERCTL_FORMAT)
        if code != 0:
            # "No players found"
            return None
        return parse_fields(output)

    async def play_pause(self) -> bool:
        return await self._control(*self._player_args(), "play-pause")

    async def next_track(self) -> bool:
        return await self._control(*self._player_args(), "next")

    async def prev_track(self) -> bool:
        return await self._control(*self._player_args(), "previous")


# ── AppleScript ──

_APPLESCRIPT_QUERY = """
if application "{app}" is running then
    tell application "{app}"
        if player state is not stopped then
            set t to current track
            return (name of t) & "|||" & {artwork} & "|||" & (artist of t) & "|||" & (album of t) & "|||" & ((round (player position)) as string) & "|||" & ((round ({duration})) as string) & "|||" & (player state as string) & "|||{app}"
        end if
    end tell
end if
return ""
"""

_APPLESCRIPT_COMMAND = """
if application "{app}" is running then
    tell application "{app}" to {command}
end if
"""

# Spotify reports duration in ms and exposes an artwork URL; Music does neither
_APP_DIALECTS = {
    "Spotify": {"artwork": "(artwork url of t)", "duration": "(duration of t) / 1000"},
    "Music": {"artwork": '""', "duration": "duration of t"},
}

DEFAULT_APPS = ("Music", "Spotify")


class AppleScriptSource(CommandLineSource):
    id = "applescript"
    name = "AppleScript (macOS)"
    executable = "osascript"
    version_args = ("-e", 'return "ok"')

    def __init__(self, apps=DEFAULT_APPS, timeout: float = COMMAND_TIMEOUT):
        super().__init__(timeout=timeout)
        self.apps = list(apps) or list(DEFAULT_APPS)
        self._active_app: str | None = None

    @staticmethod
    def query_script(app: str) -> str:
        dialect = _APP_DIALECTS.get(app, _APP_DIALECTS["Music"])
        return _APPLESCRIPT_QUERY.format(app=app, **dialect)

    async def fetch(self) -> dict | None:
        for app in self.apps:
            code, output = await self.run("-e", self.query_script(app))
            if code != 0:
                continue
            snapshot = parse_fields(output)
            if snapshot:
                self._active_app = app
                return snapshot
        return None

    async def _tell(self, command: str) -> bool:
        app = self._active_app or self.apps[0]
        return await self._control("-e", _APPLESCRIPT_COMMAND.format(app=app, command=command))

    async def play_pause(self) -> bool:
        return await self._tell("playpause")

    async def next_track(self) -> bool:
        return await self._tell("next track")

    async def prev_track(self) -> bool:
        return await self._tell("previous track")
