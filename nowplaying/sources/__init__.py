# nowplaying-monitor
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Sources — backends that read "now playing" state from an external player.

A source does NOT decide what is worth reporting.  It answers one query with
a raw snapshot (or nothing) and forwards playback commands; PlaybackMonitor
does the diffing.

Current sources:
  playerctl      — Linux, MPRIS via the playerctl CLI
  applescript    — macOS, Music / Spotify via osascript
  media_session  — Windows (or anything else), JSON-lines helper process
"""

import logging
import sys

from .base import SnapshotSource
from .command import DEFAULT_APPS, AppleScriptSource, CommandLineSource, PlayerctlSource
from .session import MediaSessionSource

log = logging.getLogger(__name__)

__all__ = [
    "AppleScriptSource",
    "CommandLineSource",
    "MediaSessionSource",
    "PlayerctlSource",
    "SnapshotSource",
    "create_source",
    "current_platform",
]

_PLATFORM_SOURCES = {
    "linux": "playerctl",
    "macos": "applescript",
    "windows": "media_session",
}


def current_platform() -> str:
    """Return "linux", "macos", "windows" or "unknown"."""
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform == "darwin":
        return "macos"
    if sys.platform in ("win32", "cygwin"):
        return "windows"
    return "unknown"


def create_source(kind: str = "auto", *, player: str = "", apps=None,
                  helper: str = "", helper_args=(), timeout: float | None = None) -> SnapshotSource:
    """Build the snapshot source for *kind* ("auto" picks one for this OS)."""
    if kind == "auto":
        platform = current_platform()
        kind = _PLATFORM_SOURCES.get(platform, "media_session")
        log.info("Platform %s → %s source", platform, kind)

    options = {"timeout": timeout} if timeout is not None else {}
    if kind == "playerctl":
        return PlayerctlSource(player=player, **options)
    if kind == "applescript":
        return AppleScriptSource(apps=apps or DEFAULT_APPS, **options)
    if kind == "media_session":
        return MediaSessionSource(helper=helper, args=helper_args, **options)
    raise ValueError(f"unknown source type {kind!r}")
