# nowplaying-monitor
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Track model shared by the monitor, the artwork cache and the service.

A snapshot source hands back a loose dict (or nothing).  normalize_snapshot()
turns it into an immutable Track, and detect_change() decides whether the
difference between two Tracks is worth telling the UI about.

Canonical snapshot keys:

    title, artist, album   str, blank → "Unknown …"
    art_url                local path, file:// URI, http(s) URL or ""
    position, duration     seconds (number) or "M:SS" string
    status                 "playing" / "paused" / anything else → stopped
    player                 backend / player name
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum

from .errors import MalformedSnapshot

POSITION_TOLERANCE = 2.0  # seconds of drift treated as "the same moment"

UNKNOWN_TITLE = "Unknown Title"
UNKNOWN_ARTIST = "Unknown Artist"
UNKNOWN_ALBUM = "Unknown Album"


class PlaybackStatus(str, Enum):
    PLAYING = "playing"
    PAUSED = "paused"
    STOPPED = "stopped"

    @classmethod
    def parse(cls, value) -> "PlaybackStatus":
        """Map a player's status string case-insensitively; unknown → STOPPED."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            text = value.strip().lower()
            if text == "playing":
                return cls.PLAYING
            if text == "paused":
                return cls.PAUSED
        return cls.STOPPED


class ChangeEvent(Enum):
    TRACK = "track_changed"
    POSITION = "position_changed"


@dataclass(frozen=True)
class Track:
    title: str = UNKNOWN_TITLE
    artist: str = UNKNOWN_ARTIST
    album: str = UNKNOWN_ALBUM
    art_reference: str = ""
    position: float | None = None
    duration: float | None = None
    status: PlaybackStatus = PlaybackStatus.STOPPED
    player: str | None = None

    @property
    def is_active(self) -> bool:
        """A stopped track counts as "no track", whatever stale metadata it holds."""
        return self.status is not PlaybackStatus.STOPPED

    @property
    def is_playing(self) -> bool:
        return self.status is PlaybackStatus.PLAYING

    def with_position(self, position: float) -> "Track":
        return replace(self, position=position)

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "position": self.position,
            "duration": self.duration,
            "state": self.status.value,
            "player": self.player,
        }


def parse_clock(value) -> float | None:
    """Parse seconds or an ``M:SS`` string.  Unknown → None, never 0."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if ":" in text:
            parts = text.split(":")
            if len(parts) != 2:
                return None
            try:
                minutes, secs = int(parts[0]), int(parts[1])
            except ValueError:
                return None
            seconds = float(minutes * 60 + secs)
        else:
            try:
                seconds = float(text)
            except ValueError:
                return None
    else:
        return None

    if math.isnan(seconds) or math.isinf(seconds) or seconds < 0:
        return None
    return seconds


def _text(payload: Mapping, key: str, default: str = "") -> str:
    val = payload.get(key)
    if val is None:
        return default
    text = str(val).strip()
    return text or default


def normalize_snapshot(payload) -> Track | None:
    """Turn a raw source payload into a Track.

    ``None`` or an empty mapping means no active session.  Anything that is
    not a mapping raises MalformedSnapshot.
    """
    if payload is None:
        return None
    if not isinstance(payload, Mapping):
        raise MalformedSnapshot(f"expected a mapping, got {type(payload).__name__}")
    if not payload:
        return None

    return Track(
        title=_text(payload, "title", UNKNOWN_TITLE),
        artist=_text(payload, "artist", UNKNOWN_ARTIST),
        album=_text(payload, "album", UNKNOWN_ALBUM),
        art_reference=_text(payload, "art_url"),
        position=parse_clock(payload.get("position")),
        duration=parse_clock(payload.get("duration")),
        status=PlaybackStatus.parse(payload.get("status")),
        player=_text(payload, "player") or None,
    )


def detect_change(previous: Track | None, current: Track | None,
                  tolerance: float = POSITION_TOLERANCE) -> ChangeEvent | None:
    """Classify the step from the last emitted track to a fresh one.

    A track change always wins over a position change in the same tick.
    Positions are only compared when the fresh track reports one; a
    previously unknown position becoming known counts as a move.
    """
    previous_active = previous is not None and previous.is_active
    current_active = current is not None and current.is_active
    if not previous_active and not current_active:
        return None

    track_changed = (
        previous is None
        or current is None
        or previous.title != current.title
        or previous.artist != current.artist
        or previous.status != current.status
    )
    was_playing = previous is not None and previous.is_playing
    is_playing = current is not None and current.is_playing
    if track_changed or was_playing != is_playing:
        return ChangeEvent.TRACK

    if current.position is None:
        return None
    if previous.position is None or abs(previous.position - current.position) > tolerance:
        return ChangeEvent.POSITION
    return None
