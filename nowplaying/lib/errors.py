# nowplaying-monitor
# SPDX-License-Identifier: GPL-3.0-or-later

"""Failure types raised inside the monitor, sources and artwork cache.

None of these cross a component boundary: PlaybackMonitor folds source
errors into a "no track" tick and ArtworkCache.resolve() turns artwork
errors into ``None``.
"""


class NowPlayingError(Exception):
    """Base class for recoverable now-playing failures."""


class SourceUnavailable(NowPlayingError):
    """The snapshot source cannot be reached (binary missing, helper dead)."""


class MalformedSnapshot(NowPlayingError):
    """The source answered but the payload could not be parsed."""


class ArtworkFetchFailure(NowPlayingError):
    """Artwork could not be copied or downloaded."""


class InvalidArtwork(ArtworkFetchFailure):
    """Fetched bytes do not start with a known image signature."""
