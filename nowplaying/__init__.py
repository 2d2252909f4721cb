"""
nowplaying — watch an external media player and serve what it is playing.

  lib/monitor.py   PlaybackMonitor: polls a source, emits track/position changes
  lib/artwork.py   ArtworkCache: artwork reference → validated local file
  sources/         playerctl, AppleScript and media-session backends
  service.py       HTTP + WebSocket surface for the UI
"""

__version__ = "0.1.0"
