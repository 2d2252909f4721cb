# nowplaying-monitor
# SPDX-License-Identifier: GPL-3.0-or-later

"""
SnapshotSource — the contract between PlaybackMonitor and a media backend.

A source queries an external player it does not control and answers with a
snapshot dict (see nowplaying.lib.track for the keys) or None when there is
no active session.  It also forwards playback commands; their effect is
observed on a later poll, not acknowledged here.

Subclass contract:

    class MySource(SnapshotSource):
        id   = "playerctl"
        name = "playerctl (MPRIS)"

        async def fetch(self) -> dict | None: ...
        async def play_pause(self) -> bool: ...
        async def next_track(self) -> bool: ...
        async def prev_track(self) -> bool: ...

Optional overrides:
    check_available()  — probe for the backend (binary present, helper starts)
    close()            — release processes or handles

Errors:
    SourceUnavailable  — the backend cannot be reached at all
    MalformedSnapshot  — it answered with something unparseable
"""


class SnapshotSource:
    # ── Subclass must set these ──
    id: str = ""
    name: str = ""

    # ── Abstract methods (subclass must implement) ──

    async def fetch(self) -> dict | None:
        """Return the current snapshot, or None when nothing is loaded."""
        raise NotImplementedError

    async def play_pause(self) -> bool:
        raise NotImplementedError

    async def next_track(self) -> bool:
        raise NotImplementedError

    async def prev_track(self) -> bool:
        raise NotImplementedError

    # ── Optional hooks ──

    async def check_available(self) -> bool:
        """Return True if the backend looks usable."""
        return True

    async def close(self):
        """Release any process or handle held by the source."""

    def __repr__(self):
        return f"<{type(self).__name__} {self.id}>"
