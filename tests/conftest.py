"""Shared fixtures: a scripted snapshot source and image files on disk."""

import pytest

from nowplaying.lib import config
from nowplaying.sources.base import SnapshotSource

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 28
WEBP_BYTES = b"RIFF\x24\x00\x00\x00WEBPVP8 " + b"\x00" * 16


class FakeSource(SnapshotSource):
    """Replays a list of snapshots; exceptions in the list are raised."""

    id = "fake"
    name = "Fake source"

    def __init__(self, snapshots=()):
        self.snapshots = list(snapshots)
        self.fetches = 0
        self.commands = []
        self.closed = False

    def push(self, *items):
        self.snapshots.extend(items)

    async def fetch(self):
        self.fetches += 1
        if not self.snapshots:
            return None
        item = self.snapshots.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def play_pause(self):
        self.commands.append("play_pause")
        return True

    async def next_track(self):
        self.commands.append("next_track")
        return True

    async def prev_track(self):
        self.commands.append("prev_track")
        return True

    async def close(self):
        self.closed = True


def snapshot(title="A", artist="X", status="playing", position=10, **extra):
    data = {"title": title, "artist": artist, "album": "Album", "status": status,
            "position": position, "duration": 200}
    data.update(extra)
    return data


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def make_image(tmp_path):
    """Write an image file under tmp_path/src and return its path."""
    src = tmp_path / "src"
    src.mkdir(exist_ok=True)

    def _make(name="cover.png", data=PNG_BYTES, size=None):
        if size is not None:
            data = data + b"\x00" * max(0, size - len(data))
        path = src / name
        path.write_bytes(data)
        return path

    return _make


@pytest.fixture
def cache_dir(tmp_path):
    return tmp_path / "cache"


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """Point the config loader at a temp file and reset its cache around the test."""
    path = tmp_path / "config.json"
    monkeypatch.setenv("NOWPLAYING_CONFIG", str(path))
    monkeypatch.chdir(tmp_path)
    config._config = None
    yield path
    config._config = None
