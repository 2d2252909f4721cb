"""Tests for the HTTP + WebSocket service."""

import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer
from conftest import PNG_BYTES, FakeSource, snapshot

from nowplaying.lib.artwork import ArtworkCache
from nowplaying.lib.monitor import PlaybackMonitor
from nowplaying.service import NowPlayingService


def make_service(cache_dir, *snapshots):
    source = FakeSource(snapshots)
    monitor = PlaybackMonitor(source)
    service = NowPlayingService(monitor, ArtworkCache(cache_dir))
    service.attach()
    return service, source


async def serve(service):
    client = TestClient(TestServer(service.make_app()))
    await client.start_server()
    return client


class TestHttpRoutes:

    def test_now_playing_and_status(self, cache_dir):
        service, _ = make_service(cache_dir, snapshot(title="Song", artist="Band"))

        async def run():
            client = await serve(service)
            try:
                before = await (await client.get("/now_playing")).json()
                await service.monitor.poll_once()
                resp = await client.get("/now_playing")
                after = await resp.json()
                cors = resp.headers.get("Access-Control-Allow-Origin")
                status = await (await client.get("/status")).json()
                return before, after, cors, status
            finally:
                await client.close()
                await service.shutdown()

        before, after, cors, status = asyncio.run(run())
        assert before == {"track": None}
        assert after["track"]["title"] == "Song"
        assert after["track"]["artist"] == "Band"
        assert after["track"]["state"] == "playing"
        assert after["track"]["artwork"] is None
        assert cors == "*"
        assert status["source"] == "fake"
        assert status["polling"] is False
        assert status["artwork_cache"]["entries"] == 0

    def test_paused_track_is_reported_stopped_is_not(self, cache_dir):
        service, _ = make_service(cache_dir, snapshot(status="paused"), snapshot(status="stopped"))

        async def run():
            client = await serve(service)
            try:
                await service.monitor.poll_once()
                paused = await (await client.get("/now_playing")).json()
                await service.monitor.poll_once()
                stopped = await (await client.get("/now_playing")).json()
                return paused, stopped
            finally:
                await client.close()
                await service.shutdown()

        paused, stopped = asyncio.run(run())
        assert paused["track"]["state"] == "paused"
        assert stopped == {"track": None}

    def test_commands(self, cache_dir):
        service, source = make_service(cache_dir)

        async def run():
            client = await serve(service)
            try:
                return [await (await client.post(f"/player/{name}")).json()
                        for name in ("play_pause", "next", "prev")]
            finally:
                await client.close()
                await service.shutdown()

        assert asyncio.run(run()) == [{"status": "ok"}] * 3
        assert source.commands == ["play_pause", "next_track", "prev_track"]

    def test_unknown_artwork_is_404(self, cache_dir):
        service, _ = make_service(cache_dir)

        async def run():
            client = await serve(service)
            try:
                resp = await client.get("/artwork/artwork_nope.jpg")
                return resp.status
            finally:
                await client.close()
                await service.shutdown()

        assert asyncio.run(run()) == 404


class TestWebSocket:

    def test_track_artwork_and_position_flow(self, cache_dir, make_image):
        image = make_image("cover.png")
        service, _ = make_service(
            cache_dir,
            snapshot(title="Song", art_url=str(image), position=10),
            snapshot(title="Song", art_url=str(image), position=95),
        )

        async def run():
            client = await serve(service)
            try:
                ws = await client.ws_connect("/ws")
                hello = await ws.receive_json(timeout=5)

                await service.monitor.poll_once()
                changed = await ws.receive_json(timeout=5)
                with_art = await ws.receive_json(timeout=5)

                await service.monitor.poll_once()
                position = await ws.receive_json(timeout=5)

                art = await client.get(with_art["data"]["artwork"])
                body = await art.read()

                await ws.close()
                return hello, changed, with_art, position, art.status, body
            finally:
                await client.close()
                await service.shutdown()

        hello, changed, with_art, position, status, body = asyncio.run(run())
        assert hello == {"type": "track_changed", "reason": "client_connect", "data": None}
        assert changed["type"] == "track_changed"
        assert changed["data"]["title"] == "Song"
        assert changed["data"]["artwork"] is None
        assert with_art["reason"] == "artwork"
        assert with_art["data"]["artwork"].startswith("/artwork/artwork_")
        assert position == {"type": "position_changed", "reason": "update", "data": {"position": 95.0}}
        assert status == 200
        assert body == PNG_BYTES

    def test_cached_artwork_is_sent_with_the_track(self, cache_dir, make_image):
        image = make_image("cover.png")
        service, _ = make_service(
            cache_dir,
            snapshot(title="One", art_url=str(image)),
            snapshot(title="Two", art_url=str(image)),
        )

        async def run():
            client = await serve(service)
            try:
                await service.artwork.resolve(str(image))
                ws = await client.ws_connect("/ws")
                await ws.receive_json(timeout=5)
                await service.monitor.poll_once()
                first = await ws.receive_json(timeout=5)
                await ws.close()
                return first
            finally:
                await client.close()
                await service.shutdown()

        first = asyncio.run(run())
        assert first["reason"] == "update"
        assert first["data"]["artwork"].startswith("/artwork/artwork_")

    def test_no_artwork_broadcast_after_track_stops(self, cache_dir, make_image):
        image = make_image("cover.png")
        service, _ = make_service(
            cache_dir,
            snapshot(title="Song", art_url=str(image)),
            snapshot(title="Song", art_url=str(image), status="stopped"),
        )
        resolve = service.artwork.resolve

        async def run():
            gate = asyncio.Event()

            async def gated_resolve(reference):
                await gate.wait()
                return await resolve(reference)

            service.artwork.resolve = gated_resolve
            client = await serve(service)
            try:
                ws = await client.ws_connect("/ws")
                await ws.receive_json(timeout=5)
                await service.monitor.poll_once()
                started = await ws.receive_json(timeout=5)
                await service.monitor.poll_once()
                stopped = await ws.receive_json(timeout=5)

                gate.set()
                await asyncio.gather(*service._tasks)
                with pytest.raises(asyncio.TimeoutError):
                    await ws.receive_json(timeout=0.3)
                await ws.close()
                return started, stopped
            finally:
                await client.close()
                await service.shutdown()

        started, stopped = asyncio.run(run())
        assert started["data"]["title"] == "Song"
        assert stopped == {"type": "track_changed", "reason": "update", "data": None}

    def test_track_cleared(self, cache_dir):
        service, _ = make_service(cache_dir, snapshot(), None)

        async def run():
            client = await serve(service)
            try:
                ws = await client.ws_connect("/ws")
                await ws.receive_json(timeout=5)
                await service.monitor.poll_once()
                await ws.receive_json(timeout=5)
                await service.monitor.poll_once()
                cleared = await ws.receive_json(timeout=5)
                await ws.close()
                return cleared
            finally:
                await client.close()
                await service.shutdown()

        assert asyncio.run(run()) == {"type": "track_changed", "reason": "update", "data": None}


class TestShutdown:

    def test_releases_everything(self, cache_dir, make_image):
        image = make_image()
        service, source = make_service(cache_dir)

        async def run():
            await service.artwork.resolve(str(image))
            assert len(list(cache_dir.iterdir())) == 1
            await service.shutdown()
            await service.shutdown()

        asyncio.run(run())
        assert source.closed
        assert len(service.artwork) == 0
        assert list(cache_dir.iterdir()) == []
        assert service._unsubscribe == []
