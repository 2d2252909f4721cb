# nowplaying-monitor
# SPDX-License-Identifier: GPL-3.0-or-later

"""
ArtworkCache — disk-backed LRU cache mapping artwork references to local URIs.

A reference is whatever the player reported: an absolute path, a file:// URI
or an http(s) URL.  resolve() copies or downloads it into the cache directory,
checks the image signature and hands back a file:// URI.

Guarantees:
  - at most one copy/download in flight per reference; concurrent callers
    share its result
  - remote downloads retry with exponential backoff (1s, 2s, ...)
  - bytes that are not PNG/JPEG/WebP are deleted and never cached
  - entry count and total bytes stay within budget after every insert
    (one file larger than the whole byte budget is admitted anyway)
  - an evicted entry's file is removed together with its accounting row

The in-memory map is the only index.  A fresh process starts with an empty
cache; files left over from an earlier run are only replaced or cleaned up
when their name comes round again.
"""

import asyncio
import hashlib
import logging
import os
import shutil
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

import aiohttp

from .errors import ArtworkFetchFailure, InvalidArtwork

log = logging.getLogger(__name__)

MAX_CACHE_BYTES = 100 * 1024 * 1024  # 100 MiB
MAX_CACHE_ENTRIES = 200
MAX_RETRIES = 3
DOWNLOAD_TIMEOUT = 10.0  # seconds per attempt

IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp")
DEFAULT_SUFFIX = ".jpg"

# Shared thread pool for blocking file copies and header reads
_io_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="artwork-io")


@dataclass
class CacheEntry:
    path: Path
    size: int
    last_access: float

    @property
    def uri(self) -> str:
        return self.path.as_uri()


def detect_image_type(head: bytes) -> str | None:
    """Return "png", "jpeg" or "webp" from a file's leading bytes."""
    if head[:4] == b"\x89PNG":
        return "png"
    if head[:3] == b"\xff\xd8\xff":
        return "jpeg"
    if head[:4] == b"RIFF":
        return "webp"
    return None


def reference_kind(reference) -> str | None:
    """Classify a reference as "file" or "http"; None if unsupported."""
    if not reference or not isinstance(reference, str):
        return None
    lowered = reference.lower()
    if lowered.startswith(("http://", "https://")):
        return "http"
    if lowered.startswith("file://") or os.path.isabs(reference):
        return "file"
    return None


def local_path(reference: str) -> Path:
    """Filesystem path for a file:// URI or a plain absolute path."""
    if reference.lower().startswith("file://"):
        return Path(url2pathname(urlparse(reference).path))
    return Path(reference)


def cache_filename(reference: str) -> str:
    """Deterministic cache file name derived from the reference itself."""
    digest = hashlib.sha256(reference.encode("utf-8")).hexdigest()[:32]
    if reference_kind(reference) == "http" or reference.lower().startswith("file://"):
        source_path = urlparse(reference).path
    else:
        source_path = reference
    suffix = os.path.splitext(source_path)[1].lower()
    if suffix not in IMAGE_SUFFIXES:
        suffix = DEFAULT_SUFFIX
    return f"artwork_{digest}{suffix}"


def _copy_file(source: Path, target: Path):
    if not source.is_file():
        raise ArtworkFetchFailure(f"{source} does not exist")
    if target.exists():
        log.debug("Reusing existing copy %s", target.name)
        return
    shutil.copyfile(source, target)


def _read_head(path: Path, count: int = 12) -> bytes:
    with open(path, "rb") as f:
        return f.read(count)


def _write_file(path: Path, data: bytes):
    with open(path, "wb") as f:
        f.write(data)


class ArtworkCache:
    """LRU cache of validated artwork files (reference -> CacheEntry)."""

    def __init__(self, cache_dir, max_bytes: int = MAX_CACHE_BYTES,
                 max_entries: int = MAX_CACHE_ENTRIES, max_retries: int = MAX_RETRIES,
                 download_timeout: float = DOWNLOAD_TIMEOUT, backoff_base: float = 1.0,
                 session: aiohttp.ClientSession | None = None, sleep=None):
        self.cache_dir = Path(cache_dir).expanduser()
        self.max_bytes = max_bytes
        self.max_entries = max_entries
        self.max_retries = max(1, max_retries)
        self.download_timeout = download_timeout
        self.backoff_base = backoff_base
        self.fetch_count = 0  # underlying copies/downloads started

        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._size = 0
        self._inflight: dict[str, asyncio.Task] = {}
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep or asyncio.sleep

    def __contains__(self, reference: str):
        return reference in self._entries

    def __len__(self):
        return len(self._entries)

    @property
    def size_bytes(self) -> int:
        return self._size

    # ── Lookups ──

    def get_cached(self, reference: str) -> str | None:
        """Return the cached URI and mark it recently used.  No I/O."""
        entry = self._entries.get(reference)
        if entry is None:
            return None
        entry.last_access = time.monotonic()
        self._entries.move_to_end(reference)
        return entry.uri

    def path_for(self, filename: str) -> Path | None:
        """Path of a live cache file by name, or None if it is not cached."""
        for entry in self._entries.values():
            if entry.path.name == filename:
                return entry.path
        return None

    def stats(self) -> dict:
        return {
            "entries": len(self._entries),
            "size_bytes": self._size,
            "size_mb": round(self._size / (1024 * 1024), 2),
            "max_entries": self.max_entries,
            "max_bytes": self.max_bytes,
            "fetches": self.fetch_count,
        }

    # ── Resolve ──

    async def resolve(self, reference) -> str | None:
        """Map an artwork reference to a local file:// URI, or None."""
        kind = reference_kind(reference)
        if kind is None:
            return None

        cached = self.get_cached(reference)
        if cached is not None:
            log.debug("Artwork cache hit for %s", reference)
            return cached

        task = self._inflight.get(reference)
        if task is None:
            log.debug("Artwork cache miss, fetching: %s", reference)
            task = asyncio.create_task(self._fetch(reference, kind))
            self._inflight[reference] = task
            task.add_done_callback(lambda t: self._forget(reference, t))
        else:
            log.debug("Joining in-flight fetch for %s", reference)

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return None
            raise
        except ArtworkFetchFailure as e:
            log.warning("No artwork for %s: %s", reference, e)
            return None
        except Exception as e:
            log.warning("Error caching artwork %s: %s", reference, e)
            return None

    def _forget(self, reference: str, task: asyncio.Task):
        if self._inflight.get(reference) is task:
            del self._inflight[reference]

    async def _fetch(self, reference: str, kind: str) -> str:
        self.fetch_count += 1
        try:
            await self._run_io(self._make_cache_dir)
        except OSError as e:
            raise ArtworkFetchFailure(f"cannot create {self.cache_dir}: {e}") from e

        target = self.cache_dir / cache_filename(reference)
        try:
            if kind == "file":
                try:
                    await self._run_io(_copy_file, local_path(reference), target,
                                       timeout=self.download_timeout, cleanup=(target,))
                except asyncio.TimeoutError:
                    raise ArtworkFetchFailure(
                        f"copy did not finish within {self.download_timeout:.1f}s") from None
                except OSError as e:
                    raise ArtworkFetchFailure(f"copy failed: {e}") from e
            else:
                await self._download_with_retry(reference, target)

            await self._validate(target)
        except asyncio.CancelledError:
            # Cancelled by dispose(); no file may outlive the entry
            self._remove_file(target)
            raise

        try:
            size = target.stat().st_size
        except OSError as e:
            raise ArtworkFetchFailure(f"cannot stat {target}: {e}") from e
        return self._admit(reference, target, size)

    async def _run_io(self, func, *args, timeout: float | None = None, cleanup=()):
        """Run blocking file work on the I/O pool.

        A worker thread cannot be interrupted.  On cancellation this waits
        for it to finish before re-raising; on timeout the *cleanup* paths
        are removed once it does.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(_io_executor, func, *args)
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.CancelledError:
            await asyncio.gather(future, return_exceptions=True)
            raise
        except asyncio.TimeoutError:
            future.add_done_callback(lambda _: [self._remove_file(p) for p in cleanup])
            raise

    def _make_cache_dir(self):
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    async def _validate(self, path: Path):
        try:
            head = await self._run_io(_read_head, path)
        except OSError as e:
            head = b""
            log.debug("Could not read %s: %s", path, e)
        if detect_image_type(head) is None:
            self._remove_file(path)
            raise InvalidArtwork(f"{path.name} is not a PNG, JPEG or WebP image")

    # ── Download ──

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _download_with_retry(self, url: str, target: Path):
        for attempt in range(1, self.max_retries + 1):
            try:
                await self._download(url, target)
                return
            except ArtworkFetchFailure as e:
                if attempt == self.max_retries:
                    raise
                delay = self.backoff_base * 2 ** (attempt - 1)
                log.info("Artwork download attempt %d/%d failed (%s), retrying in %.1fs",
                         attempt, self.max_retries, e, delay)
                await self._sleep(delay)

    async def _download(self, url: str, target: Path):
        session = await self._get_session()
        part = target.with_name(target.name + ".part")
        try:
            async with session.get(
                url, timeout=aiohttp.ClientTimeout(total=self.download_timeout)
            ) as resp:
                if resp.status != 200:
                    raise ArtworkFetchFailure(f"HTTP {resp.status}")
                data = await resp.read()
            if not data:
                raise ArtworkFetchFailure("empty response")
            await self._run_io(_write_file, part, data)
            os.replace(part, target)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise ArtworkFetchFailure(str(e) or type(e).__name__) from e
        finally:
            if part.exists():
                self._remove_file(part)

    # ── Accounting ──
    #
    # _admit() and _evict_for() never await, so on the event loop an
    # eviction followed by an insert is one atomic step.

    def _admit(self, reference: str, path: Path, size: int) -> str:
        self._evict_for(size)
        entry = CacheEntry(path=path, size=size, last_access=time.monotonic())
        self._entries[reference] = entry
        self._size += size
        log.info("Cached artwork %s (%d bytes, %d items, %.2f MB in cache)",
                 path.name, size, len(self._entries), self._size / (1024 * 1024))
        return entry.uri

    def _evict_for(self, incoming: int):
        while self._entries and (
            len(self._entries) >= self.max_entries
            or self._size + incoming > self.max_bytes
        ):
            reference, entry = next(iter(self._entries.items()))
            self._remove_file(entry.path)
            del self._entries[reference]
            self._size -= entry.size
            log.debug("Evicted %s (%d bytes)", reference, entry.size)

        if self._size + incoming > self.max_bytes:
            log.warning("Artwork of %d bytes exceeds the %d byte budget, caching anyway",
                        incoming, self.max_bytes)

    @staticmethod
    def _remove_file(path: Path) -> bool:
        try:
            os.unlink(path)
            return True
        except FileNotFoundError:
            return True
        except OSError as e:
            log.warning("Could not delete %s: %s", path, e)
            return False

    # ── Disposal ──

    async def dispose(self):
        """Delete every cached file and forget all entries."""
        pending = list(self._inflight.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._inflight.clear()

        failed = 0
        for reference, entry in list(self._entries.items()):
            if not self._remove_file(entry.path):
                failed += 1
            del self._entries[reference]
            self._size -= entry.size
        self._size = 0

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        if failed:
            log.warning("Artwork cache disposed, %d files could not be deleted", failed)
        else:
            log.info("Artwork cache disposed")
