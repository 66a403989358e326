"""Local disk cache that downloads each object key at most once.

Completed objects live under ``<cache_dir>/objects`` at a path mirroring the
key's ``/``-separated segments. Downloads are written to
``<cache_dir>/incoming`` first and moved into place with ``os.replace``, so a
file at its final path is always complete.

Concurrent ``resolve`` calls for a key that is still downloading join the
running transfer instead of starting another one.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import anyio
from anyio import to_thread

from .errors import (
    DownloadError,
    GatewayError,
    InvalidKeyError,
    ObjectNotFoundError,
    StorageError,
    StoreUnavailableError,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from anyio import AsyncFile

    from .store import ObjectStore

LOG = logging.getLogger("s3_shuffle.cache")

OBJECTS_DIR = "objects"
INCOMING_DIR = "incoming"
PART_SUFFIX = ".part"


async def _run_sync(func: Callable[..., Any], /, *args: Any) -> Any:
    return await to_thread.run_sync(func, *args)


class EntryState(Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class CachedObject:
    """A completed local copy of an object."""

    key: str
    path: Path
    size: int
    modified: datetime

    async def open(self) -> AsyncFile[bytes]:
        """Open the cached file for reading; the returned file is seekable."""
        return await anyio.open_file(self.path, "rb")


@dataclass
class InFlightDownload:
    """A running transfer shared by the downloader and every caller that joined it."""

    done: anyio.Event = field(default_factory=anyio.Event)
    joined: int = 0
    result: CachedObject | None = None
    error: BaseException | None = None


@dataclass
class CacheEntry:
    key: str
    path: Path
    state: EntryState = EntryState.PENDING
    cached: CachedObject | None = None
    error: DownloadError | None = None
    failed_at: float | None = None
    download: InFlightDownload | None = None


class FetchCache:
    def __init__(
        self,
        store: ObjectStore,
        cache_dir: str | os.PathLike[str],
        *,
        chunk_size: int = 1024 * 1024,
        failure_ttl: float | None = None,
        trust_existing: bool = True,
    ):
        root = Path(cache_dir).absolute()
        self._store = store
        self._objects_dir = root / OBJECTS_DIR
        self._incoming_dir = root / INCOMING_DIR
        self._chunk_size = chunk_size
        self._failure_ttl = failure_ttl
        self._trust_existing = trust_existing
        self._entries: dict[str, CacheEntry] = {}
        self._lock: anyio.Lock | None = None

    @property
    def objects_dir(self) -> Path:
        return self._objects_dir

    @property
    def incoming_dir(self) -> Path:
        return self._incoming_dir

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> dict[str, EntryState]:
        """Snapshot of the index as key -> state."""
        return {key: entry.state for key, entry in self._entries.items()}

    def path_for(self, key: str) -> Path:
        """Map an object key onto its cache path.

        Raises:
            InvalidKeyError: the key is empty, contains a NUL or backslash, or
                has an empty, ``.`` or ``..`` segment.
        """
        if not key or "\x00" in key or "\\" in key:
            msg = f"invalid object key {key!r}"
            raise InvalidKeyError(msg)
        segments = key.split("/")
        if any(segment in {"", ".", ".."} for segment in segments):
            msg = f"invalid object key {key!r}"
            raise InvalidKeyError(msg)
        return self._objects_dir.joinpath(*segments)

    async def startup(self) -> None:
        """Prepare the cache directories and index files left by a previous run."""
        found = await _run_sync(self._scan)
        indexed = 0
        async with self._index_lock():
            for cached in found:
                if cached.key in self._entries:
                    continue
                self._entries[cached.key] = CacheEntry(
                    key=cached.key,
                    path=cached.path,
                    state=EntryState.READY,
                    cached=cached,
                )
                indexed += 1
        LOG.info(
            "cache ready at %s (%d existing objects indexed)",
            self._objects_dir.parent,
            indexed,
        )

    async def resolve(self, key: str) -> CachedObject:
        """Return a local copy of ``key``, downloading it on first use.

        Raises:
            InvalidKeyError: the key cannot be mapped to a cache path.
            DownloadError: the store does not have the key or the transfer
                failed. The failure is remembered for the key.
            StorageError: the local write failed; a later call retries.
        """
        path = self.path_for(key)
        owner = False
        async with self._index_lock():
            entry = self._entries.get(key)
            if entry is not None and self._retry_due(entry):
                LOG.info("retrying %s after earlier failure", key)
                entry = None
            if entry is None:
                entry = CacheEntry(key=key, path=path, download=InFlightDownload())
                self._entries[key] = entry
                owner = True
            download = entry.download

        if download is None:
            if entry.state is EntryState.READY:
                if entry.cached is None:
                    msg = f"ready entry for {key!r} has no cached object"
                    raise RuntimeError(msg)
                LOG.debug("cache hit for %s", key)
                return entry.cached
            if entry.error is None:
                msg = f"failed entry for {key!r} has no recorded error"
                raise RuntimeError(msg)
            LOG.debug("cached failure for %s", key)
            # The error is shared; drop the previous raise's frames.
            raise entry.error.with_traceback(None)

        if owner:
            # A disconnecting client must not abort a transfer others may join.
            with anyio.CancelScope(shield=True):
                await self._download(entry, download)
        else:
            download.joined += 1
            LOG.debug("joined download of %s (%d waiting)", key, download.joined)
            await download.done.wait()

        if download.error is not None:
            raise download.error.with_traceback(None)
        if download.result is None:
            msg = f"download of {key!r} finished without a result"
            raise RuntimeError(msg)
        return download.result

    async def invalidate(self, key: str) -> bool:
        """Forget a ready or failed key so the next ``resolve`` downloads it again.

        Pending keys are left alone.
        """
        async with self._index_lock():
            entry = self._entries.get(key)
            if entry is None or entry.state is EntryState.PENDING:
                return False
            del self._entries[key]
        if entry.state is EntryState.READY:
            await _run_sync(self._unlink, entry.path)
        LOG.info("invalidated %s (was %s)", key, entry.state.value)
        return True

    def _index_lock(self) -> anyio.Lock:
        if self._lock is None:
            self._lock = anyio.Lock()
        return self._lock

    def _retry_due(self, entry: CacheEntry) -> bool:
        if entry.state is not EntryState.FAILED or self._failure_ttl is None:
            return False
        if entry.failed_at is None:
            return True
        return time.monotonic() - entry.failed_at >= self._failure_ttl

    async def _download(self, entry: CacheEntry, download: InFlightDownload) -> None:
        key = entry.key
        try:
            cached = await _run_sync(self._fetch_to_disk, key, entry.path)
        except DownloadError as error:
            async with self._index_lock():
                entry.state = EntryState.FAILED
                entry.error = error
                entry.failed_at = time.monotonic()
                entry.download = None
            download.error = error
            LOG.warning("download of %s failed: %s", key, error.__cause__ or error)
        except Exception as error:
            async with self._index_lock():
                entry.download = None
                if self._entries.get(key) is entry:
                    del self._entries[key]
            download.error = error
            if isinstance(error, GatewayError):
                LOG.warning("caching %s failed: %s", key, error.__cause__ or error)
            else:
                LOG.exception("unexpected error while downloading %s", key)
        else:
            async with self._index_lock():
                entry.state = EntryState.READY
                entry.cached = cached
                entry.download = None
            download.result = cached
            LOG.info("cached %s (%d bytes)", key, cached.size)
        finally:
            download.done.set()

    def _fetch_to_disk(self, key: str, path: Path) -> CachedObject:
        try:
            body = self._store.get(key)
        except ObjectNotFoundError as error:
            raise DownloadError(key, not_found=True) from error
        except StoreUnavailableError as error:
            raise DownloadError(key) from error

        part = self._incoming_dir / f"{uuid.uuid4().hex}{PART_SUFFIX}"
        try:
            self._incoming_dir.mkdir(parents=True, exist_ok=True)
            with open(part, "wb") as handle:
                while True:
                    chunk = body.read(self._chunk_size)
                    if not chunk:
                        break
                    handle.write(chunk)
            path.parent.mkdir(parents=True, exist_ok=True)
            os.replace(part, path)
            stat = path.stat()
        except StoreUnavailableError as error:
            raise DownloadError(key) from error
        except OSError as error:
            msg = f"writing {key!r} to the cache failed"
            raise StorageError(msg) from error
        finally:
            body.close()
            self._unlink(part)
        return CachedObject(
            key=key,
            path=path,
            size=stat.st_size,
            modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
        )

    def _scan(self) -> list[CachedObject]:
        self._objects_dir.mkdir(parents=True, exist_ok=True)
        self._incoming_dir.mkdir(parents=True, exist_ok=True)
        for leftover in self._incoming_dir.glob(f"*{PART_SUFFIX}"):
            LOG.debug("removing leftover partial download %s", leftover.name)
            self._unlink(leftover)
        if not self._trust_existing:
            return []

        found: list[CachedObject] = []
        for dirpath, _dirnames, filenames in os.walk(self._objects_dir):
            for filename in filenames:
                path = Path(dirpath, filename)
                key = path.relative_to(self._objects_dir).as_posix()
                try:
                    if self.path_for(key) != path:
                        continue
                    stat = path.stat()
                except (InvalidKeyError, OSError):
                    continue
                found.append(
                    CachedObject(
                        key=key,
                        path=path,
                        size=stat.st_size,
                        modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                    )
                )
        return found

    @staticmethod
    def _unlink(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
