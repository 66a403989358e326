from __future__ import annotations

import logging
import mimetypes
from datetime import UTC, datetime
from email.utils import format_datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, urlencode

from anyio import to_thread
from litestar.response import Redirect, Response, Stream
from litestar.status_codes import HTTP_302_FOUND

from .cache import FetchCache
from .errors import GatewayError, ListError, RangeError, StoreUnavailableError
from .ranges import parse_range
from .selector import KeySelector
from .settings import load_gateway_settings_from_env, load_store_settings_from_env
from .store import S3ObjectStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from litestar import Request

    from .cache import CachedObject
    from .store import ObjectStore

LOG = logging.getLogger("s3_shuffle.gateway")

FILE_PARAM = "file"
DEFAULT_MEDIA_TYPE = "application/octet-stream"


async def _run_sync(func: Callable[..., Any], /, *args: Any) -> Any:
    return await to_thread.run_sync(func, *args)


class StreamGateway:
    def __init__(
        self,
        store: ObjectStore,
        cache: FetchCache,
        selector: KeySelector | None = None,
        *,
        chunk_size: int = 64 * 1024,
    ):
        self._store = store
        self._cache = cache
        self._selector = selector or KeySelector()
        self._chunk_size = chunk_size

    @property
    def cache(self) -> FetchCache:
        return self._cache

    async def startup(self) -> None:
        await self._cache.startup()
        describe = getattr(self._store, "describe", None)
        LOG.info(
            "stream gateway ready (store=%s)",
            describe() if callable(describe) else type(self._store).__name__,
        )

    async def shutdown(self) -> None:
        LOG.info("stream gateway stopped (%d cached keys)", len(self._cache))

    async def handle(self, request: Request) -> Response:
        key = request.query_params.get(FILE_PARAM)
        LOG.debug("handle method=%s key=%r", request.method, key)
        try:
            if not key:
                return await self._redirect_to_random(request)
            return await self._serve(request, key)
        except GatewayError as error:
            return self._error_response(error, key)

    async def _redirect_to_random(self, request: Request) -> Response:
        try:
            keys = await _run_sync(self._store.list_keys)
        except StoreUnavailableError as error:
            msg = "listing objects failed"
            raise ListError(msg) from error

        key = self._selector.pick_random(keys)
        LOG.info("selected random file %s (from %d)", key, len(keys))
        query = urlencode({FILE_PARAM: key}, safe="/", quote_via=quote)
        return Redirect(path=f"{request.url.path}?{query}", status_code=HTTP_302_FOUND)

    async def _serve(self, request: Request, key: str) -> Response:
        cached = await self._cache.resolve(key)

        range_header = request.headers.get("range")
        if range_header:
            LOG.debug("range header %r for %s", range_header, key)
        byte_range = parse_range(range_header, cached.size)

        headers = {
            "Accept-Ranges": "bytes",
            "Last-Modified": self._format_header_value(cached.modified),
        }
        if byte_range is None:
            start, length = 0, cached.size
            status_code = 200
        else:
            start, length = byte_range.start, byte_range.length
            headers["Content-Range"] = byte_range.content_range(cached.size)
            status_code = 206
        headers["Content-Length"] = str(length)

        media_type = mimetypes.guess_type(key)[0] or DEFAULT_MEDIA_TYPE
        if request.method == "HEAD":
            content = self._empty_body()
        else:
            content = self._read_body(cached, start, length)
        LOG.debug("serving %s status=%s bytes=%d", key, status_code, length)
        return Stream(
            content=content,
            status_code=status_code,
            headers=headers,
            media_type=media_type,
        )

    async def _read_body(
        self, cached: CachedObject, start: int, length: int
    ) -> AsyncIterator[bytes]:
        remaining = length
        async with await cached.open() as stream:
            await stream.seek(start)
            while remaining > 0:
                chunk = await stream.read(min(self._chunk_size, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk

    @staticmethod
    async def _empty_body() -> AsyncIterator[bytes]:
        return
        yield b""  # pragma: no cover

    def _error_response(self, error: GatewayError, key: str | None) -> Response:
        status_code = error.status_code
        if status_code >= 500:
            LOG.warning(
                "request for %r failed: %s (cause: %s)", key, error, error.__cause__
            )
        else:
            LOG.info("request for %r rejected: %s", key, error)

        headers: dict[str, str] = {}
        if isinstance(error, RangeError):
            headers["Content-Range"] = f"bytes */{error.size}"
        return Response(
            content=error.public_message,
            status_code=status_code,
            headers=headers,
            media_type="text/plain",
        )

    @staticmethod
    def _format_header_value(value: datetime) -> str:
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return format_datetime(aware.astimezone(UTC), usegmt=True)

    @classmethod
    def from_env(cls) -> StreamGateway:
        """Create a StreamGateway backed by S3 from environment variables.

        Returns:
            StreamGateway configured from environment variables.
        """
        settings = load_gateway_settings_from_env()
        store = S3ObjectStore(load_store_settings_from_env())
        cache = FetchCache(
            store,
            settings.cache_dir,
            chunk_size=settings.chunk_size,
            failure_ttl=settings.failure_ttl,
            trust_existing=settings.trust_existing,
        )
        return cls(store, cache)
