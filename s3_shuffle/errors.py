"""Error types raised by the store adapter, the cache and the gateway."""

from __future__ import annotations


class StoreError(Exception):
    """Base class for failures reported by an object store."""


class ObjectNotFoundError(StoreError):
    """The requested key does not exist in the bucket."""


class StoreUnavailableError(StoreError):
    """The store could not be reached or failed while transferring data."""


class GatewayError(Exception):
    """Base class for errors that map onto an HTTP response.

    ``public_message`` is the only text a client ever sees; the exception
    message and its cause are for the server log.
    """

    status_code = 500
    public_message = "Internal server error"


class ConfigError(GatewayError):
    public_message = "Service is not configured"


class ListError(GatewayError):
    public_message = "Failed to list files"


class EmptySetError(GatewayError):
    status_code = 404
    public_message = "No files available"


class InvalidKeyError(GatewayError):
    status_code = 400
    public_message = "Invalid file name"


class DownloadError(GatewayError):
    def __init__(self, key: str, *, not_found: bool = False):
        reason = "not found" if not_found else "transfer failed"
        super().__init__(f"download of {key!r} failed: {reason}")
        self.key = key
        self.not_found = not_found

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 404 if self.not_found else 500

    @property
    def public_message(self) -> str:  # type: ignore[override]
        return "File not found" if self.not_found else "Failed to download file"


class StorageError(GatewayError):
    public_message = "Failed to cache file"


class RangeError(GatewayError):
    status_code = 416
    public_message = "Requested range not satisfiable"

    def __init__(self, header: str, size: int):
        super().__init__(f"unsatisfiable range {header!r} for {size} bytes")
        self.header = header
        self.size = size
