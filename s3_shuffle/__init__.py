"""HTTP gateway streaming random media objects from an S3-compatible bucket."""

from .app import create_app
from .cache import CachedObject, FetchCache
from .gateway import StreamGateway
from .selector import KeySelector
from .settings import GatewaySettings, StoreSettings
from .store import S3ObjectStore

__all__ = [
    "CachedObject",
    "FetchCache",
    "GatewaySettings",
    "KeySelector",
    "S3ObjectStore",
    "StoreSettings",
    "StreamGateway",
    "create_app",
]
