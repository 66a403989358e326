from __future__ import annotations

import io
import threading
from collections import Counter
from typing import TYPE_CHECKING

import pytest
from s3_shuffle.errors import ObjectNotFoundError

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path


SETTINGS_ENV_NAMES = (
    "S3_SHUFFLE_ENDPOINT",
    "ENDPOINT",
    "S3_SHUFFLE_KEY_ID",
    "KEY_ID",
    "S3_SHUFFLE_APPLICATION_KEY",
    "APPLICATION_KEY",
    "S3_SHUFFLE_BUCKET",
    "BUCKET_NAME",
    "S3_SHUFFLE_REGION",
    "REGION",
    "S3_SHUFFLE_DEFAULT_REGION",
    "S3_SHUFFLE_ADDRESSING_STYLE",
    "S3_SHUFFLE_CACHE_DIR",
    "S3_SHUFFLE_CHUNK_SIZE",
    "S3_SHUFFLE_FAILURE_TTL",
    "S3_SHUFFLE_TRUST_EXISTING",
    "S3_SHUFFLE_STATIC_DIR",
)


class FakeStore:
    """In-memory object store that records every ``get``.

    Setting ``gate`` holds each ``get`` open until the event is set, which
    keeps a download in flight while a test piles up concurrent callers.
    """

    def __init__(self, objects: dict[str, bytes] | None = None):
        self.objects: dict[str, bytes] = dict(objects or {})
        self.get_calls: Counter[str] = Counter()
        self.list_calls = 0
        self.list_error: Exception | None = None
        self.get_errors: dict[str, Exception] = {}
        self.bodies: dict[str, object] = {}
        self.gate: threading.Event | None = None
        self.started = threading.Event()

    def list_keys(self) -> list[str]:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return list(self.objects)

    def get(self, key: str):
        self.get_calls[key] += 1
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if key in self.get_errors:
            raise self.get_errors[key]
        if key in self.bodies:
            return self.bodies[key]
        if key not in self.objects:
            msg = f"{key} does not exist"
            raise ObjectNotFoundError(msg)
        return io.BytesIO(self.objects[key])


@pytest.fixture(autouse=True)
def clean_env(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> Generator[None]:
    """Isolate tests from the caller's environment and any ``.env`` file."""
    for name in SETTINGS_ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    workdir = tmp_path / "workdir"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    yield


@pytest.fixture
def store_env(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set up environment variables for a B2-style bucket."""
    env_vars = {
        "S3_SHUFFLE_ENDPOINT": "http://127.0.0.1:9000",
        "S3_SHUFFLE_KEY_ID": "key-id",
        "S3_SHUFFLE_APPLICATION_KEY": "application-key",
        "S3_SHUFFLE_BUCKET": "media",
        "S3_SHUFFLE_REGION": "us-west-004",
    }
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    return env_vars


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def media_bytes() -> bytes:
    """Return 1000 bytes with no repeating 100-byte window."""
    return bytes(i % 251 for i in range(1000))
