from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Protocol

from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ConfigError, ObjectNotFoundError, StoreUnavailableError

if TYPE_CHECKING:
    from .settings import StoreSettings

LOG = logging.getLogger("s3_shuffle.store")

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class ObjectBody(Protocol):
    def read(self, size: int = -1) -> bytes: ...

    def close(self) -> None: ...


class ObjectStore(Protocol):
    """Blocking access to a bucket; callers run these methods in worker threads."""

    def list_keys(self) -> list[str]: ...

    def get(self, key: str) -> ObjectBody: ...


class _S3ObjectBody:
    """Wraps a botocore ``StreamingBody`` so read failures become store errors."""

    def __init__(self, key: str, body: Any):
        self._key = key
        self._body = body

    def read(self, size: int = -1) -> bytes:
        try:
            return self._body.read(None if size < 0 else size)
        except (BotoCoreError, ClientError, OSError) as error:
            msg = f"reading {self._key!r} failed: {error}"
            raise StoreUnavailableError(msg) from error

    def close(self) -> None:
        self._body.close()


class S3ObjectStore:
    def __init__(self, settings: StoreSettings):
        self._settings = settings
        self._client: Any = None
        self._client_lock = threading.Lock()

    @property
    def bucket(self) -> str | None:
        return self._settings.bucket

    def describe(self) -> str:
        endpoint = self._settings.endpoint or "aws"
        bucket = self._settings.bucket or "<unset>"
        return f"{endpoint} ({self._settings.effective_region}) bucket={bucket}"

    def list_keys(self) -> list[str]:
        client = self._get_client()
        keys: list[str] = []
        try:
            paginator = client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._settings.bucket):
                for item in page.get("Contents", []):
                    key = item["Key"]
                    if key.endswith("/"):
                        # Folder placeholder, nothing to stream.
                        continue
                    keys.append(key)
        except (BotoCoreError, ClientError) as error:
            msg = f"listing bucket {self._settings.bucket!r} failed: {error}"
            raise StoreUnavailableError(msg) from error
        LOG.debug("listed %d keys in %s", len(keys), self._settings.bucket)
        return keys

    def get(self, key: str) -> ObjectBody:
        client = self._get_client()
        LOG.info("downloading s3://%s/%s", self._settings.bucket, key)
        try:
            result = client.get_object(Bucket=self._settings.bucket, Key=key)
        except ClientError as error:
            code = error.response.get("Error", {}).get("Code")
            if code in _NOT_FOUND_CODES:
                msg = f"s3://{self._settings.bucket}/{key} does not exist"
                raise ObjectNotFoundError(msg) from error
            msg = f"get_object for {key!r} failed: {error}"
            raise StoreUnavailableError(msg) from error
        except BotoCoreError as error:
            msg = f"get_object for {key!r} failed: {error}"
            raise StoreUnavailableError(msg) from error
        return _S3ObjectBody(key, result["Body"])

    def _get_client(self):
        if self._client is not None:
            return self._client
        # Worker threads may race here on the first burst of requests.
        with self._client_lock:
            if self._client is None:
                if not self._settings.bucket:
                    msg = "bucket name is not configured (S3_SHUFFLE_BUCKET / BUCKET_NAME)"
                    raise ConfigError(msg)
                self._client = self._build_client()
                LOG.info("connected to object store %s", self.describe())
        return self._client

    def _build_client(self):
        session = Session(
            aws_access_key_id=self._settings.access_key,
            aws_secret_access_key=self._settings.secret_key,
            region_name=self._settings.effective_region,
        )
        return session.client(
            "s3",
            endpoint_url=self._settings.endpoint,
            config=BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": 3},
                s3={"addressing_style": self._settings.addressing_style},
            ),
        )
