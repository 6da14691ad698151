from __future__ import annotations

import os
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from farecheck.core.config import settings
from farecheck.core.logging import get_logger, log_event, log_exception, monotonic_ms

logger = get_logger(__name__)

T = TypeVar("T")

_RETRYABLE_S3_CODES = {
    "RequestCanceled",
    "RequestTimeout",
    "Throttling",
    "ThrottlingException",
    "SlowDown",
    "InternalError",
    "ServiceUnavailable",
}


class StorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class StoredObject:
    key: str
    byte_size: int


def screenshot_key(*, exact_hash: str, filename: str) -> str:
    """Content-addressed key; admitted screenshots never share an exact hash."""
    safe_name = re.sub(r"[^A-Za-z0-9._-]+", "_", filename or "upload.bin")[:120]
    return f"screenshots/{exact_hash[:2]}/{exact_hash}/{safe_name}"


class ObjectStorage:
    backend = "unknown"

    def put(
        self, *, key: str, body: bytes, content_type: str | None = None
    ) -> StoredObject:  # pragma: no cover
        raise NotImplementedError

    def get(self, *, key: str) -> bytes:  # pragma: no cover
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    backend = "local"

    def __init__(self, root: Path):
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:
        start = time.monotonic()
        path = self._root / key
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(body)
        except OSError:
            log_exception(
                logger, "storage.put.failure", backend=self.backend, storage_key=key
            )
            raise
        log_event(
            logger,
            "storage.put.success",
            backend=self.backend,
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body))

    def get(self, *, key: str) -> bytes:
        path = self._root / key
        if not path.exists():
            log_event(logger, "storage.get.missing", backend=self.backend, storage_key=key)
            raise StorageError(f"Object not found: {key}")
        return path.read_bytes()


class S3ObjectStorage(ObjectStorage):
    backend = "s3"
    max_attempts = 5

    def __init__(self) -> None:
        region = settings.s3_region
        if not region or region.lower() == "auto":
            region = "us-east-1"
        session = boto3.session.Session(
            aws_access_key_id=settings.s3_access_key_id,
            aws_secret_access_key=settings.s3_secret_access_key,
            region_name=region,
        )
        config = Config(
            s3={"addressing_style": "virtual"},
            retries={"max_attempts": 3, "mode": "adaptive"},
            connect_timeout=30,
            read_timeout=60,
        )
        self._client = session.client(
            "s3", endpoint_url=settings.s3_endpoint_url or None, config=config
        )
        self._bucket = settings.s3_bucket

    @staticmethod
    def _error_code(error: Exception) -> str | None:
        if isinstance(error, ClientError):
            return (error.response.get("Error") or {}).get("Code")
        return None

    def _is_retryable(self, error: Exception) -> bool:
        if isinstance(error, ClientError):
            return self._error_code(error) in _RETRYABLE_S3_CODES
        return isinstance(error, BotoCoreError)

    def _with_retry(self, op: str, key: str, fn: Callable[[], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except (ClientError, BotoCoreError) as e:
                if attempt < self.max_attempts and self._is_retryable(e):
                    # 0.25s, 0.5s, 1s, ... capped so uploads stay responsive
                    delay_s = min(3.0, 0.25 * (2 ** (attempt - 1)))
                    log_event(
                        logger,
                        f"storage.{op}.retry",
                        backend=self.backend,
                        storage_key=key,
                        attempt=attempt,
                        delay_s=delay_s,
                        error_code=self._error_code(e),
                        error_type=type(e).__name__,
                    )
                    time.sleep(delay_s)
                    continue
                log_exception(
                    logger,
                    f"storage.{op}.failure",
                    backend=self.backend,
                    storage_key=key,
                    attempt=attempt,
                )
                raise StorageError(f"S3 {op} failed for {key}") from e
        raise StorageError(f"S3 {op} failed for {key}")  # pragma: no cover

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:
        start = time.monotonic()
        extra = {"ContentType": content_type} if content_type else {}
        self._with_retry(
            "put",
            key,
            lambda: self._client.put_object(Bucket=self._bucket, Key=key, Body=body, **extra),
        )
        log_event(
            logger,
            "storage.put.success",
            backend=self.backend,
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body))

    def get(self, *, key: str) -> bytes:
        resp = self._with_retry(
            "get", key, lambda: self._client.get_object(Bucket=self._bucket, Key=key)
        )
        return resp["Body"].read()


_storage: ObjectStorage | None = None


def get_storage() -> ObjectStorage:
    global _storage  # noqa: PLW0603
    if _storage is not None:
        return _storage

    if settings.storage_backend == "s3":
        _storage = S3ObjectStorage()
    else:
        root = settings.local_storage_path
        if not root.is_absolute():
            root = Path(os.getcwd()) / root
        _storage = LocalObjectStorage(root)
    return _storage
