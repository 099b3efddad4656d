"""Artifact storage gateways for SignFlow.

A gateway persists PDF bytes under an opaque key and hands out
time-boxed access URLs. ``replace`` overwrites in place under the same
key, so a ``Document.storage_key`` stays valid for the document's whole
life, and no reader ever observes a half-written object.

Two backends:

- ``FilesystemStorage``: default; everything lives on disk under
  ``~/.signflow/artifacts``. Access URLs are HMAC-signed and expire.
- ``S3Storage``: boto3; access URLs are presigned GETs.
"""

import hashlib
import hmac
import logging
import os
import re
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional
from urllib.parse import parse_qs, quote, unquote, urlencode, urlparse

from .errors import StorageError

logger = logging.getLogger("signflow.storage")

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def build_key(owner: str, hint: str, now: Optional[float] = None) -> str:
    """``documents/<owner>/<hint>_<millis>.pdf`` with path-safe parts."""
    millis = int((now if now is not None else time.time()) * 1000)
    stem = _UNSAFE.sub("_", Path(hint).stem) or "document"
    owner_part = _UNSAFE.sub("_", owner) or "unknown"
    return f"documents/{owner_part}/{stem}_{millis}.pdf"


class StorageGateway(ABC):
    """Persist, fetch, replace and delete artifacts by key."""

    @abstractmethod
    def put(self, data: bytes, hint: str, owner: str = "unknown") -> str:
        """Store new bytes and return a freshly minted key."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Fetch the bytes under ``key``."""

    @abstractmethod
    def replace(self, key: str, data: bytes) -> str:
        """Overwrite ``key`` atomically and return the same key."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Best effort removal. Failures are logged, never raised."""

    @abstractmethod
    def issue_access_url(self, key: str, ttl_seconds: int) -> str:
        """A URL that grants read access for ``ttl_seconds``."""


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------

class FilesystemStorage(StorageGateway):
    """Artifacts as plain files under ``base_dir``.

    Args:
        base_dir: Root of the artifact tree.
        secret: HMAC key for signing access URLs.
        clock: Wall-clock source for URL expiry.
    """

    def __init__(
        self,
        base_dir: Path,
        secret: str = "signflow-dev-secret",
        clock=time.time,
    ) -> None:
        self.base = Path(base_dir)
        self.base.mkdir(parents=True, exist_ok=True)
        self._secret = secret.encode("utf-8")
        self._clock = clock

    def _path(self, key: str) -> Path:
        path = (self.base / key).resolve()
        if self.base.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    def put(self, data: bytes, hint: str, owner: str = "unknown") -> str:
        key = build_key(owner, hint, self._clock())
        self._atomic_write(self._path(key), data)
        logger.info("Stored artifact %s (%d bytes)", key, len(data))
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to read artifact {key}") from exc

    def replace(self, key: str, data: bytes) -> str:
        path = self._path(key)
        if not path.exists():
            raise StorageError(f"Artifact not found: {key}")
        self._atomic_write(path, data)
        logger.info("Replaced artifact %s (%d bytes)", key, len(data))
        return key

    def delete(self, key: str) -> bool:
        try:
            self._path(key).unlink()
        except (OSError, StorageError) as exc:
            logger.warning("Failed to delete artifact %s: %s", key, exc)
            return False
        logger.info("Deleted artifact %s", key)
        return True

    def issue_access_url(self, key: str, ttl_seconds: int) -> str:
        expires = int(self._clock()) + int(ttl_seconds)
        query = urlencode({"expires": expires, "signature": self._sign(key, expires)})
        return f"file://{quote(str(self._path(key)))}?{query}"

    def check_access_url(self, url: str) -> Optional[str]:
        """Return the key a URL grants access to, or None if invalid/expired."""
        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        try:
            expires = int(params["expires"][0])
            signature = params["signature"][0]
        except (KeyError, IndexError, ValueError):
            return None
        try:
            key = Path(unquote(parsed.path)).resolve().relative_to(self.base.resolve()).as_posix()
        except ValueError:
            return None
        if self._clock() >= expires:
            return None
        if not hmac.compare_digest(signature, self._sign(key, expires)):
            return None
        return key

    def _sign(self, key: str, expires: int) -> str:
        msg = f"{key}:{expires}".encode("utf-8")
        return hmac.new(self._secret, msg, hashlib.sha256).hexdigest()

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        """Write to a sibling temp file, then rename over the target."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".pdf")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StorageError(f"Failed to write artifact: {exc}") from exc


# ---------------------------------------------------------------------------
# S3
# ---------------------------------------------------------------------------

class S3Storage(StorageGateway):
    """Artifacts as objects in one S3 bucket.

    A single ``PutObject`` is atomic for readers, so ``replace`` is a
    plain overwrite of the same key.

    Args:
        bucket: Bucket name.
        client: A boto3 S3 client (created from ``region`` if omitted).
        region: AWS region for the default client.
    """

    def __init__(
        self,
        bucket: str,
        client: Optional[Any] = None,
        region: Optional[str] = None,
    ) -> None:
        if client is None:
            import boto3

            client = boto3.client("s3", region_name=region)
        self.bucket = bucket
        self._client = client

    def put(self, data: bytes, hint: str, owner: str = "unknown") -> str:
        key = build_key(owner, hint)
        self._put_object(key, data, {"originalfilename": Path(hint).name, "owner": owner})
        logger.info("Uploaded artifact to s3://%s/%s", self.bucket, key)
        return key

    def get(self, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except Exception as exc:
            raise StorageError(f"Failed to download artifact {key}") from exc

    def replace(self, key: str, data: bytes) -> str:
        self._put_object(key, data, {"signed": "true"})
        logger.info("Replaced artifact s3://%s/%s", self.bucket, key)
        return key

    def delete(self, key: str) -> bool:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except Exception as exc:
            logger.warning("Failed to delete s3://%s/%s: %s", self.bucket, key, exc)
            return False
        return True

    def issue_access_url(self, key: str, ttl_seconds: int) -> str:
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=int(ttl_seconds),
            )
        except Exception as exc:
            raise StorageError(f"Failed to issue access URL for {key}") from exc

    def _put_object(self, key: str, data: bytes, metadata: dict[str, str]) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType="application/pdf",
                Metadata=metadata,
            )
        except Exception as exc:
            raise StorageError(f"Failed to upload artifact {key}") from exc
