from __future__ import annotations

import hashlib
import hmac
import logging
import time
from pathlib import Path
from urllib.parse import quote, urlencode

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from roomdrop.config import (
    PUBLIC_BASE_URL,
    S3_ACCESS_KEY_ID,
    S3_BUCKET,
    S3_ENDPOINT_URL,
    S3_REGION,
    S3_SECRET_ACCESS_KEY,
    SIGNING_SECRET,
    STORAGE_BACKEND,
    UPLOAD_DIR,
)
from roomdrop.core.exceptions import StorageError

logger = logging.getLogger("roomdrop.storage")

# S3 DeleteObjects accepts at most this many keys per call
_S3_DELETE_BATCH = 1000

_object_store = None


class ObjectStore:
    """Binary storage keyed by path-like strings.

    Backends implement ``put``, ``delete`` and ``sign``; all failures are
    raised as :class:`StorageError`.
    """

    def put(self, key: str, data: bytes, content_type: str) -> None:
        """Store ``data`` under ``key``. Never overwrites an existing object."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        """Remove ``key``. A missing object is not an error."""
        raise NotImplementedError

    def sign(self, key: str, expires_in: int) -> str:
        """Return a read URL for ``key`` valid for ``expires_in`` seconds."""
        raise NotImplementedError

    def delete_many(self, keys: list[str]) -> list[str]:
        """Best-effort removal of ``keys``; returns the keys that could not be deleted."""
        failed = []
        for key in keys:
            try:
                self.delete(key)
            except StorageError as exc:
                logger.warning("event=object_delete_failure key=%s error=%s", key, exc)
                failed.append(key)
        return failed


class LocalObjectStore(ObjectStore):
    """Objects as files under ``root``; signed URLs are served by ``GET /objects/{key}``."""

    def __init__(self, root: str, secret: str, base_url: str = "") -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._secret = secret.encode("utf-8")
        self.base_url = base_url.rstrip("/")

    def path_for(self, key: str) -> Path:
        try:
            path = (self.root / key).resolve()
            path.relative_to(self.root)
        except (ValueError, RuntimeError) as exc:
            raise StorageError(f"Invalid object key: {key}") from exc
        return path

    def put(self, key: str, data: bytes, content_type: str) -> None:  # noqa: ARG002
        path = self.path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "xb") as f:
                f.write(data)
        except FileExistsError as exc:
            raise StorageError(f"Object already exists: {key}") from exc
        except OSError as exc:
            raise StorageError(f"Failed to write object {key}") from exc

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete object {key}") from exc
        # Drop the per-room directory once it is empty
        parent = path.parent
        if parent != self.root:
            try:
                parent.rmdir()
            except OSError:
                pass

    def signature(self, key: str, expires: int) -> str:
        message = f"{key}\n{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def sign(self, key: str, expires_in: int) -> str:
        expires = int(time.time()) + expires_in
        query = urlencode({"expires": expires, "signature": self.signature(key, expires)})
        return f"{self.base_url}/objects/{quote(key)}?{query}"

    def verify(self, key: str, expires: int, signature: str, now: float | None = None) -> bool:
        if (now if now is not None else time.time()) > expires:
            return False
        return hmac.compare_digest(self.signature(key, expires), signature)


class S3ObjectStore(ObjectStore):
    def __init__(self, bucket: str, client=None) -> None:
        if not bucket:
            raise RuntimeError("S3_BUCKET must be set when STORAGE_BACKEND=s3")
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            region_name=S3_REGION,
            endpoint_url=S3_ENDPOINT_URL,
            aws_access_key_id=S3_ACCESS_KEY_ID,
            aws_secret_access_key=S3_SECRET_ACCESS_KEY,
        )

    def _exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True

    def put(self, key: str, data: bytes, content_type: str) -> None:
        try:
            if self._exists(key):
                raise StorageError(f"Object already exists: {key}")
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to write object {key}") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to delete object {key}") from exc

    def delete_many(self, keys: list[str]) -> list[str]:
        failed = []
        for start in range(0, len(keys), _S3_DELETE_BATCH):
            batch = keys[start:start + _S3_DELETE_BATCH]
            try:
                response = self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
            except (ClientError, BotoCoreError) as exc:
                logger.warning("event=object_batch_delete_failure count=%d error=%s", len(batch), exc)
                failed.extend(batch)
                continue
            for err in response.get("Errors", []):
                logger.warning(
                    "event=object_delete_failure key=%s code=%s", err.get("Key"), err.get("Code")
                )
                failed.append(err.get("Key"))
        return failed

    def sign(self, key: str, expires_in: int) -> str:
        params = {"Bucket": self.bucket, "Key": key}
        try:
            return self.client.generate_presigned_url("get_object", Params=params, ExpiresIn=expires_in)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to sign URL for {key}") from exc


def _build_object_store() -> ObjectStore:
    if STORAGE_BACKEND == "s3":
        return S3ObjectStore(S3_BUCKET)
    if STORAGE_BACKEND == "local":
        return LocalObjectStore(UPLOAD_DIR, SIGNING_SECRET, PUBLIC_BASE_URL)
    raise RuntimeError(f"Unknown STORAGE_BACKEND: {STORAGE_BACKEND}")


def get_object_store() -> ObjectStore:
    """Lazily build the configured store; also used as a FastAPI dependency."""
    global _object_store
    if _object_store is None:
        _object_store = _build_object_store()
    return _object_store
