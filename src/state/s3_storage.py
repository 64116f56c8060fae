from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.exceptions import ClientError


logger = logging.getLogger(__name__)

# Environment variable names for convenience configuration
ENV_BUCKET = "PERSIST_S3_BUCKET"
ENV_PREFIX = "PERSIST_S3_PREFIX"
ENV_REGION = "PERSIST_S3_REGION"

_NOT_FOUND = ("NoSuchKey", "404", "NotFound")


@dataclass
class S3ObjectRef:
    bucket: str
    key: str


class S3Storage:
    """
    S3-backed StorageAdapter: one object per storage key.

    Usage
    - Provide a bucket and an optional key prefix (e.g. "persist/").
    - `read(key)` returns the object body as text, or None if it does not exist.
    - `write(key, blob)` overwrites the object; `delete(key)` removes it.
    - boto3 is blocking, so every call runs in a worker thread.

    Values reaching this adapter are already transformed by the layers
    above it (encrypted, compressed); the object body is stored verbatim.

    Environment variables (optional)
    - `PERSIST_S3_BUCKET`: bucket holding the state objects
    - `PERSIST_S3_PREFIX`: key prefix prepended to every storage key
    - `PERSIST_S3_REGION`: AWS region for the client
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        prefix: str = "",
        region_name: Optional[str] = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket is required")
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._bucket = bucket
        self._prefix = prefix

    # -------- Construction helpers --------
    @classmethod
    def from_env(cls) -> "S3Storage":
        bucket = os.environ.get(ENV_BUCKET)
        if not bucket:
            raise RuntimeError(f"Missing required environment variables for S3 storage: {ENV_BUCKET}")
        return cls(
            bucket=bucket,
            prefix=os.environ.get(ENV_PREFIX, ""),
            region_name=os.environ.get(ENV_REGION) or None,
        )

    def object_ref(self, key: str) -> S3ObjectRef:
        return S3ObjectRef(bucket=self._bucket, key=f"{self._prefix}{key}")

    # -------- Core operations --------
    async def read(self, key: str) -> Optional[str]:
        """Read the object for `key`.

        Returns None if the object does not exist.
        Raises botocore.exceptions.ClientError for other S3 issues.
        """
        return await asyncio.to_thread(self._read_sync, self.object_ref(key))

    async def write(self, key: str, blob: str) -> None:
        await asyncio.to_thread(self._write_sync, self.object_ref(key), blob)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_sync, self.object_ref(key))

    # -------- Blocking calls --------
    def _read_sync(self, obj: S3ObjectRef) -> Optional[str]:
        try:
            resp = self._s3.get_object(Bucket=obj.bucket, Key=obj.key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in _NOT_FOUND:
                return None
            logger.error("S3 read failed for s3://%s/%s: %s", obj.bucket, obj.key, code)
            raise
        return resp["Body"].read().decode("utf-8")

    def _write_sync(self, obj: S3ObjectRef, blob: str) -> None:
        self._s3.put_object(
            Bucket=obj.bucket,
            Key=obj.key,
            Body=blob.encode("utf-8"),
            ContentType="text/plain; charset=utf-8",
        )

    def _delete_sync(self, obj: S3ObjectRef) -> None:
        # S3 DeleteObject succeeds for missing keys
        self._s3.delete_object(Bucket=obj.bucket, Key=obj.key)


__all__ = ["S3ObjectRef", "S3Storage"]
