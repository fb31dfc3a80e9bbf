"""
S3-compatible object storage (DigitalOcean Spaces or MinIO).

boto3 is synchronous, so every call is pushed onto a worker thread with
``asyncio.to_thread``. User files live under ``<userId>/`` in one shared
bucket:

    <userId>/                 root (freshly uploaded)
    <userId>/archived/        kept but not indexed
    <userId>/<kbName>/        indexed into the user's knowledge base
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from agentkb.errors import MoveVerificationError, StorageError

logger = logging.getLogger(__name__)

PLACEHOLDER = ".keep"


def _get_s3_client(settings):
    addressing = "path" if settings.path_style else "virtual"
    return boto3.client(
        "s3",
        endpoint_url=settings.storage_endpoint_url,
        region_name=settings.storage_region,
        aws_access_key_id=settings.storage_access_key_id,
        aws_secret_access_key=settings.storage_secret_access_key,
        config=BotoConfig(s3={"addressing_style": addressing}),
    )


def _is_missing(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in ("404", "NoSuchKey", "NotFound", "NoSuchBucket")


def folder_label(key: Optional[str], user_id: str, kb_name: Optional[str] = None) -> str:
    """Human label for the folder a key lives in, used in move log lines."""
    if not key:
        return "deleted"
    prefix = f"{user_id}/"
    if not key.startswith(prefix):
        return "root"
    rest = key[len(prefix):]
    if "/" not in rest:
        return "root"
    folder = rest.split("/", 1)[0]
    if folder == "archived":
        return "archived"
    if folder == "Lists":
        return "Lists"
    if kb_name and folder == kb_name:
        return kb_name
    return folder


def log_file_move(file_name: str, from_key: Optional[str], to_key: Optional[str], user_id: str,
                  kb_name: Optional[str] = None) -> None:
    logger.info(
        "[STORAGE] File %s moved from %s to %s",
        file_name,
        folder_label(from_key, user_id, kb_name),
        folder_label(to_key, user_id, kb_name),
    )


class ObjectStorage:
    """Bucket-scoped blob storage used by the orchestrators."""

    def __init__(self, client, bucket: str, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self._s3 = client
        self.bucket = bucket
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "ObjectStorage":
        return cls(_get_s3_client(settings), settings.bucket_name)

    async def _call(self, method: str, **kwargs):
        try:
            return await asyncio.to_thread(getattr(self._s3, method), **kwargs)
        except ClientError:
            raise
        except BotoCoreError as e:
            raise StorageError(f"{method} failed: {e}") from e

    # ── Objects ──────────────────────────────────────────────

    async def head_object(self, key: str, bucket: Optional[str] = None) -> Optional[dict]:
        """Object metadata, or ``None`` when the key does not exist."""
        try:
            return await self._call("head_object", Bucket=bucket or self.bucket, Key=key)
        except ClientError as e:
            if _is_missing(e):
                return None
            raise StorageError(f"head_object {key} failed: {e}") from e

    async def get_object(self, key: str, bucket: Optional[str] = None) -> bytes:
        try:
            resp = await self._call("get_object", Bucket=bucket or self.bucket, Key=key)
        except ClientError as e:
            raise StorageError(f"get_object {key} failed: {e}") from e
        return await asyncio.to_thread(resp["Body"].read)

    async def put_object(self, key: str, body: bytes = b"", content_type: str = "application/octet-stream",
                         bucket: Optional[str] = None) -> None:
        try:
            await self._call(
                "put_object", Bucket=bucket or self.bucket, Key=key, Body=body, ContentType=content_type
            )
        except ClientError as e:
            raise StorageError(f"put_object {key} failed: {e}") from e

    async def delete_object(self, key: str, bucket: Optional[str] = None) -> None:
        try:
            await self._call("delete_object", Bucket=bucket or self.bucket, Key=key)
        except ClientError as e:
            if _is_missing(e):
                return
            raise StorageError(f"delete_object {key} failed: {e}") from e

    async def copy_object(self, source_key: str, dest_key: str, source_bucket: Optional[str] = None,
                          dest_bucket: Optional[str] = None) -> None:
        try:
            await self._call(
                "copy_object",
                Bucket=dest_bucket or self.bucket,
                Key=dest_key,
                CopySource={"Bucket": source_bucket or self.bucket, "Key": source_key},
            )
        except ClientError as e:
            raise StorageError(f"copy_object {source_key} -> {dest_key} failed: {e}") from e

    async def list_objects(self, prefix: str, bucket: Optional[str] = None) -> List[dict]:
        """All objects under ``prefix``, following continuation tokens."""
        objects: List[dict] = []
        token = None
        while True:
            kwargs: Dict[str, object] = {"Bucket": bucket or self.bucket, "Prefix": prefix}
            if token:
                kwargs["ContinuationToken"] = token
            try:
                resp = await self._call("list_objects_v2", **kwargs)
            except ClientError as e:
                raise StorageError(f"list_objects_v2 {prefix} failed: {e}") from e
            objects.extend(resp.get("Contents") or [])
            if not resp.get("IsTruncated"):
                return objects
            token = resp.get("NextContinuationToken")
            if not token:
                return objects

    # ── Buckets ──────────────────────────────────────────────

    async def create_bucket(self, name: str) -> None:
        try:
            await self._call("create_bucket", Bucket=name)
        except ClientError as e:
            raise StorageError(f"create_bucket {name} failed: {e}") from e
        logger.info("[STORAGE] Created bucket %s", name)

    async def delete_bucket(self, name: str) -> None:
        """Empty and delete a bucket. A missing bucket is not an error."""
        try:
            for obj in await self.list_objects("", bucket=name):
                await self.delete_object(obj["Key"], bucket=name)
            await self._call("delete_bucket", Bucket=name)
        except ClientError as e:
            if _is_missing(e):
                return
            raise StorageError(f"delete_bucket {name} failed: {e}") from e
        except StorageError as e:
            if "NoSuchBucket" in str(e):
                return
            raise
        logger.info("[STORAGE] Deleted bucket %s", name)

    # ── Higher-level helpers ─────────────────────────────────

    async def ensure_placeholder(self, prefix: str) -> bool:
        """Create ``<prefix>.keep`` if absent. Returns True when it was created."""
        key = f"{prefix.rstrip('/')}/{PLACEHOLDER}"
        if await self.head_object(key) is not None:
            return False
        await self.put_object(key, b"", content_type="text/plain")
        return True

    async def move_object_with_verify(
        self,
        source_key: str,
        dest_key: str,
        retries: int = 3,
        delay: float = 0.1,
    ) -> None:
        """Copy, confirm the copy is visible, then delete the source.

        The source is never deleted unless the destination HEAD succeeds.
        """
        if source_key == dest_key:
            return
        await self.copy_object(source_key, dest_key)

        wait = delay
        for attempt in range(1, retries + 1):
            if await self.head_object(dest_key) is not None:
                break
            if attempt < retries:
                await self._sleep(wait)
                wait *= 2
        else:
            raise MoveVerificationError(
                f"Copy of {source_key} to {dest_key} not visible after {retries} checks"
            )

        await self.delete_object(source_key)

    async def prefix_size(self, prefix: str) -> int:
        """Total bytes under ``prefix``, ignoring placeholder objects."""
        total = 0
        for obj in await self.list_objects(prefix):
            if obj.get("Key", "").endswith(PLACEHOLDER):
                continue
            total += int(obj.get("Size") or 0)
        return total

    async def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        for obj in await self.list_objects(prefix):
            await self.delete_object(obj["Key"])
            deleted += 1
        return deleted
