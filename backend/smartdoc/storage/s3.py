"""
S3 Object Store (aioboto3)

Keys are produced by the document service (documents/<user>/<doc_id>.<ext>);
this class treats them as opaque. Every botocore failure is translated to
StorageError, a missing key to NotFoundError, so callers never import
botocore.
"""

from __future__ import annotations

import logging
import mimetypes

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from smartdoc.core.errors import NotFoundError, StorageError
from smartdoc.storage.base import ObjectStore

logger = logging.getLogger(__name__)

_MISSING_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


class S3ObjectStore(ObjectStore):
    """
    Async S3 operations against a single bucket.

    One instance per process; aioboto3 clients are opened per call.
    """

    name = "s3"

    def __init__(
        self,
        bucket:       str,
        region:       str,
        endpoint_url: str | None = None,
        session:      aioboto3.Session | None = None,
    ) -> None:
        self._bucket = bucket
        self._region = region
        self._endpoint_url = endpoint_url or None
        self._session = session or aioboto3.Session()

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._region,
            endpoint_url=self._endpoint_url,
        )

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        ct = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"
        try:
            async with self._client() as s3:
                await s3.put_object(Bucket=self._bucket, Key=key, Body=data, ContentType=ct)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"S3 upload failed for {key}: {exc}") from exc

        logger.info("S3 upload ok | bucket=%s key=%s size=%d", self._bucket, key, len(data))
        return f"s3://{self._bucket}/{key}"

    async def get(self, key: str) -> bytes:
        try:
            async with self._client() as s3:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _MISSING_CODES:
                raise NotFoundError(f"Object not found: {key}") from exc
            raise StorageError(f"S3 download failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"S3 download failed for {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"S3 delete failed for {key}: {exc}") from exc
        logger.info("S3 delete | bucket=%s key=%s", self._bucket, key)
