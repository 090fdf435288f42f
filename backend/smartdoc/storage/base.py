"""
Object store abstraction.

The pipeline only needs get / put / delete on opaque keys. Concrete stores:

  S3ObjectStore        — aioboto3, production (storage/s3.py)
  LocalObjectStore     — filesystem under a root directory
  FallbackObjectStore  — primary + fallback; uploads land on the fallback
                         when the primary is unreachable, reads and deletes
                         consult both
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from smartdoc.core.errors import NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)


class ObjectStore(ABC):

    name: str = "abstract"

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        """Store ``data`` under ``key``; return a URL or locator for the object."""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the object's bytes. Raises NotFoundError when absent."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the object. Deleting a missing key is not an error."""


# ---------------------------------------------------------------------------
# Filesystem store
# ---------------------------------------------------------------------------

class LocalObjectStore(ObjectStore):
    """Stores objects as files below ``root``; blocking I/O runs in a thread."""

    name = "local"

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root not in path.parents:
            raise ValidationError(f"Storage key escapes the storage root: {key!r}")
        return path

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise StorageError(f"Local write failed for {key}: {exc}") from exc
        logger.info("Local store put | key=%s size=%d", key, len(data))
        return path.as_uri()

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise NotFoundError(f"Object not found: {key}") from exc
        except OSError as exc:
            raise StorageError(f"Local read failed for {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as exc:
            raise StorageError(f"Local delete failed for {key}: {exc}") from exc


# ---------------------------------------------------------------------------
# Primary + fallback composition
# ---------------------------------------------------------------------------

class FallbackObjectStore(ObjectStore):

    name = "fallback"

    def __init__(self, primary: ObjectStore, fallback: ObjectStore) -> None:
        self._primary = primary
        self._fallback = fallback

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        try:
            return await self._primary.put(key, data, content_type)
        except StorageError as exc:
            logger.warning(
                "Primary store unavailable, writing to fallback | key=%s primary=%s error=%s",
                key, self._primary.name, exc,
            )
            return await self._fallback.put(key, data, content_type)

    async def get(self, key: str) -> bytes:
        """
        Missing from the fallback only counts as missing when the primary
        also said so; otherwise the primary's StorageError is what the
        caller sees, so the read stays retryable.
        """
        try:
            return await self._primary.get(key)
        except NotFoundError:
            logger.debug("Primary get missed, trying fallback | key=%s", key)
            return await self._fallback.get(key)
        except StorageError as primary_exc:
            logger.warning(
                "Primary store unavailable, reading from fallback | key=%s primary=%s error=%s",
                key, self._primary.name, primary_exc,
            )
            try:
                return await self._fallback.get(key)
            except NotFoundError:
                raise primary_exc from None

    async def delete(self, key: str) -> None:
        primary_exc: StorageError | None = None
        try:
            await self._primary.delete(key)
        except StorageError as exc:
            primary_exc = exc
        await self._fallback.delete(key)
        # The fallback cannot vouch for a blob that may still sit on the primary.
        if primary_exc is not None:
            raise primary_exc
