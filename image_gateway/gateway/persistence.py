"""Persistence collaborators for generation audit records.

- MetadataStore: one record per generation, queried per identity
- BlobStore: image bytes, only written in production

Both are written to in the background; callers of the gateway never wait on
them and their failures never fail a generation.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from pathlib import Path
from urllib.parse import quote

import httpx

from image_gateway.gateway.types import GenerationRecord, UploadResult

logger = logging.getLogger(__name__)


class MetadataStore(ABC):
    @abstractmethod
    async def save_record(self, record: GenerationRecord) -> None: ...

    @abstractmethod
    async def get_recent(self, identity: str, limit: int = 10) -> list[dict]:
        """Most recent records for *identity*, newest first."""
        ...

    async def close(self) -> None:
        return None


class InMemoryMetadataStore(MetadataStore):
    """Bounded per-identity history kept in process memory."""

    def __init__(self, max_per_identity: int = 100):
        self.max_per_identity = max_per_identity
        self._records: dict[str, deque[GenerationRecord]] = defaultdict(
            lambda: deque(maxlen=self.max_per_identity)
        )

    async def save_record(self, record: GenerationRecord) -> None:
        self._records[record.identity].appendleft(record)
        logger.debug("Record %s saved for %s", record.request_id, record.identity)

    async def get_recent(self, identity: str, limit: int = 10) -> list[dict]:
        records = self._records.get(identity)
        if not records:
            return []
        return [r.to_dict() for r in list(records)[:limit]]


class HttpMetadataStore(MetadataStore):
    """Remote storage API: ``POST /save`` and ``GET /images/{identity}``."""

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def save_record(self, record: GenerationRecord) -> None:
        payload = {
            "studentId": record.identity,
            "prompt": record.prompt,
            "imageFile": record.image_path,
            **record.to_dict(),
        }
        resp = await self._client.post("/save", json=payload)
        resp.raise_for_status()
        body = resp.json()
        if isinstance(body, dict) and body.get("success") is False:
            raise RuntimeError(f"Storage API rejected record: {body.get('message', 'unknown error')}")
        logger.debug("Record %s sent to storage API", record.request_id)

    async def get_recent(self, identity: str, limit: int = 10) -> list[dict]:
        resp = await self._client.get(f"/images/{quote(identity, safe='')}")
        resp.raise_for_status()
        body = resp.json()
        if isinstance(body, dict):
            items = body.get("data") or body.get("images") or []
        else:
            items = body
        return list(items)[:limit]

    async def health(self) -> bool:
        try:
            resp = await self._client.get("/health")
        except httpx.HTTPError as e:
            logger.warning("Storage API health check failed: %s", e)
            return False
        return resp.status_code == 200

    async def close(self) -> None:
        await self._client.aclose()


class BlobStore(ABC):
    @abstractmethod
    async def upload(self, data: bytes, path: str) -> UploadResult: ...


class LocalBlobStore(BlobStore):
    """Writes blobs under a root directory (file I/O off the event loop)."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _write(self, target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def upload(self, data: bytes, path: str) -> UploadResult:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"Blob path escapes store root: {path}")
        await asyncio.to_thread(self._write, target, data)
        logger.info("Blob stored at %s (%d bytes)", target, len(data))
        return UploadResult(url=target.as_uri(), path=path)
