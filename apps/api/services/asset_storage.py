"""Durable asset storage: copy transient prediction outputs into our own store."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple
from urllib.parse import urlparse

import httpx

from config import settings
from services.generation_types import AssetFinalizationError, DownloadFailed, StorageWriteFailed

logger = logging.getLogger(__name__)

IMAGE_MIME_BY_EXT = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}
EXT_BY_MIME = {mime: ext for ext, mime in IMAGE_MIME_BY_EXT.items() if ext != ".jpeg"}


def _guess_extension(source_url: str, content_type: Optional[str]) -> str:
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    if mime in EXT_BY_MIME:
        return EXT_BY_MIME[mime]
    suffix = Path(urlparse(source_url).path).suffix.lower()
    if suffix in IMAGE_MIME_BY_EXT:
        return suffix
    return ".png"


def _safe_segment(value: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_"} else "_" for ch in str(value or ""))
    return cleaned or "unknown"


class AssetStore(ABC):
    @abstractmethod
    async def put(self, data: bytes, path: str, content_type: str) -> str:
        """Persist ``data`` at ``path`` and return its public URL."""
        raise NotImplementedError


class LocalAssetStore(AssetStore):
    """Filesystem store served through the ``/assets`` static mount."""

    def __init__(self, root_dir: str, public_base_url: str) -> None:
        self.root_dir = Path(root_dir)
        self.public_base_url = public_base_url.rstrip("/")

    def _write(self, data: bytes, path: str) -> None:
        target = (self.root_dir / path).resolve()
        if self.root_dir.resolve() not in target.parents:
            raise StorageWriteFailed(f"Refusing to write outside asset root: {path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_path = target.with_suffix(target.suffix + ".part")
        temp_path.write_bytes(data)
        os.replace(temp_path, target)

    async def put(self, data: bytes, path: str, content_type: str) -> str:
        try:
            await asyncio.to_thread(self._write, data, path)
        except OSError as exc:
            raise StorageWriteFailed(f"Could not write asset {path}: {exc}") from exc
        return f"{self.public_base_url}/{path}"


async def download_asset(
    url: str,
    *,
    timeout: float = 60.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Tuple[bytes, Optional[str]]:
    """Fetch a prediction output. Returns ``(body, content_type)``."""
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True) as client:
            response = await client.get(url)
            response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise DownloadFailed(f"Asset download returned {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        raise DownloadFailed(f"Asset download failed: {exc}") from exc
    if not response.content:
        raise DownloadFailed("Asset download returned an empty body")
    return response.content, response.headers.get("content-type")


class AssetFinalizer:
    """Download then store, retrying both steps a bounded number of times."""

    def __init__(
        self,
        store: AssetStore,
        *,
        max_attempts: int = 3,
        retry_delay_seconds: float = 2.0,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.max_attempts = max(int(max_attempts), 1)
        self.retry_delay_seconds = retry_delay_seconds
        self.timeout = timeout
        self.transport = transport
        self.sleep = sleep

    async def finalize(self, source_url: str, *, user_id: str, job_handle: str) -> str:
        last_error: Optional[AssetFinalizationError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                data, content_type = await download_asset(
                    source_url,
                    timeout=self.timeout,
                    transport=self.transport,
                )
                extension = _guess_extension(source_url, content_type)
                path = (
                    f"generations/{_safe_segment(user_id)}/"
                    f"{_safe_segment(job_handle)}-{uuid.uuid4().hex[:8]}{extension}"
                )
                url = await self.store.put(data, path, IMAGE_MIME_BY_EXT[extension])
                logger.info("Stored asset job_handle=%s path=%s", job_handle, path)
                return url
            except AssetFinalizationError as exc:
                last_error = exc
                logger.warning(
                    "Asset finalize attempt %s/%s failed job_handle=%s: %s",
                    attempt,
                    self.max_attempts,
                    job_handle,
                    exc,
                )
                if attempt < self.max_attempts:
                    await self.sleep(self.retry_delay_seconds)
        raise last_error or AssetFinalizationError("Asset finalization failed")


def get_asset_finalizer() -> AssetFinalizer:
    return AssetFinalizer(
        LocalAssetStore(settings.ASSET_STORAGE_DIR, settings.ASSET_PUBLIC_BASE_URL),
        max_attempts=settings.ASSET_FINALIZE_MAX_ATTEMPTS,
        retry_delay_seconds=settings.ASSET_FINALIZE_RETRY_DELAY_SECONDS,
        timeout=settings.ASSET_DOWNLOAD_TIMEOUT_SECONDS,
    )
