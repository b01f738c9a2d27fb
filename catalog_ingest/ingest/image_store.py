"""Download remote images into local media storage."""

from __future__ import annotations

import hashlib
import logging
import mimetypes
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx

from catalog_ingest import metrics
from catalog_ingest.config import settings

logger = logging.getLogger(__name__)

IMAGE_KINDS = ("icon", "screenshot")

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
}


def _image_headers(url: str) -> dict[str, str]:
    headers = {
        "User-Agent": settings.user_agent,
        "Accept": "image/webp,image/apng,image/png,image/*,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
    }
    # The submission CDN checks for a same-site referer
    if "/submission/" in url:
        base = settings.source_base_url.rstrip("/")
        headers.update({
            "Referer": f"{base}/app/mac",
            "Origin": base,
            "Sec-Fetch-Site": "same-site",
            "Sec-Fetch-Mode": "no-cors",
            "Sec-Fetch-Dest": "image",
        })
    return headers


def _extension_for(url: str, content_type: Optional[str]) -> str:
    if content_type:
        mime = content_type.split(";")[0].strip().lower()
        if mime in _EXTENSIONS:
            return _EXTENSIONS[mime]
    suffix = Path(urlparse(url).path).suffix.lower()
    if suffix and mimetypes.types_map.get(suffix, "").startswith("image/"):
        return ".jpg" if suffix == ".jpeg" else suffix
    return ".png"


class ImageStore:
    """Stores icons and screenshots under ``media_root/<kind>s/``.

    Files are named by content hash, so re-importing the same image reuses
    the existing file.
    """

    def __init__(
        self,
        media_root: str | Path | None = None,
        url_prefix: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.media_root = Path(media_root or settings.media_root)
        self.url_prefix = (url_prefix if url_prefix is not None else settings.media_url_prefix).rstrip("/")
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.image_timeout_seconds),
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch_and_store(
        self,
        url: Optional[str],
        kind: str,
        owner_external_id: Optional[str] = None,
    ) -> Optional[str]:
        """
        Download an image and write it to local storage.

        Args:
            url: Remote image URL
            kind: "icon" or "screenshot"
            owner_external_id: Source id of the app the image belongs to

        Returns:
            Public URL of the stored file, or None on any failure
        """
        if not url or kind not in IMAGE_KINDS:
            return None

        try:
            resp = await self.client.get(url, headers=_image_headers(url))
            if resp.status_code != 200:
                logger.warning(f"Failed to fetch {kind} from {url}: HTTP {resp.status_code}")
                metrics.images_stored_total.labels(kind=kind, status="http_error").inc()
                return None

            content = resp.content
            if not content:
                metrics.images_stored_total.labels(kind=kind, status="empty").inc()
                return None

            digest = hashlib.sha256(content).hexdigest()[:32]
            prefix = f"{owner_external_id}-" if owner_external_id else ""
            filename = f"{prefix}{digest}{_extension_for(url, resp.headers.get('content-type'))}"

            directory = self.media_root / f"{kind}s"
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / filename
            if not path.exists():
                path.write_bytes(content)

            metrics.images_stored_total.labels(kind=kind, status="stored").inc()
            return f"{self.url_prefix}/{kind}s/{filename}"

        except (httpx.HTTPError, OSError) as e:
            logger.warning(f"Error storing {kind} from {url}: {e}")
            metrics.images_stored_total.labels(kind=kind, status="error").inc()
            return None
