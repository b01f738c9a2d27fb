"""Page fetcher for the source site with bounded timeouts and retry."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from catalog_ingest import metrics
from catalog_ingest.config import settings
from catalog_ingest.ingest.errors import FetchError, HttpError

logger = logging.getLogger(__name__)

# Retryable exceptions (transport errors)
RETRYABLE_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
)


@dataclass(frozen=True)
class FetchPolicy:
    """Retry and timeout policy for source page requests."""

    max_attempts: int = 3
    timeout: httpx.Timeout = None  # Will be set to default if None
    backoff_base: float = 1.0

    def __post_init__(self):
        """Set default timeout if not provided."""
        if self.timeout is None:
            object.__setattr__(
                self,
                'timeout',
                httpx.Timeout(
                    settings.fetch_timeout_seconds,
                    connect=settings.fetch_connect_timeout_seconds,
                ),
            )

    @classmethod
    def from_settings(cls) -> "FetchPolicy":
        return cls(
            max_attempts=max(1, settings.fetch_max_attempts),
            backoff_base=settings.fetch_backoff_base_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Exponential backoff with jitter for the given 1-based attempt."""
        return self.backoff_base * (2 ** (attempt - 1)) + random.random() * self.backoff_base


def default_headers() -> dict[str, str]:
    """Desktop browser headers; the source serves different markup to other clients."""
    return {
        "User-Agent": settings.user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
    }


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


class PageFetcher:
    """Fetches raw HTML from the source site.

    Non-2xx responses raise :class:`HttpError`. Transport errors, 429 and 5xx
    are retried with exponential backoff up to ``policy.max_attempts``.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        policy: Optional[FetchPolicy] = None,
    ):
        self.policy = policy or FetchPolicy.from_settings()
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=default_headers(),
                timeout=self.policy.timeout,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "PageFetcher":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def fetch(self, url: str, kind: str = "page") -> str:
        """
        Fetch a page and return its body text.

        Args:
            url: Absolute URL to fetch
            kind: Label used for metrics (listing, detail, taxonomy)

        Returns:
            Response body as text

        Raises:
            HttpError: On a non-2xx status (after retries for 429/5xx)
            FetchError: On transport failure after all attempts
        """
        last_exc: Exception | None = None
        max_attempts = self.policy.max_attempts

        for attempt in range(1, max_attempts + 1):
            started = time.monotonic()
            try:
                resp = await self.client.get(
                    url,
                    headers=default_headers(),
                    timeout=self.policy.timeout,
                )
            except RETRYABLE_EXC as e:
                metrics.page_fetches_total.labels(kind=kind, status="transport_error").inc()
                last_exc = e
                if attempt < max_attempts:
                    sleep_s = self.policy.backoff(attempt)
                    logger.warning(
                        f"Transport error ({type(e).__name__}) for {url}, "
                        f"retrying in {sleep_s:.1f}s (attempt {attempt}/{max_attempts})"
                    )
                    await asyncio.sleep(sleep_s)
                    continue
                raise FetchError(
                    f"Transport error after {max_attempts} attempts: {url}"
                ) from e
            finally:
                metrics.page_fetch_duration_seconds.labels(kind=kind).observe(
                    time.monotonic() - started
                )

            sc = resp.status_code
            metrics.page_fetches_total.labels(kind=kind, status=str(sc)).inc()

            if 200 <= sc < 300:
                return resp.text

            if _is_retryable_status(sc) and attempt < max_attempts:
                sleep_s = self.policy.backoff(attempt)
                retry_after = resp.headers.get("Retry-After")
                if sc == 429 and retry_after:
                    try:
                        sleep_s = float(retry_after)
                    except ValueError:
                        pass
                logger.warning(
                    f"Status {sc} for {url}, retrying in {sleep_s:.1f}s "
                    f"(attempt {attempt}/{max_attempts})"
                )
                last_exc = HttpError(sc, url)
                await asyncio.sleep(sleep_s)
                continue

            raise HttpError(sc, url)

        # Only reachable when max_attempts < 1
        raise FetchError(f"Failed after {max_attempts} attempts: {url}") from last_exc
