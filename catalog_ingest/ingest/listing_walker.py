"""Paginate the source listing and collect app summaries."""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Optional

from catalog_ingest.config import settings
from catalog_ingest.ingest.errors import IngestError
from catalog_ingest.ingest.extractors import FallbackExtractor, ParsedPage, listing_extractor
from catalog_ingest.ingest.http_client import PageFetcher
from catalog_ingest.ingest.types import ListingSummary

logger = logging.getLogger(__name__)

LISTING_PATH = "/find/mac/sort=date;rating=;price=all;updated=all;categories=;page={page}"


def listing_url(page: int, base_url: Optional[str] = None) -> str:
    base = (base_url or settings.source_base_url).rstrip("/")
    return f"{base}{LISTING_PATH.format(page=page)}"


class ListingWalker:
    """Walks listing pages one at a time with a politeness delay between them."""

    def __init__(
        self,
        fetcher: PageFetcher,
        page_delay: Optional[float] = None,
        page_size: Optional[int] = None,
        extractor: Optional[FallbackExtractor] = None,
    ):
        self.fetcher = fetcher
        self.page_delay = settings.listing_page_delay_seconds if page_delay is None else page_delay
        self.page_size = page_size or settings.listing_page_size
        self.extractor = extractor or listing_extractor()

    async def fetch_page(self, page: int) -> list[ListingSummary]:
        """Fetch and extract one listing page. Failures read as an empty page."""
        url = listing_url(page)
        try:
            html = await self.fetcher.fetch(url, kind="listing")
        except IngestError as e:
            logger.error(f"Failed to fetch listing page {page}: {e}")
            return []

        extraction = self.extractor.extract(ParsedPage(html, url=url))
        if extraction is None:
            logger.info(f"No apps found on listing page {page}")
            return []

        logger.debug(f"Listing page {page}: {len(extraction.data)} apps via {extraction.source}")
        return list(extraction.data)

    async def walk(self, start_page: int = 1, limit: Optional[int] = None) -> list[ListingSummary]:
        """
        Collect summaries from consecutive listing pages.

        Args:
            start_page: First page number to fetch
            limit: Maximum summaries to return; None walks until an empty page

        Returns:
            Summaries in listing order, at most ``limit`` of them
        """
        if limit is not None and limit <= 0:
            return []

        max_pages = math.ceil(limit / self.page_size) if limit is not None else None
        collected: list[ListingSummary] = []
        seen_ids: set[str] = set()
        page = start_page
        pages_walked = 0

        while max_pages is None or pages_walked < max_pages:
            summaries = await self.fetch_page(page)
            pages_walked += 1

            if not summaries:
                logger.info(f"Listing walk ended on empty page {page}")
                break

            for summary in summaries:
                if summary.external_id and summary.external_id in seen_ids:
                    continue
                if summary.external_id:
                    seen_ids.add(summary.external_id)
                collected.append(summary)

            logger.info(
                f"[Progress] Page {page}: {len(collected)}/"
                f"{limit if limit is not None else 'all'} apps"
            )

            if limit is not None and len(collected) >= limit:
                break

            if max_pages is None or pages_walked < max_pages:
                await asyncio.sleep(self.page_delay)
            page += 1

        if limit is not None:
            return collected[:limit]
        return collected
