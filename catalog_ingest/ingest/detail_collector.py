"""Fetch detail pages and build canonical import records."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Sequence

from selectolax.parser import HTMLParser
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_ingest.config import settings
from catalog_ingest.ingest.category_resolver import CategoryResolver
from catalog_ingest.ingest.errors import IngestError
from catalog_ingest.ingest.extractors import (
    Extraction,
    FallbackExtractor,
    ParsedPage,
    detail_extractor,
)
from catalog_ingest.ingest.http_client import PageFetcher
from catalog_ingest.ingest.image_store import ImageStore
from catalog_ingest.ingest.json_extractor import extract_json_ld, first_value
from catalog_ingest.ingest.listing_walker import ListingWalker
from catalog_ingest.ingest.normalize import (
    categories_from_json_ld,
    clean_html,
    clean_url,
    extract_file_size,
    first_date,
    format_price,
    get_best_screenshot_url,
    merge_requirements,
    parse_category_text,
)
from catalog_ingest.ingest.types import ImportCategory, ImportRecord, ListingSummary, VendorData

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "Uncategorized"
RELEASE_NOTES_SELECTORS = (".release_notes .mu_read_more_container", ".release_notes")


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _id_text(value: Any) -> Optional[str]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    return str(value)


def build_category(payload: dict, tree: Optional[HTMLParser] = None) -> ImportCategory:
    """
    Build the category reference for a record.

    When the payload carries both ``category`` and ``subcategory`` objects the
    subcategory is the record's category and the category its parent. Text
    categories (DOM fallback) and JSON-LD ``applicationCategory`` fill in
    when the payload has no category object.
    """
    raw_category = payload.get("category")
    subcategory = _as_dict(payload.get("subcategory"))

    if isinstance(raw_category, dict) and raw_category.get("name"):
        category_name = str(raw_category["name"]).strip()
        if subcategory.get("name"):
            return ImportCategory(
                name=str(subcategory["name"]).strip(),
                parent_name=category_name,
                external_category_id=_id_text(raw_category.get("id")),
                external_subcategory_id=_id_text(subcategory.get("id")),
            )
        parent_name = _as_dict(raw_category.get("parent")).get("name")
        return ImportCategory(
            name=category_name,
            parent_name=str(parent_name).strip() if parent_name else None,
            external_category_id=_id_text(raw_category.get("id")),
            external_subcategory_id=_id_text(subcategory.get("id")),
        )

    name, parent_name = (None, None)
    if isinstance(raw_category, str):
        name, parent_name = parse_category_text(raw_category)
    if not name and tree is not None:
        name, parent_name = categories_from_json_ld(extract_json_ld(tree))

    return ImportCategory(name=name or DEFAULT_CATEGORY, parent_name=parent_name)


def build_vendor_data(payload: dict) -> Optional[VendorData]:
    vendor = payload.get("vendor")
    if not isinstance(vendor, dict):
        return None
    external_id = _id_text(vendor.get("id"))
    if not external_id:
        return None
    logo_url = _as_dict(vendor.get("logo")).get("url")
    return VendorData(
        external_id=external_id,
        title=str(vendor.get("title") or vendor.get("name") or ""),
        description=str(vendor.get("description") or ""),
        slug=vendor.get("slug") or None,
        logo_url=str(logo_url) if logo_url else None,
    )


def vendor_display_name(payload: dict) -> Optional[str]:
    vendor = payload.get("vendor")
    if isinstance(vendor, dict):
        name = first_value(vendor.get("name"), vendor.get("title"))
    elif isinstance(vendor, str):
        name = vendor
    else:
        name = None
    return name or _as_dict(payload.get("developer")).get("name") or None


def bundle_ids_from(payload: dict) -> Optional[list[str]]:
    ids = payload.get("bundle_identifiers")
    if isinstance(ids, list):
        cleaned = [str(i) for i in ids if i]
        return cleaned or None
    if ids:
        return [str(ids)]
    if payload.get("bundle_id"):
        return [str(payload["bundle_id"])]
    return None


def download_count_from(payload: dict) -> Optional[int]:
    for key in ("download_count", "downloads"):
        value = payload.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return None


def download_url_from(payload: dict) -> Optional[str]:
    raw = payload.get("download_url")
    if isinstance(raw, dict):
        return clean_url(raw.get("url"))
    return clean_url(
        first_value(
            raw,
            payload.get("downloadUrl"),
            payload.get("origin_download_url"),
            payload.get("directDownload"),
        )
    )


def monetization_from(payload: dict) -> Optional[list[dict]]:
    items = payload.get("monetization")
    if not isinstance(items, list):
        return None
    return [
        {"type": item.get("type"), "title": item.get("title")}
        for item in items
        if isinstance(item, dict)
    ]


def release_notes_from(payload: dict, tree: HTMLParser) -> Optional[str]:
    notes = payload.get("release_notes")
    if not notes:
        for selector in RELEASE_NOTES_SELECTORS:
            node = tree.css_first(selector)
            if node is not None and node.html:
                notes = node.html
                break
    if not notes:
        return None
    return clean_html(notes, preserve_html=True) or None


class DetailCollector:
    """Builds import records from detail pages in concurrent batches."""

    def __init__(
        self,
        fetcher: PageFetcher,
        image_store: ImageStore,
        batch_size: Optional[int] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        extractor: Optional[FallbackExtractor] = None,
        walker: Optional[ListingWalker] = None,
    ):
        self.fetcher = fetcher
        self.image_store = image_store
        self.batch_size = batch_size or settings.detail_batch_size
        # When set, categories are resolved against the catalog while collecting
        self.session_factory = session_factory
        self.extractor = extractor or detail_extractor()
        self.walker = walker or ListingWalker(fetcher)
        self._resolve_lock = asyncio.Lock()

    async def collect(self, limit: Optional[int] = None, import_all: bool = False) -> list[ImportRecord]:
        """
        Walk the listing and collect detail records, dropping failures.

        Raises:
            ValueError: If neither a numeric limit nor import_all is given
        """
        if not import_all and not isinstance(limit, int):
            raise ValueError("Must provide a numeric limit when not importing all")

        summaries = await self.walker.walk(start_page=1, limit=None if import_all else limit)
        if not summaries:
            logger.warning("No apps found in listing")
            return []

        logger.info(f"[Details] Processing {len(summaries)} apps")
        results = await self.collect_details(summaries)
        records = [r for r in results if r is not None]
        logger.info(f"[Summary] Collected {len(records)}/{len(summaries)} apps")
        return records

    async def collect_details(self, summaries: Sequence[ListingSummary]) -> list[Optional[ImportRecord]]:
        """Collect records for each summary, in input order; failures are None."""
        results: list[Optional[ImportRecord]] = []
        for start in range(0, len(summaries), self.batch_size):
            batch = summaries[start:start + self.batch_size]
            results.extend(await asyncio.gather(*(self.collect_one(s) for s in batch)))
        return results

    async def collect_one(self, summary: ListingSummary) -> Optional[ImportRecord]:
        detail_url = clean_url(summary.detail_url)
        if not detail_url:
            logger.error(f"[Error] Invalid URL for {summary.name}")
            return None

        try:
            html = await self.fetcher.fetch(detail_url, kind="detail")
        except IngestError as e:
            logger.error(f"[Error] {summary.name}: {e}")
            return None

        try:
            page = ParsedPage(html, url=detail_url)
            extraction = self.extractor.extract(page)
            if extraction is None:
                logger.error(f"[Error] No data found for {summary.name}")
                return None
            return await self.build_record(summary, page, extraction)
        except Exception:
            logger.exception(f"[Error] Failed to build record for {summary.name}")
            return None

    async def build_record(
        self, summary: ListingSummary, page: ParsedPage, extraction: Extraction
    ) -> ImportRecord:
        payload: dict = extraction.data
        tree = page.tree
        owner_id = summary.external_id

        icon_source = first_value(
            payload.get("logo"),
            payload.get("icon_url"),
            payload.get("icon"),
            payload.get("app_icon"),
            summary.icon_url,
        )
        screenshots_raw = payload.get("screenshots")
        icon, screenshots = await asyncio.gather(
            self._store_icon(icon_source, owner_id),
            self._store_screenshots(screenshots_raw if isinstance(screenshots_raw, list) else [], owner_id),
        )

        requirements = merge_requirements(payload.get("requirements"), payload.get("system_requirements"))
        developer = _as_dict(payload.get("developer"))
        date_field = payload.get("date")

        category = build_category(payload, tree)
        if self.session_factory is not None:
            await self._resolve_category(category)

        description_html = first_value(payload.get("description"), payload.get("full_description"))
        full_content_html = first_value(payload.get("full_description"), payload.get("description"))

        return ImportRecord(
            name=str(first_value(payload.get("name"), payload.get("title"), summary.name) or "").strip(),
            description=clean_html(description_html),
            short_description=first_value(
                payload.get("short_description"),
                payload.get("shortDescription"),
                payload.get("summary"),
            ),
            category=category,
            website=clean_url(
                first_value(developer.get("url"), payload.get("website"), payload.get("homepage"))
            ) or "",
            icon=icon,
            screenshots=screenshots,
            version=first_value(payload.get("version"), summary.version),
            requirements=requirements.requirements,
            other_requirements=requirements.other_requirements,
            full_content=clean_html(full_content_html, preserve_html=True),
            release_notes=release_notes_from(payload, tree),
            vendor_data=build_vendor_data(payload),
            license=first_value(payload.get("license"), payload.get("licenseType")),
            file_size=extract_file_size(payload, tree),
            bundle_ids=bundle_ids_from(payload),
            price=format_price(payload.get("price")),
            download_count=download_count_from(payload),
            is_beta=bool(payload.get("is_beta")),
            vendor=vendor_display_name(payload),
            monetization=monetization_from(payload),
            is_supported=not payload.get("unsupported") and not payload.get("discontinued"),
            download_url=download_url_from(payload),
            purchase_url=clean_url(
                first_value(
                    payload.get("purchase_url"),
                    payload.get("purchaseUrl"),
                    payload.get("storeUrl"),
                    developer.get("support"),
                )
            ),
            release_date=first_date(
                date_field.get("date") if isinstance(date_field, dict) else date_field,
                payload.get("release_date"),
                payload.get("releaseDate"),
            ),
            last_scan_date=first_date(
                payload.get("last_scan"),
                payload.get("lastScan"),
                payload.get("updated"),
                payload.get("updatedAt"),
            ),
            source_external_id=owner_id,
        )

    async def _store_icon(self, icon_source: Any, owner_id: Optional[str]) -> Optional[str]:
        url = get_best_screenshot_url(icon_source)
        if not url:
            return None
        return await self.image_store.fetch_and_store(url, "icon", owner_id)

    async def _store_screenshots(self, raw_screenshots: list, owner_id: Optional[str]) -> list[str]:
        urls = [u for u in (get_best_screenshot_url(s) for s in raw_screenshots) if u]
        if not urls:
            return []
        stored = await asyncio.gather(
            *(self.image_store.fetch_and_store(url, "screenshot", owner_id) for url in urls)
        )
        return [s for s in stored if s]

    async def _resolve_category(self, category: ImportCategory) -> None:
        # Serialized so two records in one batch cannot create the same category twice
        async with self._resolve_lock:
            async with self.session_factory() as session:
                resolver = CategoryResolver(session)
                resolved = await resolver.resolve(
                    category.name,
                    category.parent_name,
                    category.external_subcategory_id or category.external_category_id,
                )
                await session.commit()
        category.category_id = resolved.category_id
        category.subcategory_id = resolved.subcategory_id
