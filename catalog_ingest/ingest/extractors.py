"""Page extraction strategies: embedded payload first, DOM selectors as fallback."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from selectolax.parser import HTMLParser, Node

from catalog_ingest import metrics
from catalog_ingest.config import settings
from catalog_ingest.ingest.json_extractor import (
    DETAIL_PAYLOAD_PATHS,
    LISTING_PAYLOAD_PATHS,
    extract_next_data,
    first_non_empty,
    first_value,
)
from catalog_ingest.ingest.normalize import clean_app_name, clean_url
from catalog_ingest.ingest.types import ListingSummary

logger = logging.getLogger(__name__)

_APP_ID_RE = re.compile(r"/app/mac/(\d+)")
_SUBDOMAIN_RE = re.compile(r"https?://([^.]+)\.macupdate\.com")

LISTING_CARD_SELECTORS = (
    ".mu_card_complex_line",
    ".app-card",
    '[data-testid="app-card"]',
    ".app-listing-item",
)
LISTING_LINK_SELECTORS = (
    "a.link_app",
    'a[href*="/app/"]',
    ".app-title a",
    ".app-name a",
    "h3 a",
)
LISTING_NAME_SELECTORS = (".app-name", ".app-title", ".title", "h3", "strong")
LISTING_VERSION_SELECTORS = (".mu_card_complex_line_version", ".app-version", ".version")
LISTING_ICON_SELECTORS = (
    ".mu_card_complex_line_img",
    "img.app-icon",
    ".app-logo img",
    'img[alt*="icon"]',
)


@dataclass
class ParsedPage:
    """A fetched page parsed once and shared between extractors."""

    html: str
    url: Optional[str] = None
    tree: HTMLParser = field(init=False)
    _next_data: Any = field(init=False, default=None)
    _next_data_loaded: bool = field(init=False, default=False)

    def __post_init__(self):
        self.tree = HTMLParser(self.html or "")

    @property
    def next_data(self) -> Optional[dict]:
        if not self._next_data_loaded:
            self._next_data = extract_next_data(self.tree)
            self._next_data_loaded = True
        return self._next_data


@dataclass
class Extraction:
    """Extracted data plus the name of the strategy that produced it."""

    source: str
    data: Any


class Extractor(ABC):
    """Pulls one kind of data out of a parsed page."""

    name: str = "base"

    @abstractmethod
    def extract(self, page: ParsedPage) -> Optional[Any]:
        """
        Extract data from a page.

        Returns:
            Extracted data, or None when this strategy found nothing usable
        """
        pass


class StructuredPayloadExtractor(Extractor):
    """Reads the embedded __NEXT_DATA__ payload at the first non-empty candidate path."""

    name = "structured"

    def __init__(self, paths: Sequence[str], expected_type: type | tuple = (dict, list)):
        self.paths = tuple(paths)
        self.expected_type = expected_type

    def extract(self, page: ParsedPage) -> Optional[Any]:
        data = page.next_data
        if data is None:
            return None
        value = first_non_empty(data, self.paths)
        if value is None or not isinstance(value, self.expected_type):
            return None
        return self.transform(value, page)

    def transform(self, value: Any, page: ParsedPage) -> Optional[Any]:
        return value


class ListingPayloadExtractor(StructuredPayloadExtractor):
    """Maps the listing payload array to summaries."""

    def __init__(self, paths: Sequence[str] = LISTING_PAYLOAD_PATHS):
        super().__init__(paths, expected_type=list)

    def transform(self, value: list, page: ParsedPage) -> Optional[list[ListingSummary]]:
        base_url = settings.source_base_url.rstrip("/")
        summaries = []
        for item in value:
            if not isinstance(item, dict):
                continue
            name = first_value(item.get("title"), item.get("name"))
            raw_id = item.get("id")
            app_id = str(raw_id) if raw_id not in (None, "") else item.get("slug")
            if not name or not app_id:
                continue

            detail_url = item.get("url") or f"/app/mac/{app_id}"
            if not str(detail_url).startswith("http"):
                detail_url = f"{base_url}/{str(detail_url).lstrip('/')}"

            summaries.append(
                ListingSummary(
                    name=str(name).strip(),
                    detail_url=detail_url,
                    external_id=str(app_id),
                    version=item.get("version") or None,
                    icon_url=first_value(item.get("icon_url"), item.get("icon")),
                )
            )
        # A payload that only held malformed entries is still an authoritative empty page
        return summaries


class DomFallbackExtractor(Extractor):
    """Base for CSS-selector scraping when the payload is missing."""

    name = "dom"

    @staticmethod
    def first_text(node: Node | HTMLParser, selectors: Sequence[str]) -> Optional[str]:
        for selector in selectors:
            found = node.css_first(selector)
            if found is not None:
                text = (found.text() or "").strip()
                if text:
                    return text
        return None


class ListingDomExtractor(DomFallbackExtractor):
    """Scrapes app cards from listing markup."""

    def _cards(self, tree: HTMLParser) -> list[Node]:
        cards: list[Node] = []
        seen: set[int] = set()
        for selector in LISTING_CARD_SELECTORS:
            for node in tree.css(selector):
                if node.mem_id in seen:
                    continue
                seen.add(node.mem_id)
                cards.append(node)
        return cards

    @staticmethod
    def _app_id_from_href(href: str) -> Optional[str]:
        match = _APP_ID_RE.search(href)
        if match:
            return match.group(1)
        if ".macupdate.com" in href:
            sub = _SUBDOMAIN_RE.search(href)
            if sub:
                return f"subdomain-{sub.group(1)}"
        return None

    def _name_from_link(self, link: Node) -> Optional[str]:
        name = self.first_text(link, LISTING_NAME_SELECTORS)
        if name:
            return name
        direct = (link.text(deep=False) or "").strip()
        return direct or (link.text() or "").strip() or None

    def _parse_card(self, card: Node) -> Optional[ListingSummary]:
        detail_url = None
        app_id = None
        for selector in LISTING_LINK_SELECTORS:
            link = card.css_first(selector)
            if link is None:
                continue
            href = link.attributes.get("href")
            if href:
                detail_url = href
                app_id = self._app_id_from_href(href)
                break

        name = None
        for selector in LISTING_LINK_SELECTORS:
            link = card.css_first(selector)
            if link is None:
                continue
            name = self._name_from_link(link)
            if name:
                break

        name = clean_app_name(name) if name else None
        if not detail_url or not name or not app_id:
            logger.debug(
                f"Skipping listing card: detail_url={bool(detail_url)} "
                f"name={bool(name)} app_id={bool(app_id)}"
            )
            return None

        version = self.first_text(card, LISTING_VERSION_SELECTORS)

        icon_url = None
        for selector in LISTING_ICON_SELECTORS:
            icon = card.css_first(selector)
            if icon is not None and icon.attributes.get("src"):
                icon_url = icon.attributes["src"]
                break

        return ListingSummary(
            name=name,
            detail_url=clean_url(detail_url) or detail_url,
            external_id=app_id,
            version=version,
            icon_url=icon_url,
        )

    def extract(self, page: ParsedPage) -> Optional[list[ListingSummary]]:
        cards = self._cards(page.tree)
        if not cards:
            return None
        summaries = []
        for card in cards:
            summary = self._parse_card(card)
            if summary is not None:
                summaries.append(summary)
        return summaries


class DetailPayloadExtractor(StructuredPayloadExtractor):
    """Returns the app object from a detail page payload."""

    def __init__(self, paths: Sequence[str] = DETAIL_PAYLOAD_PATHS):
        super().__init__(paths, expected_type=dict)


class DetailDomExtractor(DomFallbackExtractor):
    """Scrapes the minimal detail fields: title, description, version and category text."""

    def extract(self, page: ParsedPage) -> Optional[dict]:
        tree = page.tree
        data = {
            "title": self.first_text(tree, (".mu_app_name", ".mu_card_complex_line_title")),
            "description": self.first_text(tree, (".mu_app_description",)),
            "version": self.first_text(tree, (".mu_app_version",)),
            "category": self.first_text(tree, (".mu_app_category",)),
        }
        if not data["title"] and not data["description"]:
            return None
        return data


class FallbackExtractor:
    """Tries each extractor in order and reports which one produced data."""

    def __init__(self, extractors: Sequence[Extractor], kind: str):
        self.extractors = list(extractors)
        self.kind = kind

    def extract(self, page: ParsedPage) -> Optional[Extraction]:
        for extractor in self.extractors:
            data = extractor.extract(page)
            if data is not None:
                metrics.extractions_total.labels(kind=self.kind, source=extractor.name).inc()
                return Extraction(source=extractor.name, data=data)
        metrics.extractions_total.labels(kind=self.kind, source="none").inc()
        return None


def listing_extractor() -> FallbackExtractor:
    return FallbackExtractor([ListingPayloadExtractor(), ListingDomExtractor()], kind="listing")


def detail_extractor() -> FallbackExtractor:
    return FallbackExtractor([DetailPayloadExtractor(), DetailDomExtractor()], kind="detail")
