"""Data records passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass
class ListingSummary:
    """One app entry read from a listing page."""

    name: str
    detail_url: str
    external_id: Optional[str] = None
    version: Optional[str] = None
    icon_url: Optional[str] = None


@dataclass
class ImportCategory:
    """Category reference carried on an import record.

    ``name`` is the most specific category text and ``parent_name`` its parent
    when the source gives two levels. ``category_id``/``subcategory_id`` are
    only filled when the collector ran with a resolver attached.
    """

    name: str
    parent_name: Optional[str] = None
    external_category_id: Optional[str] = None
    external_subcategory_id: Optional[str] = None
    category_id: Optional[str] = None
    subcategory_id: Optional[str] = None

    @property
    def has_external_id(self) -> bool:
        return bool(self.external_category_id or self.external_subcategory_id)

    @property
    def display_path(self) -> str:
        """Human readable "Parent › Child" text."""
        if self.parent_name:
            return f"{self.parent_name} › {self.name}"
        return self.name


@dataclass
class VendorData:
    """Vendor block from a detail payload."""

    external_id: str
    title: str
    description: str = ""
    slug: Optional[str] = None
    logo_url: Optional[str] = None


@dataclass
class ImportRecord:
    """Canonical app record produced by the detail collector."""

    name: str
    description: str
    category: Optional[ImportCategory]
    website: str = ""
    full_content: str = ""
    short_description: Optional[str] = None
    icon: Optional[str] = None
    screenshots: list[str] = field(default_factory=list)
    version: Optional[str] = None
    requirements: Optional[str] = None
    other_requirements: Optional[str] = None
    release_notes: Optional[str] = None
    vendor_data: Optional[VendorData] = None
    license: Optional[str] = None
    file_size: Optional[str] = None
    bundle_ids: Optional[list[str]] = None
    price: Optional[str] = None
    download_count: Optional[int] = None
    is_beta: bool = False
    vendor: Optional[str] = None
    monetization: Optional[list[dict[str, Any]]] = None
    is_supported: bool = True
    download_url: Optional[str] = None
    purchase_url: Optional[str] = None
    release_date: Optional[datetime] = None
    last_scan_date: Optional[datetime] = None
    source_external_id: Optional[str] = None

    def missing_fields(self) -> list[str]:
        """Names of required fields that are empty."""
        missing = []
        if not self.name:
            missing.append("name")
        if not self.description:
            missing.append("description")
        if not self.category or not self.category.name:
            missing.append("category")
        return missing


@dataclass
class CategoryChange:
    """One entry of a category sync report."""

    type: str  # create, update, unchanged
    name: str
    parent_name: Optional[str] = None
    description: Optional[str] = None
    old_values: Optional[dict[str, Any]] = None


@dataclass
class SyncReport:
    """Result of a category sync or preview."""

    changes: list[CategoryChange] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        counts = {"create": 0, "update": 0, "unchanged": 0}
        for change in self.changes:
            counts[change.type] = counts.get(change.type, 0) + 1
        return counts
