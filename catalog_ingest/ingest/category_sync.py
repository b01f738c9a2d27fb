"""Reconcile the local taxonomy with the category tree published by the source."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_ingest import metrics
from catalog_ingest.db.models import Category
from catalog_ingest.db.session import AsyncSessionLocal
from catalog_ingest.ingest.category_resolver import find_by_external_id
from catalog_ingest.ingest.http_client import PageFetcher
from catalog_ingest.ingest.json_extractor import (
    TAXONOMY_PAYLOAD_PATHS,
    extract_next_data,
    first_non_empty,
)
from catalog_ingest.ingest.types import CategoryChange, SyncReport

logger = logging.getLogger(__name__)

SOURCE_HOST = "www.macupdate.com"
APP_PATH_PREFIX = "/app/mac/"
PREVIEW_PLACEHOLDER_ID = "preview-id"
# Top-level categories are depth 0; their children are subcategories
MAX_DEPTH = 1


class PreviewRollback(Exception):
    """Raised inside a preview transaction so nothing it wrote is kept."""


def default_description(name: str) -> str:
    return f"Apps in the {name} category"


def is_valid_source_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return (
        parsed.scheme == "https"
        and parsed.hostname == SOURCE_HOST
        and parsed.path.startswith(APP_PATH_PREFIX)
        and parsed.path.rstrip("/") != APP_PATH_PREFIX.rstrip("/")
    )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_category_node(node: Any) -> bool:
    """Check a remote node has the fields and primitive types reconciliation reads."""
    return (
        isinstance(node, dict)
        and _is_int(node.get("id"))
        and (node.get("parent_id") is None or _is_int(node.get("parent_id")))
        and isinstance(node.get("name"), str)
        and isinstance(node.get("slug"), str)
        and (node.get("description") is None or isinstance(node.get("description"), str))
        and isinstance(node.get("url"), str)
        and (node.get("children") is None or isinstance(node.get("children"), list))
    )


class CategorySync:
    """Fetches the remote taxonomy and applies or previews it against the catalog."""

    def __init__(
        self,
        fetcher: Optional[PageFetcher] = None,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    ):
        self.fetcher = fetcher
        self.session_factory = session_factory

    async def fetch_remote_taxonomy(self, source_url: str) -> list[dict]:
        """
        Fetch the category tree embedded in an app detail page.

        Raises:
            ValueError: If the URL is not an app page on the source, or the
                page has no usable category tree
            FetchError: If the page could not be fetched
        """
        if not is_valid_source_url(source_url):
            raise ValueError(
                "Invalid source URL. Please provide a valid app URL "
                f"(e.g., https://{SOURCE_HOST}{APP_PATH_PREFIX}...)"
            )

        logger.info(f"Fetching categories from {source_url}")
        if self.fetcher is None:
            async with PageFetcher() as fetcher:
                html = await fetcher.fetch(source_url, kind="taxonomy")
        else:
            html = await self.fetcher.fetch(source_url, kind="taxonomy")

        next_data = extract_next_data(html)
        if next_data is None:
            raise ValueError("Could not find embedded page data")

        nodes = first_non_empty(next_data, TAXONOMY_PAYLOAD_PATHS)
        if not isinstance(nodes, list):
            raise ValueError("Invalid categories data structure")

        valid = [n for n in nodes if validate_category_node(n)]
        if not valid:
            raise ValueError("No valid categories found in the response")
        if len(valid) != len(nodes):
            logger.warning(f"Filtered out {len(nodes) - len(valid)} invalid categories")

        logger.info(f"Fetched {len(valid)} top-level categories")
        return valid

    async def process_category(
        self,
        session: AsyncSession,
        node: Any,
        parent_id: Optional[str],
        existing: dict[str, str],
        changes: list[CategoryChange],
        is_preview: bool,
        visited: set[int],
        depth: int = 0,
        parent_name: Optional[str] = None,
    ) -> None:
        """
        Reconcile one remote node and recurse into its children.

        ``existing`` maps local category ids to names and is kept current as
        categories are created. ``visited`` holds remote ids already handled.
        """
        if not validate_category_node(node):
            logger.warning(f"Skipping invalid category node: {node!r:.200}")
            return
        if node["id"] in visited:
            logger.warning(f"Skipping repeated category {node['name']} ({node['id']})")
            return
        if depth > MAX_DEPTH:
            logger.warning(f"Skipping category {node['name']}: nested deeper than two levels")
            return
        visited.add(node["id"])

        name = node["name"]
        external_id = str(node["id"])
        description = node.get("description") or default_description(name)
        if parent_name is None and parent_id:
            parent_name = existing.get(parent_id)

        found = await find_by_external_id(session, external_id)
        if found is None:
            if parent_id is None:
                parent_clause = Category.parent_id.is_(None)
            else:
                parent_clause = Category.parent_id == parent_id
            result = await session.execute(
                select(Category).where(Category.name == name, parent_clause).limit(1)
            )
            found = result.scalar_one_or_none()

        if found is None:
            if is_preview:
                category_id = PREVIEW_PLACEHOLDER_ID
            else:
                created = Category(
                    name=name,
                    description=description,
                    parent_id=parent_id,
                    external_id=external_id,
                )
                session.add(created)
                await session.flush()
                category_id = created.id
                existing[category_id] = name
                logger.info(f"Created category: {name} ({category_id})")
            changes.append(CategoryChange(
                type="create",
                name=name,
                parent_name=parent_name,
                description=node.get("description"),
            ))
        else:
            category_id = found.id
            if parent_id is not None and found.parent_id != parent_id and await self._has_children(session, found):
                logger.warning(
                    f"Not moving category {name} ({found.id}) under {parent_name}: "
                    "it has subcategories of its own"
                )
                parent_id = found.parent_id
            needs_update = (
                found.description != description
                or found.parent_id != parent_id
                or found.external_id != external_id
            )
            if needs_update:
                changes.append(CategoryChange(
                    type="update",
                    name=name,
                    parent_name=parent_name,
                    description=node.get("description"),
                    old_values={"description": found.description, "parent_id": found.parent_id},
                ))
                if not is_preview:
                    found.description = description
                    found.parent_id = parent_id
                    found.external_id = external_id
                    await session.flush()
                    logger.info(f"Updated category: {name} ({found.id})")
            else:
                changes.append(CategoryChange(type="unchanged", name=name, parent_name=parent_name))

        for child in node.get("children") or []:
            await self.process_category(
                session,
                child,
                category_id,
                existing,
                changes,
                is_preview,
                visited,
                depth + 1,
                parent_name=name,
            )

    @staticmethod
    async def _has_children(session: AsyncSession, category: Category) -> bool:
        result = await session.execute(
            select(Category.id).where(Category.parent_id == category.id).limit(1)
        )
        return result.first() is not None

    async def _reconcile(self, session: AsyncSession, nodes: list[dict], is_preview: bool) -> list[CategoryChange]:
        result = await session.execute(select(Category.id, Category.name))
        existing = {row.id: row.name for row in result}
        changes: list[CategoryChange] = []
        visited: set[int] = set()
        for node in nodes:
            await self.process_category(session, node, None, existing, changes, is_preview, visited)
        return changes

    def _record(self, report: SyncReport, mode: str) -> None:
        for change in report.changes:
            metrics.category_sync_changes_total.labels(type=change.type, mode=mode).inc()
        logger.info(f"Category sync ({mode}) summary: {report.summary}")

    async def preview_sync(self, source_url: str) -> SyncReport:
        """
        Report what a sync would change without keeping any write.

        Raises:
            ValueError: On an invalid URL or taxonomy, or when there is
                nothing to report
        """
        nodes = await self.fetch_remote_taxonomy(source_url)
        changes: list[CategoryChange] = []

        async with self.session_factory() as session:
            try:
                async with session.begin():
                    changes = await self._reconcile(session, nodes, is_preview=True)
                    raise PreviewRollback()
            except PreviewRollback:
                pass

        if not changes:
            raise ValueError("No changes to apply")

        report = SyncReport(changes=changes)
        self._record(report, "preview")
        return report

    async def sync(self, source_url: str) -> SyncReport:
        """Apply the remote taxonomy to the catalog in one transaction."""
        nodes = await self.fetch_remote_taxonomy(source_url)

        async with self.session_factory() as session:
            async with session.begin():
                changes = await self._reconcile(session, nodes, is_preview=False)

        report = SyncReport(changes=changes)
        self._record(report, "apply")
        return report
