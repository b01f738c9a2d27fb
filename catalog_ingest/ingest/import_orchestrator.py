"""Import job runner: collects records and writes them into the catalog in batches."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional

from sqlalchemy import select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_ingest import metrics
from catalog_ingest.config import settings
from catalog_ingest.db.models import App, AppVersion, Developer, Job, User, Vendor
from catalog_ingest.db.session import AsyncSessionLocal
from catalog_ingest.ingest.category_resolver import (
    CategoryResolver,
    ResolvedCategory,
    find_by_external_id,
)
from catalog_ingest.ingest.detail_collector import DetailCollector
from catalog_ingest.ingest.errors import ConfigurationError, RecordValidationError
from catalog_ingest.ingest.http_client import PageFetcher
from catalog_ingest.ingest.image_store import ImageStore
from catalog_ingest.ingest.normalize import size_to_bytes, slugify
from catalog_ingest.ingest.types import ImportCategory, ImportRecord
from catalog_ingest.logging_config import get_logger

logger = logging.getLogger(__name__)

# Screenshots served from the source's submission bucket are not kept
SUBMISSION_SCREENSHOT_MARKER = "static.macupdate.com/submission"
DEFAULT_MIN_OS = "macOS 10.0"
DUPLICATE_PREPARED_STATEMENT = "42P05"


# =============================================================================
# Job helpers
# =============================================================================

async def _deallocate_prepared_statements(session: AsyncSession) -> None:
    """Best-effort cleanup of stale prepared statements (PostgreSQL only)."""
    if session.get_bind().dialect.name != "postgresql":
        return
    try:
        await session.execute(text("DEALLOCATE ALL"))
    except DBAPIError as e:
        logger.warning(f"Failed to clean up prepared statements: {e}")
        await session.rollback()


def _is_duplicate_prepared_statement(error: Exception) -> bool:
    orig = getattr(error, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate == DUPLICATE_PREPARED_STATEMENT or DUPLICATE_PREPARED_STATEMENT in str(error)


async def create_import_job(session: AsyncSession) -> Job:
    """
    Create a pending import job.

    Retries once after a short delay when creation hits a duplicate prepared
    statement conflict.
    """
    await _deallocate_prepared_statements(session)
    try:
        job = Job(type="import", status="pending", progress=0, total=0)
        session.add(job)
        await session.commit()
        return job
    except DBAPIError as e:
        if not _is_duplicate_prepared_statement(e):
            raise
        logger.warning(f"Prepared statement conflict creating import job, retrying: {e}")
        await session.rollback()

    await asyncio.sleep(0.1)
    await _deallocate_prepared_statements(session)
    job = Job(type="import", status="pending", progress=0, total=0)
    session.add(job)
    await session.commit()
    return job


async def get_job(session: AsyncSession, job_id: str) -> Optional[Job]:
    return await session.get(Job, job_id)


async def get_system_owner(session: AsyncSession) -> Developer:
    """
    Return the developer profile of the first admin user, creating it if needed.

    Raises:
        ConfigurationError: If no admin user exists
    """
    result = await session.execute(
        select(User).where(User.is_admin.is_(True)).order_by(User.created_at).limit(1)
    )
    admin = result.scalar_one_or_none()
    if admin is None:
        raise ConfigurationError("No admin user found in the system")

    result = await session.execute(select(Developer).where(Developer.user_id == admin.id))
    developer = result.scalar_one_or_none()
    if developer is None:
        developer = Developer(user_id=admin.id, verified=True)
        session.add(developer)
        await session.commit()
        logger.info(f"Created developer profile {developer.id} for admin {admin.id}")
    return developer


async def upsert_vendors(
    session_factory: Callable[[], AsyncSession],
    records: Iterable[Optional[ImportRecord]],
) -> dict[str, str]:
    """Upsert each distinct vendor once; returns external id -> vendor id."""
    vendor_ids: dict[str, str] = {}
    for record in records:
        if record is None or record.vendor_data is None:
            continue
        data = record.vendor_data
        if data.external_id in vendor_ids:
            continue
        try:
            async with session_factory() as session:
                result = await session.execute(
                    select(Vendor).where(Vendor.external_id == data.external_id)
                )
                vendor = result.scalar_one_or_none()
                if vendor is None:
                    vendor = Vendor(
                        external_id=data.external_id,
                        slug=data.slug or slugify(data.title) or data.external_id,
                        title=data.title,
                        description=data.description,
                        logo_url=data.logo_url,
                    )
                    session.add(vendor)
                else:
                    vendor.title = data.title
                    vendor.description = data.description
                    vendor.logo_url = data.logo_url
                await session.commit()
                vendor_ids[data.external_id] = vendor.id
        except SQLAlchemyError as e:
            logger.error(f"Failed to upsert vendor {data.external_id} for {record.name}: {e}")
    logger.info(f"Pre-processed {len(vendor_ids)} vendors")
    return vendor_ids


async def lookup_category(session: AsyncSession, category: ImportCategory) -> Optional[ResolvedCategory]:
    """Find catalog ids from external ids: subcategory id first, then category id."""
    if category.external_subcategory_id:
        found = await find_by_external_id(session, category.external_subcategory_id)
        if found is not None and found.parent_id:
            return ResolvedCategory(found.parent_id, found.id)

    if category.external_category_id:
        found = await find_by_external_id(session, category.external_category_id)
        if found is not None:
            if found.parent_id:
                return ResolvedCategory(found.parent_id, found.id)
            return ResolvedCategory(found.id, None)
    return None


async def find_duplicate(session: AsyncSession, name: str, owner_id: str) -> Optional[str]:
    result = await session.execute(
        select(App.id).where(App.name == name, App.developer_id == owner_id).limit(1)
    )
    return result.scalar_one_or_none()


def build_app(
    record: ImportRecord,
    owner_id: str,
    category: ResolvedCategory,
    vendor_id: Optional[str],
) -> App:
    """Map an import record onto a new, unpublished App row."""
    app = App(
        name=record.name,
        description=record.description,
        short_description=record.short_description,
        full_content=record.full_content,
        category_id=category.category_id,
        subcategory_id=category.subcategory_id,
        website=record.website,
        icon=record.icon,
        published=False,
        developer_id=owner_id,
        screenshots=[
            s for s in record.screenshots if s and SUBMISSION_SCREENSHOT_MARKER not in s
        ],
        requirements=record.requirements,
        other_requirements=record.other_requirements,
        bundle_ids=[b for b in (record.bundle_ids or []) if b],
        download_count=record.download_count,
        download_url=record.download_url,
        is_beta=bool(record.is_beta),
        is_supported=record.is_supported is not False,
        last_scan_date=record.last_scan_date,
        license=record.license,
        price=record.price,
        purchase_url=record.purchase_url,
        release_date=record.release_date,
        vendor=record.vendor,
        monetization=record.monetization,
        file_size=record.file_size,
        vendor_id=vendor_id,
        version=record.version,
        original_category=record.category.display_path if record.category else None,
    )
    if record.version:
        app.versions.append(
            AppVersion(
                version=record.version,
                changelog=record.release_notes,
                min_os_version=record.requirements or DEFAULT_MIN_OS,
                file_url=record.download_url or "",
                file_size=size_to_bytes(record.file_size),
                sha256_hash="",
            )
        )
    return app


# =============================================================================
# Run context
# =============================================================================

@dataclass
class ImportRunContext:
    """State owned by one import run.

    ``vendor_ids`` is filled before any record is written and read-only after.
    """

    owner_id: str
    vendor_ids: Mapping[str, str]
    total: int
    job_id: Optional[str] = None
    processed: int = 0
    created: int = 0
    duplicates: int = 0
    errors: list[dict] = field(default_factory=list)

    def __post_init__(self):
        self.vendor_ids = MappingProxyType(dict(self.vendor_ids))

    def vendor_id_for(self, record: ImportRecord) -> Optional[str]:
        if record.vendor_data is None:
            return None
        return self.vendor_ids.get(record.vendor_data.external_id)

    def record_error(self, name: Optional[str], error: str) -> None:
        self.errors.append({"name": name or "Unknown", "error": error})

    def error_summary(self) -> Optional[str]:
        if not self.errors:
            return None
        return json.dumps(self.errors)


@dataclass
class SyncNewAppsStats:
    created: int = 0
    skipped: int = 0
    failed: int = 0


# =============================================================================
# Orchestrator
# =============================================================================

class ImportOrchestrator:
    """Runs import jobs: pending -> processing -> completed | failed."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        collector: Optional[DetailCollector] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.collector = collector
        self.batch_size = batch_size or settings.import_batch_size

    async def _update_job(self, job_id: str, **values) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Job)
                .where(Job.id == job_id)
                .values(updated_at=datetime.utcnow(), **values)
            )
            await session.commit()

    async def _collect(self, limit: Optional[int], import_all: bool, resolve_categories: bool) -> list[ImportRecord]:
        if self.collector is not None:
            return await self.collector.collect(limit=limit, import_all=import_all)

        fetcher = PageFetcher()
        image_store = ImageStore()
        collector = DetailCollector(
            fetcher,
            image_store,
            session_factory=self.session_factory if resolve_categories else None,
        )
        try:
            return await collector.collect(limit=limit, import_all=import_all)
        finally:
            await fetcher.close()
            await image_store.close()

    async def run(self, job_id: str, limit: Optional[int] = None, import_all: bool = False) -> None:
        """
        Run an import job to completion.

        Per-record problems are collected into the job's ``error`` field as a
        JSON list of ``{name, error}``; anything else fails the job.
        """
        log = get_logger(__name__, job_id=job_id)
        started = time.monotonic()
        log.info(f"Starting import job (limit={limit}, import_all={import_all})")

        try:
            await self._update_job(job_id, status="processing")

            records = await self._collect(limit, import_all, resolve_categories=False)
            log.info(f"Retrieved {len(records)} apps from source")
            if not records:
                raise RuntimeError("No apps retrieved from source")

            async with self.session_factory() as session:
                owner = await get_system_owner(session)

            vendor_ids = await upsert_vendors(self.session_factory, records)
            ctx = ImportRunContext(
                owner_id=owner.id,
                vendor_ids=vendor_ids,
                total=len(records),
                job_id=job_id,
            )

            for start in range(0, len(records), self.batch_size):
                chunk = records[start:start + self.batch_size]
                await self.process_chunk(ctx, chunk)
                await self._update_job(job_id, progress=ctx.processed, total=ctx.total)
                log.info(
                    f"Progress: {ctx.processed}/{ctx.total} "
                    f"({ctx.created} created, {ctx.duplicates} duplicates, {len(ctx.errors)} failed)"
                )

            await self._update_job(job_id, status="completed", error=ctx.error_summary())
            metrics.import_jobs_total.labels(status="completed").inc()
            log.info(
                f"Import job completed: {ctx.created} created, "
                f"{ctx.duplicates} duplicates, {len(ctx.errors)} failed"
            )

        except Exception as e:
            message = str(e) or type(e).__name__
            log.error(f"Import job failed: {message}")
            metrics.import_jobs_total.labels(status="failed").inc()
            await self._update_job(job_id, status="failed", error=message)

        finally:
            metrics.import_job_duration_seconds.observe(time.monotonic() - started)

    async def process_chunk(self, ctx: ImportRunContext, chunk: list[Optional[ImportRecord]]) -> None:
        """Write one chunk concurrently; one record failing never cancels the others."""
        results = await asyncio.gather(
            *(self.process_record(ctx, record) for record in chunk),
            return_exceptions=True,
        )
        for record, result in zip(chunk, results):
            ctx.processed += 1
            name = record.name if record is not None else None
            if isinstance(result, RecordValidationError):
                logger.warning(f"Skipping {name or 'Unknown'}: {result}")
                ctx.record_error(name, str(result))
                metrics.import_records_total.labels(outcome="error").inc()
            elif isinstance(result, Exception):
                logger.error(f"Failed to import {name or 'Unknown'}: {result}")
                ctx.record_error(name, str(result) or type(result).__name__)
                metrics.import_records_total.labels(outcome="error").inc()
            elif result == "duplicate":
                ctx.duplicates += 1
                metrics.import_records_total.labels(outcome="duplicate").inc()
            else:
                ctx.created += 1
                metrics.import_records_total.labels(outcome="created").inc()

    async def process_record(self, ctx: ImportRunContext, record: Optional[ImportRecord]) -> str:
        """
        Write a single record.

        Returns:
            "created" or "duplicate"

        Raises:
            RecordValidationError: If the record cannot be imported
        """
        if record is None:
            raise RecordValidationError("Null app data")

        missing = record.missing_fields()
        if missing:
            raise RecordValidationError(
                f"Invalid app data - missing required fields: {', '.join(missing)}"
            )

        async with self.session_factory() as session:
            if await find_duplicate(session, record.name, ctx.owner_id):
                logger.info(f"App already exists: {record.name}")
                return "duplicate"

            category = record.category
            if not category.has_external_id:
                raise RecordValidationError("Missing external category id")

            resolved = await lookup_category(session, category)
            if resolved is None or not resolved.category_id:
                external = category.external_subcategory_id or category.external_category_id
                raise RecordValidationError(
                    f"Category not found for external id {external}; run category sync first"
                )

            session.add(build_app(record, ctx.owner_id, resolved, ctx.vendor_id_for(record)))
            try:
                await session.commit()
            except IntegrityError:
                # Same name written by a sibling in this chunk
                await session.rollback()
                if await find_duplicate(session, record.name, ctx.owner_id):
                    return "duplicate"
                raise

        logger.info(f"Created app: {record.name} in {category.display_path}")
        return "created"

    async def sync_new_apps(self, limit: Optional[int] = None) -> SyncNewAppsStats:
        """
        Import the newest apps without a job record.

        Categories are looked up by external id first and then resolved by
        name, creating them when the catalog does not have them yet.
        """
        limit = limit or settings.new_apps_sync_limit
        stats = SyncNewAppsStats()
        logger.info(f"Starting sync of up to {limit} new apps")

        try:
            records = await self._collect(limit, False, resolve_categories=True)
            if not records:
                logger.info("No new apps found")
                return stats

            async with self.session_factory() as session:
                owner = await get_system_owner(session)
            vendor_ids = MappingProxyType(await upsert_vendors(self.session_factory, records))
        except ConfigurationError as e:
            logger.error(f"New app sync aborted: {e}")
            return stats

        for record in records:
            try:
                created = await self._sync_record(record, owner.id, vendor_ids)
            except SQLAlchemyError as e:
                logger.error(f"Failed to sync app {record.name}: {e}")
                stats.failed += 1
                continue
            if created:
                stats.created += 1
            else:
                stats.skipped += 1

        logger.info(
            f"Finished syncing new apps: {stats.created} created, "
            f"{stats.skipped} skipped, {stats.failed} failed"
        )
        return stats

    async def _sync_record(self, record: ImportRecord, owner_id: str, vendor_ids: Mapping[str, str]) -> bool:
        if record.missing_fields():
            logger.info(f"Skipping incomplete app {record.name or 'Unknown'}")
            return False

        async with self.session_factory() as session:
            if await find_duplicate(session, record.name, owner_id):
                logger.info(f"App already exists: {record.name}")
                return False

            category = record.category
            resolved = await lookup_category(session, category)
            if resolved is None and category.category_id:
                resolved = ResolvedCategory(category.category_id, category.subcategory_id)
            if resolved is None:
                resolved = await CategoryResolver(session).resolve(
                    category.name,
                    category.parent_name,
                    category.external_subcategory_id or category.external_category_id,
                )
            if not resolved.category_id:
                logger.info(f"Skipping app {record.name}: category could not be resolved")
                return False

            vendor_id = vendor_ids.get(record.vendor_data.external_id) if record.vendor_data else None
            session.add(build_app(record, owner_id, resolved, vendor_id))
            await session.commit()

        logger.info(f"Created app: {record.name}")
        return True


import_orchestrator = ImportOrchestrator()
