"""Tests for import job orchestration."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import selectinload

from catalog_ingest.db.models import App, Category, Developer, Job, Vendor
from catalog_ingest.ingest.import_orchestrator import (
    ImportOrchestrator,
    ImportRunContext,
    create_import_job,
    get_job,
)
from catalog_ingest.ingest.types import ImportCategory, ImportRecord, VendorData


def make_record(name="Fantastical", **overrides) -> ImportRecord:
    values = dict(
        name=name,
        description=f"{name} description",
        category=ImportCategory(
            name="Calendars",
            parent_name="Productivity",
            external_category_id="10",
            external_subcategory_id="11",
        ),
        version="3.8",
        requirements="macOS 12.0",
        download_url="https://cdn.example.com/app.dmg",
        file_size="45 MB",
        price="$4.99",
        screenshots=[
            "/uploads/screenshots/1.png",
            "https://static.macupdate.com/submission/99/raw.png",
        ],
    )
    values.update(overrides)
    return ImportRecord(**values)


def collector_returning(records):
    collector = MagicMock()
    collector.collect = AsyncMock(return_value=records)
    return collector


async def _new_job(session_factory) -> str:
    async with session_factory() as session:
        job = await create_import_job(session)
        return job.id


async def _job(session_factory, job_id) -> Job:
    async with session_factory() as session:
        return await get_job(session, job_id)


async def _apps(session_factory) -> list[App]:
    async with session_factory() as session:
        result = await session.execute(
            select(App).options(selectinload(App.versions)).order_by(App.name)
        )
        return list(result.scalars())


@pytest.mark.asyncio
async def test_run_imports_records_and_completes(session_factory, admin_user, synced_categories):
    parent, child = synced_categories
    job_id = await _new_job(session_factory)
    orchestrator = ImportOrchestrator(
        session_factory,
        collector=collector_returning([make_record("Fantastical"), make_record("Itsycal", version=None)]),
    )

    await orchestrator.run(job_id, limit=2)

    job = await _job(session_factory, job_id)
    assert job.status == "completed"
    assert job.error is None
    assert (job.progress, job.total) == (2, 2)

    apps = await _apps(session_factory)
    assert [a.name for a in apps] == ["Fantastical", "Itsycal"]
    fantastical = apps[0]
    assert fantastical.category_id == parent.id
    assert fantastical.subcategory_id == child.id
    assert fantastical.published is False
    assert fantastical.original_category == "Productivity › Calendars"
    assert fantastical.screenshots == ["/uploads/screenshots/1.png"]
    assert len(fantastical.versions) == 1
    version = fantastical.versions[0]
    assert version.version == "3.8"
    assert version.min_os_version == "macOS 12.0"
    assert version.file_url == "https://cdn.example.com/app.dmg"
    assert version.file_size == 45 * 1024 * 1024
    assert version.sha256_hash == ""
    assert apps[1].versions == []


@pytest.mark.asyncio
async def test_admin_developer_profile_created_when_missing(session_factory, admin_user, synced_categories):
    job_id = await _new_job(session_factory)

    await ImportOrchestrator(session_factory, collector=collector_returning([make_record()])).run(job_id, limit=1)

    async with session_factory() as session:
        developer = (await session.execute(select(Developer))).scalar_one()
    assert developer.user_id == admin_user.id
    assert developer.verified is True
    assert (await _apps(session_factory))[0].developer_id == developer.id


@pytest.mark.asyncio
async def test_duplicates_are_skipped_without_errors(session_factory, admin_developer, synced_categories):
    records = [make_record("Fantastical"), make_record("Itsycal")]

    first_job = await _new_job(session_factory)
    await ImportOrchestrator(session_factory, collector=collector_returning(records)).run(first_job, limit=2)
    second_job = await _new_job(session_factory)
    await ImportOrchestrator(session_factory, collector=collector_returning(records)).run(second_job, limit=2)

    job = await _job(session_factory, second_job)
    assert job.status == "completed"
    assert job.error is None
    assert job.progress == 2
    assert len(await _apps(session_factory)) == 2


@pytest.mark.asyncio
async def test_partial_failure_completes_with_error_summary(session_factory, admin_developer, synced_categories):
    records = [
        make_record("Good One"),
        make_record("No Description", description=""),
        make_record("No External Id", category=ImportCategory(name="Calendars", parent_name="Productivity")),
        make_record("Unknown Category", category=ImportCategory(name="Games", external_category_id="999")),
        None,
        make_record("Good Two"),
    ]
    job_id = await _new_job(session_factory)

    await ImportOrchestrator(session_factory, collector=collector_returning(records), batch_size=4).run(job_id, limit=6)

    job = await _job(session_factory, job_id)
    assert job.status == "completed"
    assert (job.progress, job.total) == (6, 6)
    errors = {e["name"]: e["error"] for e in json.loads(job.error)}
    assert errors == {
        "No Description": "Invalid app data - missing required fields: description",
        "No External Id": "Missing external category id",
        "Unknown Category": "Category not found for external id 999; run category sync first",
        "Unknown": "Null app data",
    }
    assert [a.name for a in await _apps(session_factory)] == ["Good One", "Good Two"]


@pytest.mark.asyncio
async def test_category_external_id_without_subcategory(session_factory, admin_developer, synced_categories):
    parent, _ = synced_categories
    record = make_record(category=ImportCategory(name="Productivity", external_category_id="10"))
    job_id = await _new_job(session_factory)

    await ImportOrchestrator(session_factory, collector=collector_returning([record])).run(job_id, limit=1)

    app = (await _apps(session_factory))[0]
    assert (app.category_id, app.subcategory_id) == (parent.id, None)
    assert app.original_category == "Productivity"


@pytest.mark.asyncio
async def test_missing_admin_fails_job(session_factory, synced_categories):
    job_id = await _new_job(session_factory)

    await ImportOrchestrator(session_factory, collector=collector_returning([make_record()])).run(job_id, limit=1)

    job = await _job(session_factory, job_id)
    assert job.status == "failed"
    assert job.error == "No admin user found in the system"
    assert await _apps(session_factory) == []


@pytest.mark.asyncio
async def test_no_records_fails_job(session_factory, admin_user):
    job_id = await _new_job(session_factory)

    await ImportOrchestrator(session_factory, collector=collector_returning([])).run(job_id, limit=5)

    job = await _job(session_factory, job_id)
    assert job.status == "failed"
    assert "No apps retrieved" in job.error


@pytest.mark.asyncio
async def test_vendors_upserted_once_per_run(session_factory, admin_developer, synced_categories):
    vendor = VendorData(external_id="77", title="Flexibits Inc.", description="Makers")
    records = [make_record("Fantastical", vendor_data=vendor), make_record("Cardhop", vendor_data=vendor)]
    job_id = await _new_job(session_factory)

    await ImportOrchestrator(session_factory, collector=collector_returning(records)).run(job_id, limit=2)

    async with session_factory() as session:
        vendors = list((await session.execute(select(Vendor))).scalars())
    assert len(vendors) == 1
    assert vendors[0].slug == "flexibits-inc"
    assert {a.vendor_id for a in await _apps(session_factory)} == {vendors[0].id}


def test_run_context_vendor_map_is_read_only():
    ctx = ImportRunContext(owner_id="owner", vendor_ids={"77": "v1"}, total=1)

    assert ctx.vendor_id_for(make_record(vendor_data=VendorData(external_id="77", title="V"))) == "v1"
    assert ctx.vendor_id_for(make_record()) is None
    with pytest.raises(TypeError):
        ctx.vendor_ids["78"] = "v2"


@pytest.mark.asyncio
async def test_sync_new_apps_resolves_categories_by_name(session_factory, admin_developer, synced_categories):
    records = [
        make_record("Fantastical"),
        make_record("Pixelmator", category=ImportCategory(name="Image Editing", parent_name="Graphics")),
        make_record("", description=""),
    ]
    orchestrator = ImportOrchestrator(session_factory, collector=collector_returning(records))

    stats = await orchestrator.sync_new_apps(limit=3)
    again = await orchestrator.sync_new_apps(limit=3)

    assert (stats.created, stats.skipped, stats.failed) == (2, 1, 0)
    assert (again.created, again.skipped, again.failed) == (0, 3, 0)
    async with session_factory() as session:
        names = set((await session.execute(select(Category.name))).scalars())
    assert {"Graphics", "Image Editing"} <= names


@pytest.mark.asyncio
async def test_sync_new_apps_without_admin_creates_nothing(session_factory, synced_categories):
    stats = await ImportOrchestrator(
        session_factory, collector=collector_returning([make_record()])
    ).sync_new_apps(limit=1)

    assert (stats.created, stats.skipped, stats.failed) == (0, 0, 0)


@pytest.mark.asyncio
async def test_job_helpers(session_factory):
    async with session_factory() as session:
        job = await create_import_job(session)
        assert job.status == "pending"
        assert (job.progress, job.total) == (0, 0)
        assert (await get_job(session, job.id)).id == job.id
        assert await get_job(session, "missing") is None
        assert await session.scalar(select(func.count()).select_from(Job)) == 1


@pytest.mark.asyncio
async def test_create_job_retries_on_duplicate_prepared_statement():
    session = MagicMock()
    session.get_bind.return_value.dialect.name = "postgresql"
    session.execute = AsyncMock()
    session.rollback = AsyncMock()
    session.commit = AsyncMock(side_effect=[
        DBAPIError("INSERT INTO jobs", {}, Exception('prepared statement "s0" already exists (42P05)')),
        None,
    ])

    job = await create_import_job(session)

    assert job.status == "pending"
    assert session.commit.await_count == 2
    assert session.rollback.await_count == 1
    deallocates = [c for c in session.execute.await_args_list if "DEALLOCATE" in str(c.args[0])]
    assert len(deallocates) == 2


@pytest.mark.asyncio
async def test_create_job_other_database_errors_propagate():
    session = MagicMock()
    session.get_bind.return_value.dialect.name = "postgresql"
    session.execute = AsyncMock()
    session.rollback = AsyncMock()
    session.commit = AsyncMock(side_effect=DBAPIError("INSERT INTO jobs", {}, Exception("connection lost")))

    with pytest.raises(DBAPIError):
        await create_import_job(session)
