"""Tests for detail collection into import records."""

from datetime import datetime

import pytest
from sqlalchemy import func, select

from catalog_ingest.db.models import Category
from catalog_ingest.ingest.detail_collector import DetailCollector, build_category
from catalog_ingest.ingest.errors import HttpError
from catalog_ingest.ingest.listing_walker import ListingWalker
from catalog_ingest.ingest.types import ListingSummary

from conftest import FakeFetcher, next_data_html

DETAIL_URL = "https://www.macupdate.com/app/mac/42/fantastical"

FANTASTICAL = {
    "title": "Fantastical",
    "description": "<p>Calendar &amp; tasks</p>",
    "short_description": "Calendar app",
    "version": "3.8",
    "category": {"id": 10, "name": "Productivity"},
    "subcategory": {"id": 11, "name": "Calendars"},
    "developer": {"name": "Flexibits", "url": "https://flexibits.com"},
    "vendor": {"id": 77, "title": "Flexibits Inc.", "slug": "flexibits", "logo": {"url": "https://cdn.example.com/v.png"}},
    "price": {"value": 499},
    "logo": {"url": "https://cdn.example.com/icon.png"},
    "screenshots": [
        {"s_png": "https://cdn.example.com/s1.png", "l_png": "https://cdn.example.com/l1.png"},
        {"m_png": "https://cdn.example.com/m2.png"},
        {"m_png": "https://cdn.example.com/broken.png"},
    ],
    "requirements": {"minimum_os": "macOS 12.0", "architectures": ["arm64"]},
    "bundle_identifiers": ["com.flexibits.fantastical2.mac"],
    "download_count": 1200,
    "file_size": "45.1 MB",
    "date": {"date": "2023-05-01T12:00:00Z"},
    "monetization": [{"type": "subscription", "title": "Premium", "extra": "dropped"}],
}


def _summary(external_id="42", url=DETAIL_URL, name="Fantastical"):
    return ListingSummary(name=name, detail_url=url, external_id=external_id)


@pytest.mark.asyncio
async def test_record_built_from_payload(fake_image_store):
    fetcher = FakeFetcher({DETAIL_URL: next_data_html({"appData": {"data": FANTASTICAL}})})
    collector = DetailCollector(fetcher, fake_image_store)

    record = await collector.collect_one(_summary())

    assert record.name == "Fantastical"
    assert record.description == "Calendar & tasks"
    assert record.short_description == "Calendar app"
    assert record.category.name == "Calendars"
    assert record.category.parent_name == "Productivity"
    assert record.category.external_category_id == "10"
    assert record.category.external_subcategory_id == "11"
    assert record.price == "$4.99"
    assert record.website == "https://flexibits.com"
    assert record.icon == "/uploads/icons/icon.png"
    assert record.screenshots == ["/uploads/screenshots/l1.png", "/uploads/screenshots/m2.png"]
    assert record.requirements == "macOS 12.0\nArchitecture: Apple Silicon"
    assert record.vendor == "Flexibits Inc."
    assert record.vendor_data.external_id == "77"
    assert record.vendor_data.logo_url == "https://cdn.example.com/v.png"
    assert record.bundle_ids == ["com.flexibits.fantastical2.mac"]
    assert record.download_count == 1200
    assert record.file_size == "45.1 MB"
    assert record.release_date == datetime(2023, 5, 1, 12, 0)
    assert record.monetization == [{"type": "subscription", "title": "Premium"}]
    assert record.is_supported is True
    assert record.source_external_id == "42"
    assert ("https://cdn.example.com/icon.png", "icon", "42") in fake_image_store.stored


@pytest.mark.asyncio
async def test_dom_fallback_record(fake_image_store):
    html = """
    <html><body>
      <h1 class="mu_app_name">Itsycal</h1>
      <div class="mu_app_description">Tiny <b>menu bar</b> calendar</div>
      <span class="mu_app_version">0.15.3</span>
      <a class="mu_app_category">Productivity --> Calendars</a>
    </body></html>
    """
    fetcher = FakeFetcher({DETAIL_URL: html})

    record = await DetailCollector(fetcher, fake_image_store).collect_one(_summary())

    assert record.name == "Itsycal"
    assert record.description == "Tiny menu bar calendar"
    assert record.version == "0.15.3"
    assert record.category.name == "Calendars"
    assert record.category.parent_name == "Productivity"
    assert not record.category.has_external_id
    assert record.price == "Free"


@pytest.mark.asyncio
async def test_failures_become_none_in_input_order(fake_image_store):
    good_url = "https://www.macupdate.com/app/mac/1/good"
    bad_url = "https://www.macupdate.com/app/mac/2/bad"
    empty_url = "https://www.macupdate.com/app/mac/3/empty"
    fetcher = FakeFetcher(
        pages={good_url: next_data_html({"app": {"title": "Good", "description": "ok"}})},
        errors={bad_url: HttpError(404, bad_url)},
    )
    collector = DetailCollector(fetcher, fake_image_store, batch_size=2)

    results = await collector.collect_details([
        _summary("1", good_url, "Good"),
        _summary("2", bad_url, "Bad"),
        _summary("3", empty_url, "Empty"),
    ])

    assert len(results) == 3
    assert results[0].name == "Good"
    assert results[1] is None
    assert results[2] is None


@pytest.mark.asyncio
async def test_collect_walks_listing_then_details(fake_image_store):
    fetcher = FakeFetcher()
    fetcher.add_listing(1, [
        {"id": 1, "title": "One", "url": "/app/mac/1/one"},
        {"id": 2, "title": "Two", "url": "/app/mac/2/two"},
    ])
    for app_id, name in ((1, "One"), (2, "Two")):
        fetcher.pages[f"https://www.macupdate.com/app/mac/{app_id}/{name.lower()}"] = next_data_html(
            {"app": {"title": name, "description": f"{name} app", "category": {"id": 10, "name": "Productivity"}}}
        )
    walker = ListingWalker(fetcher, page_delay=0)

    records = await DetailCollector(fetcher, fake_image_store, walker=walker).collect(limit=2)

    assert [r.name for r in records] == ["One", "Two"]
    assert records[0].category.external_category_id == "10"


@pytest.mark.asyncio
async def test_collect_requires_limit_unless_importing_all(fake_image_store):
    collector = DetailCollector(FakeFetcher(), fake_image_store)

    with pytest.raises(ValueError):
        await collector.collect()

    assert await collector.collect(import_all=True) == []


@pytest.mark.asyncio
async def test_resolver_attached_creates_categories_once(session_factory, fake_image_store):
    urls = [f"https://www.macupdate.com/app/mac/{i}/app" for i in (1, 2)]
    payload = {"title": "", "description": "d", "category": "Productivity --> Calendars"}
    fetcher = FakeFetcher({
        url: next_data_html({"app": {**payload, "title": f"App {i}"}})
        for i, url in enumerate(urls)
    })
    collector = DetailCollector(fetcher, fake_image_store, session_factory=session_factory)

    records = await collector.collect_details([_summary(str(i), url) for i, url in enumerate(urls)])

    assert records[0].category.category_id == records[1].category.category_id
    assert records[0].category.subcategory_id == records[1].category.subcategory_id
    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(Category))
    assert count == 2


def test_build_category_without_subcategory_uses_parent_object():
    category = build_category({"category": {"id": 5, "name": "Calendars", "parent": {"name": "Productivity"}}})

    assert category.name == "Calendars"
    assert category.parent_name == "Productivity"
    assert category.external_category_id == "5"


def test_build_category_defaults_to_uncategorized():
    assert build_category({}).name == "Uncategorized"
