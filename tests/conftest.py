"""Shared fixtures: file-backed SQLite catalog, canned pages and fake collaborators."""

import json
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from catalog_ingest.db.models import Base, Category, Developer, User
from catalog_ingest.ingest.listing_walker import listing_url

EMPTY_PAGE = "<html><head></head><body><main></main></body></html>"


def next_data_html(page_props: dict, body: str = "") -> str:
    """Render a page carrying ``page_props`` in its __NEXT_DATA__ script."""
    payload = json.dumps({"props": {"pageProps": page_props}})
    return (
        "<html><head>"
        f'<script id="__NEXT_DATA__" type="application/json">{payload}</script>'
        f"</head><body>{body}</body></html>"
    )


def listing_page(items: list[dict]) -> str:
    return next_data_html({"apps": items})


def listing_items(start: int, count: int) -> list[dict]:
    return [
        {"id": i, "title": f"App {i}", "version": "1.0", "url": f"/app/mac/{i}/app-{i}"}
        for i in range(start, start + count)
    ]


class FakeFetcher:
    """Serves canned HTML by URL; unknown URLs get an empty page."""

    def __init__(self, pages: Optional[dict] = None, errors: Optional[dict] = None):
        self.pages = dict(pages or {})
        self.errors = dict(errors or {})
        self.calls: list[str] = []

    async def fetch(self, url: str, kind: str = "page") -> str:
        self.calls.append(url)
        if url in self.errors:
            raise self.errors[url]
        return self.pages.get(url, EMPTY_PAGE)

    def add_listing(self, page: int, items: list[dict]) -> None:
        self.pages[listing_url(page)] = listing_page(items)


class FakeImageStore:
    """Pretends to store images; URLs containing "broken" fail."""

    def __init__(self):
        self.stored: list[tuple[str, str, Optional[str]]] = []

    async def fetch_and_store(self, url, kind, owner_external_id=None):
        if not url or "broken" in url:
            return None
        self.stored.append((url, kind, owner_external_id))
        return f"/uploads/{kind}s/{url.rsplit('/', 1)[-1]}"


@pytest.fixture
def fake_image_store():
    return FakeImageStore()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite database file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def admin_user(session_factory):
    async with session_factory() as session:
        user = User(email="admin@example.com", name="Admin", is_admin=True)
        session.add(user)
        await session.commit()
        return user


@pytest_asyncio.fixture
async def admin_developer(session_factory, admin_user):
    async with session_factory() as session:
        developer = Developer(user_id=admin_user.id, verified=True)
        session.add(developer)
        await session.commit()
        return developer


@pytest_asyncio.fixture
async def synced_categories(session_factory):
    """Productivity (external id 10) with subcategory Calendars (external id 11)."""
    async with session_factory() as session:
        parent = Category(name="Productivity", external_id="10")
        session.add(parent)
        await session.flush()
        child = Category(name="Calendars", parent_id=parent.id, external_id="11")
        session.add(child)
        await session.commit()
        return parent, child
