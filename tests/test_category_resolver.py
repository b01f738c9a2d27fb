"""Tests for category lookup-or-create."""

import pytest
from sqlalchemy import func, select

from catalog_ingest.db.models import Category
from catalog_ingest.ingest.category_resolver import UNRESOLVED, CategoryResolver


async def _count(session) -> int:
    return await session.scalar(select(func.count()).select_from(Category))


@pytest.mark.asyncio
async def test_two_level_resolution_is_idempotent(session_factory):
    async with session_factory() as session:
        resolver = CategoryResolver(session)

        first = await resolver.resolve("Calendars", "Productivity")
        second = await resolver.resolve("  Calendars ", "Productivity")
        await session.commit()

        assert first == second
        assert first.category_id and first.subcategory_id
        assert await _count(session) == 2

        child = await session.get(Category, first.subcategory_id)
        assert child.parent_id == first.category_id


@pytest.mark.asyncio
async def test_single_name_creates_top_level_category(session_factory):
    async with session_factory() as session:
        resolved = await CategoryResolver(session).resolve("Utilities")

        assert resolved.subcategory_id is None
        category = await session.get(Category, resolved.category_id)
        assert category.parent_id is None


@pytest.mark.asyncio
async def test_same_name_under_different_parents_is_distinct(session_factory):
    async with session_factory() as session:
        resolver = CategoryResolver(session)

        a = await resolver.resolve("Tools", "Developer")
        b = await resolver.resolve("Tools", "Graphics")

        assert a.subcategory_id != b.subcategory_id
        assert await _count(session) == 4


@pytest.mark.asyncio
async def test_external_id_wins_over_names(session_factory, synced_categories):
    parent, child = synced_categories
    async with session_factory() as session:
        resolver = CategoryResolver(session)

        sub = await resolver.resolve("Something Else", "Other", external_id="11")
        top = await resolver.resolve("Ignored", external_id="10")

        assert (sub.category_id, sub.subcategory_id) == (parent.id, child.id)
        assert (top.category_id, top.subcategory_id) == (parent.id, None)
        assert await _count(session) == 2


@pytest.mark.asyncio
async def test_unknown_external_id_falls_back_to_names(session_factory):
    async with session_factory() as session:
        resolved = await CategoryResolver(session).resolve("Utilities", external_id="999")

        assert resolved.category_id is not None
        assert resolved.subcategory_id is None


@pytest.mark.asyncio
async def test_nothing_to_resolve(session_factory):
    async with session_factory() as session:
        assert await CategoryResolver(session).resolve(None, None) == UNRESOLVED
        assert await CategoryResolver(session).resolve("   ") == UNRESOLVED
