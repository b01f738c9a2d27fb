"""Map scraped category names onto the two-level catalog taxonomy."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_ingest.db.models import Category

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedCategory:
    """Catalog ids for a record's category; either may be None."""

    category_id: Optional[str] = None
    subcategory_id: Optional[str] = None


UNRESOLVED = ResolvedCategory()


def _clean(name: Optional[str]) -> Optional[str]:
    if name is None:
        return None
    name = str(name).strip()
    return name or None


async def find_by_external_id(session: AsyncSession, external_id: str) -> Optional[Category]:
    result = await session.execute(
        select(Category).where(Category.external_id == str(external_id))
    )
    return result.scalar_one_or_none()


class CategoryResolver:
    """Lookup-or-create for (category, parent, external id) triples.

    Resolution order: external id, then (name, parent) pairs, then a
    standalone top-level category. New rows are flushed but not committed;
    the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _find_or_create(self, name: str, parent_id: Optional[str]) -> Category:
        if parent_id is None:
            parent_clause = Category.parent_id.is_(None)
        else:
            parent_clause = Category.parent_id == parent_id
        result = await self.session.execute(
            select(Category).where(Category.name == name, parent_clause).limit(1)
        )
        category = result.scalar_one_or_none()
        if category is not None:
            return category

        category = Category(name=name, parent_id=parent_id)
        self.session.add(category)
        await self.session.flush()
        if parent_id:
            logger.info(f"Created subcategory: {name} ({category.id}) under {parent_id}")
        else:
            logger.info(f"Created category: {name} ({category.id})")
        return category

    async def resolve(
        self,
        category_name: Optional[str],
        parent_name: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> ResolvedCategory:
        """
        Resolve a scraped category reference to catalog ids.

        Args:
            category_name: Most specific category name
            parent_name: Parent category name, for two-level references
            external_id: Source site id of the category

        Returns:
            ResolvedCategory; subcategory_id is only set for two-level matches
        """
        category_name = _clean(category_name)
        parent_name = _clean(parent_name)

        try:
            if external_id:
                found = await find_by_external_id(self.session, external_id)
                if found is not None:
                    if found.parent_id:
                        return ResolvedCategory(found.parent_id, found.id)
                    return ResolvedCategory(found.id, None)

            if category_name and parent_name:
                parent = await self._find_or_create(parent_name, None)
                child = await self._find_or_create(category_name, parent.id)
                return ResolvedCategory(parent.id, child.id)

            if category_name:
                category = await self._find_or_create(category_name, None)
                return ResolvedCategory(category.id, None)

        except SQLAlchemyError as e:
            logger.error(f"Error resolving category {category_name!r} / {parent_name!r}: {e}")
            return UNRESOLVED

        return UNRESOLVED
