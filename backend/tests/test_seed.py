"""Tests for default category seeding."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from storefront.core.seed import seed_default_category
from storefront.models.category import Category


def make_db(*firsts):
    """AsyncSession mock whose successive execute() calls yield `firsts`."""
    results = []
    for value in firsts:
        result = MagicMock()
        result.scalars.return_value.first.return_value = value
        results.append(result)
    db = AsyncMock()
    db.execute = AsyncMock(side_effect=results)
    db.add = MagicMock()
    return db


@pytest.mark.asyncio
async def test_existing_default_is_kept():
    current = Category(name="Misc", is_default=True)
    db = make_db(current)

    assert await seed_default_category(db) is current
    db.add.assert_not_called()
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_inserts_default_when_missing():
    db = make_db(None, None)

    category = await seed_default_category(db, name="General")

    assert category.name == "General"
    assert category.is_default is True
    db.add.assert_called_once_with(category)
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_marks_existing_category_as_default():
    general = Category(name="General", is_default=False)
    db = make_db(None, general)

    assert await seed_default_category(db, name="General") is general
    assert general.is_default is True
    db.add.assert_not_called()
    db.commit.assert_awaited_once()
