"""Seed default data into the database."""
import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.db.session import AsyncSessionLocal
from storefront.models.category import Category

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "Uncategorized"


async def seed_default_category(db: AsyncSession, name: str = DEFAULT_CATEGORY) -> Category:
    """Ensure exactly one category carries is_default (insert `name` if none does)."""
    existing = (
        await db.execute(select(Category).where(Category.is_default.is_(True)))
    ).scalars().first()
    if existing is not None:
        logger.info("Default category already exists: %s, skipping", existing.name)
        return existing

    category = (await db.execute(select(Category).where(Category.name == name))).scalars().first()
    if category is None:
        category = Category(name=name, is_default=True)
        db.add(category)
        logger.info("Seeded default category: %s", name)
    else:
        category.is_default = True
        logger.info("Marked existing category as default: %s", name)

    await db.commit()
    return category


async def run_seed() -> None:
    async with AsyncSessionLocal() as db:
        await seed_default_category(db)
    logger.info("Seeding complete.")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_seed())
