"""Product catalog writes keyed by (merchant_id, import SKU).

Every write_product call runs in its own transaction; a failure rolls back
that product only.
"""
import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.db.session import AsyncSessionLocal, transaction
from storefront.models.product import Product, ProductVariant
from storefront.schemas.imports import WriteMode
from storefront.services.import_errors import CommitRowError

logger = logging.getLogger(__name__)


class WriteOutcome(str, Enum):
    inserted = "inserted"
    updated = "updated"


@dataclass
class VariantWrite:
    sku: str
    attributes: dict[str, str]
    merchant_price: Decimal
    final_price: Decimal
    stock: int
    images: list[str] = field(default_factory=list)
    is_active: bool = True


@dataclass
class ProductWrite:
    merchant_id: str
    sku: str
    name: str
    description: str
    merchant_price: Decimal
    final_price: Decimal
    currency: str
    stock: int
    images: list[str]
    category_id: str
    variants: list[VariantWrite] = field(default_factory=list)


class CatalogStore(Protocol):
    async def existing_skus(self, merchant_id: str, skus: Iterable[str]) -> set[str]: ...

    async def write_product(self, product: ProductWrite, *, write_mode: WriteMode) -> WriteOutcome: ...


def _variant_model(v: VariantWrite) -> ProductVariant:
    return ProductVariant(
        sku=v.sku,
        attributes=v.attributes,
        merchant_price=v.merchant_price,
        price=v.merchant_price,
        final_price=v.final_price,
        stock=v.stock,
        images=v.images,
        is_active=v.is_active,
    )


class SqlCatalogStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal):
        self._session_factory = session_factory

    async def existing_skus(self, merchant_id: str, skus: Iterable[str]) -> set[str]:
        wanted = list({s for s in skus if s})
        if not wanted:
            return set()
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Product.import_sku).where(
                        Product.merchant_id == merchant_id,
                        Product.import_sku.in_(wanted),
                        Product.deleted_at.is_(None),
                    )
                )
                return set(result.scalars().all())
        except SQLAlchemyError as exc:
            # Feeds parse warnings only.
            logger.warning("Existing SKU lookup failed for merchant %s: %s", merchant_id, exc)
            return set()

    async def write_product(self, product: ProductWrite, *, write_mode: WriteMode) -> WriteOutcome:
        try:
            category_id = uuid.UUID(product.category_id)
        except ValueError as exc:
            raise CommitRowError(f"Invalid category id: {product.category_id}", field="category") from exc

        try:
            async with transaction(self._session_factory) as db:
                outcome = await self._write(db, product, category_id, write_mode)
        except IntegrityError as exc:
            logger.warning("Integrity error writing SKU %s: %s", product.sku, exc.orig)
            raise CommitRowError(
                f"SKU {product.sku} conflicts with an existing record", field="sku"
            ) from exc
        except SQLAlchemyError as exc:
            logger.error("Database error writing SKU %s: %s", product.sku, exc)
            raise CommitRowError("Database write failed") from exc
        return outcome

    async def _write(
        self, db: AsyncSession, product: ProductWrite, category_id: uuid.UUID, write_mode: WriteMode
    ) -> WriteOutcome:
        existing = (
            await db.execute(
                select(Product)
                .where(Product.merchant_id == product.merchant_id, Product.import_sku == product.sku)
                .with_for_update()
            )
        ).scalar_one_or_none()

        # Soft-deleted products are revived, even in insert-only mode.
        if existing is not None and existing.deleted_at is None and write_mode is WriteMode.insert_only:
            raise CommitRowError(
                f"SKU {product.sku} already exists", field="sku", code="SKU_EXISTS"
            )

        target = existing or Product(merchant_id=product.merchant_id, import_sku=product.sku)
        target.name = product.name
        target.description = product.description
        target.merchant_price = product.merchant_price
        target.price = product.merchant_price
        target.final_price = product.final_price
        target.currency = product.currency
        target.stock = product.stock
        target.images = product.images
        target.category_id = category_id
        target.is_active = True
        target.deleted_at = None
        target.variants = [_variant_model(v) for v in product.variants]

        if existing is None:
            db.add(target)
        await db.flush()
        return WriteOutcome.updated if existing is not None else WriteOutcome.inserted
