"""Tests for the commit engine.

Catalog writes and image uploads go through in-memory fakes so the row
orchestration (category, images, write, compensation) is exercised without
Postgres or MinIO.
"""
import asyncio
import io
import zipfile
from decimal import Decimal

import pytest

from storefront.core.config import settings
from storefront.schemas.imports import ImportMode, RowError, ValidatedRow, VariantImport, WriteMode
from storefront.services.asset_catalog import ExtractedAsset, index_zip
from storefront.services.catalog_store import ProductWrite, WriteOutcome
from storefront.services.import_commit import (
    PLACEHOLDER_DESCRIPTION,
    build_product_write,
    commit_import,
    compute_final_price,
)
from storefront.services.import_errors import AssetResolutionError, CommitRowError
from storefront.services.row_validator import validate_rows
from storefront.services.storage import UploadedImage


# ─── Fakes ────────────────────────────────────────────────────────────────────

class FakeCatalog:
    """Keeps written products in a dict keyed by lower-cased SKU."""

    def __init__(self, existing: set[str] | None = None, fail_skus: set[str] | None = None):
        self.products: dict[str, ProductWrite] = {}
        self.existing = {s.lower() for s in existing or set()}
        self.fail_skus = fail_skus or set()
        self.in_flight = 0
        self.max_in_flight = 0

    async def existing_skus(self, merchant_id, skus):
        return {s for s in skus if s.lower() in self.existing}

    async def write_product(self, product: ProductWrite, *, write_mode: WriteMode) -> WriteOutcome:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if product.sku in self.fail_skus:
                raise CommitRowError("Database write failed")
            key = product.sku.lower()
            known = key in self.existing or key in self.products
            if known and write_mode is WriteMode.insert_only:
                raise CommitRowError(f"SKU {product.sku} already exists", field="sku", code="SKU_EXISTS")
            self.products[key] = product
            return WriteOutcome.updated if known else WriteOutcome.inserted
        finally:
            self.in_flight -= 1


class FakeUploader:
    def __init__(self, fail_files: set[str] | None = None):
        self.uploaded: list[UploadedImage] = []
        self.deleted: list[UploadedImage] = []
        self.fail_files = fail_files or set()

    async def upload(self, merchant_id: str, asset: ExtractedAsset) -> UploadedImage:
        if asset.filename in self.fail_files:
            raise AssetResolutionError(
                f"Failed to upload image {asset.filename}", field="image_files", code="UPLOAD_FAILED"
            )
        image = UploadedImage(
            filename=asset.filename,
            object_name=f"products/{merchant_id}/{asset.filename}",
            url=f"http://cdn.test/products/{merchant_id}/{asset.filename}",
        )
        self.uploaded.append(image)
        return image

    async def delete(self, image: UploadedImage) -> None:
        self.deleted.append(image)


def make_row(index: int, sku: str, **kwargs) -> ValidatedRow:
    kwargs.setdefault("name", f"Product {sku}")
    kwargs.setdefault("description", "A product")
    kwargs.setdefault("price", 10.0)
    kwargs.setdefault("category_name", "Clothing")
    kwargs.setdefault("image_urls", [f"http://x/{sku}.jpg"])
    return ValidatedRow(row_index=index, sku=sku, **kwargs)


CATEGORY_MAP = {"clothing": "c-clothing", "shoes": "c-shoes"}


async def run_commit(rows, *, catalog=None, uploader=None, mode=ImportMode.url, default_category_id=None, **kwargs):
    return await commit_import(
        merchant_id="m-1",
        rows=rows,
        mode=mode,
        zip_buffer=kwargs.pop("zip_buffer", None),
        asset_catalog=kwargs.pop("asset_catalog", None),
        category_map=CATEGORY_MAP,
        default_category_id=default_category_id,
        catalog=catalog or FakeCatalog(),
        uploader=uploader or FakeUploader(),
        **kwargs,
    )


# ─── Pricing ──────────────────────────────────────────────────────────────────

def test_final_price_applies_markup_and_rounds():
    assert compute_final_price(100) == Decimal("110.00")
    assert compute_final_price(0.05) == Decimal("0.06")
    assert compute_final_price(0) == Decimal("0.00")
    assert compute_final_price(-5) == Decimal("0.00")


def test_product_price_follows_cheapest_variant():
    row = make_row(0, "P1", price=50.0, variants=[
        VariantImport(sku="P1-A", merchant_price=30.0),
        VariantImport(sku="P1-B", merchant_price=20.0),
    ])
    product = build_product_write("m-1", row, "c-1", ["http://x/1.jpg"])
    assert product.merchant_price == Decimal("50.00")
    assert product.final_price == Decimal("22.00")
    assert [v.final_price for v in product.variants] == [Decimal("33.00"), Decimal("22.00")]


def test_free_variants_do_not_override_product_price():
    row = make_row(0, "P1", price=50.0, variants=[VariantImport(sku="P1-A", merchant_price=0.0)])
    assert build_product_write("m-1", row, "c-1", []).final_price == Decimal("55.00")


def test_missing_description_gets_placeholder():
    row = make_row(0, "P1", description="")
    assert build_product_write("m-1", row, "c-1", []).description == PLACEHOLDER_DESCRIPTION


# ─── Scenarios ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_unknown_category_uses_default():
    catalog = FakeCatalog()
    rows = [
        make_row(0, "A1"),
        make_row(1, "A2", category_name="Electronics"),
        make_row(2, "A3", category_name="Shoes"),
    ]
    result = await run_commit(rows, catalog=catalog, default_category_id="c-default")

    assert result.failed_count == 0
    assert result.inserted_count == 3
    assert catalog.products["a2"].category_id == "c-default"
    assert catalog.products["a3"].category_id == "c-shoes"


@pytest.mark.asyncio
async def test_malformed_url_fails_only_its_row():
    rows = [
        make_row(0, "A1"),
        make_row(1, "A2", image_urls=["http://x/ok.jpg", "not a url"]),
        make_row(2, "A3", category_name="Shoes"),
    ]
    result = await run_commit(rows, default_category_id=None)

    assert result.failed_count == 1
    assert result.inserted_count == 2
    failure = result.failures[0]
    assert failure.row_index == 1
    assert failure.reason.startswith("Invalid URL")
    assert failure.errors[0].code == "INVALID_URL"


@pytest.mark.asyncio
async def test_unresolvable_category_without_default():
    result = await run_commit([make_row(0, "A1", category_name="Electronics")])
    assert result.failed_count == 1
    assert result.failures[0].errors[0].field == "category"


@pytest.mark.asyncio
async def test_clean_batch_counts_every_valid_row():
    catalog = FakeCatalog(existing={"A2"})
    rows = [make_row(i, f"A{i}") for i in range(4)]
    result = await run_commit(rows, catalog=catalog)

    assert result.failed_count == 0
    assert result.inserted_count + result.updated_count == len(rows)
    assert result.updated_count == 1
    assert result.failures == []


@pytest.mark.asyncio
async def test_invalid_rows_are_skipped_and_listed_as_failures():
    invalid = make_row(1, "B1", errors=[RowError(field="price", message="Price is required", code="REQUIRED_FIELD")])
    result = await run_commit([make_row(0, "A1"), invalid])

    assert result.total_rows == 2
    assert result.skipped_count == 1
    assert result.failed_count == 0
    assert result.inserted_count == 1
    assert result.inserted_count + result.updated_count + result.failed_count + result.skipped_count == result.total_rows
    assert len(result.failures) == 1
    assert result.failures[0].reason == "Validation failed"
    assert result.failures[0].errors[0].field == "price"


@pytest.mark.asyncio
async def test_insert_only_rejects_existing_sku():
    catalog = FakeCatalog(existing={"A1"})
    result = await run_commit([make_row(0, "A1"), make_row(1, "A2")], catalog=catalog, write_mode=WriteMode.insert_only)

    assert result.inserted_count == 1
    assert result.failures[0].errors[0].code == "SKU_EXISTS"


@pytest.mark.asyncio
async def test_write_failure_is_row_scoped():
    catalog = FakeCatalog(fail_skus={"A2"})
    result = await run_commit([make_row(i, f"A{i}") for i in range(1, 4)], catalog=catalog)
    assert result.inserted_count == 2
    assert [f.sku for f in result.failures] == ["A2"]


@pytest.mark.asyncio
async def test_concurrent_commit_keeps_results_in_row_order():
    catalog = FakeCatalog(fail_skus={"A3", "A7"})
    rows = [make_row(i, f"A{i}") for i in range(10)]
    result = await run_commit(rows, catalog=catalog, concurrency=4)

    assert result.inserted_count == 8
    assert [f.row_index for f in result.failures] == [3, 7]
    assert 1 < catalog.max_in_flight <= 4


# ─── ZIP mode ─────────────────────────────────────────────────────────────────

def make_zip(entries: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buf.getvalue()


def zip_rows(zip_buffer: bytes, *raw_rows: dict[str, str]):
    catalog = index_zip(zip_buffer).files
    base = {"name": "Item", "description": "d", "price": "5", "category": "Clothing"}
    validation = validate_rows([{**base, **r} for r in raw_rows], asset_catalog=catalog)
    return validation.rows, catalog


@pytest.mark.asyncio
async def test_zip_images_uploaded_once_and_reused():
    zip_buffer = make_zip({"images/front.jpg": b"front", "back.png": b"back"})
    rows, asset_catalog = zip_rows(
        zip_buffer,
        {"sku": "Z1", "image_files": "front.jpg|back.png"},
        {"sku": "Z2", "image_files": "FRONT.jpg"},
    )
    catalog, uploader = FakeCatalog(), FakeUploader()

    result = await run_commit(
        rows, catalog=catalog, uploader=uploader, mode=ImportMode.zip,
        zip_buffer=zip_buffer, asset_catalog=asset_catalog,
    )

    assert result.inserted_count == 2
    assert result.uploaded_images == 2
    assert len(uploader.uploaded) == 2
    assert catalog.products["z1"].images == [
        "http://cdn.test/products/m-1/front.jpg",
        "http://cdn.test/products/m-1/back.png",
    ]
    assert catalog.products["z2"].images == ["http://cdn.test/products/m-1/front.jpg"]


@pytest.mark.asyncio
async def test_failed_upload_removes_the_rows_other_uploads():
    zip_buffer = make_zip({"a.jpg": b"a", "b.jpg": b"b", "c.jpg": b"c"})
    rows, asset_catalog = zip_rows(
        zip_buffer,
        {"sku": "Z1", "image_files": "a.jpg|b.jpg"},
        {"sku": "Z2", "image_files": "c.jpg"},
    )
    uploader = FakeUploader(fail_files={"b.jpg"})

    result = await run_commit(
        rows, uploader=uploader, mode=ImportMode.zip,
        zip_buffer=zip_buffer, asset_catalog=asset_catalog,
    )

    assert result.failed_count == 1
    assert result.inserted_count == 1
    assert result.failures[0].errors[0].code == "UPLOAD_FAILED"
    assert [i.filename for i in uploader.deleted] == ["a.jpg"]
    assert result.uploaded_images == 1


@pytest.mark.asyncio
async def test_write_failure_removes_uploaded_images():
    zip_buffer = make_zip({"a.jpg": b"a"})
    rows, asset_catalog = zip_rows(zip_buffer, {"sku": "Z1", "image_files": "a.jpg"})
    uploader = FakeUploader()

    result = await run_commit(
        rows, catalog=FakeCatalog(fail_skus={"Z1"}), uploader=uploader, mode=ImportMode.zip,
        zip_buffer=zip_buffer, asset_catalog=asset_catalog,
    )

    assert result.failed_count == 1
    assert result.uploaded_images == 0
    assert [i.filename for i in uploader.deleted] == ["a.jpg"]


@pytest.mark.asyncio
async def test_oversized_entry_fails_its_row_at_commit(monkeypatch):
    zip_buffer = make_zip({"a.jpg": b"a" * 20, "b.jpg": b"b"})
    rows, asset_catalog = zip_rows(
        zip_buffer,
        {"sku": "Z1", "image_files": "a.jpg"},
        {"sku": "Z2", "image_files": "b.jpg"},
    )
    monkeypatch.setattr(settings, "MAX_IMAGE_BYTES", 10)

    result = await run_commit(rows, mode=ImportMode.zip, zip_buffer=zip_buffer, asset_catalog=asset_catalog)

    assert result.inserted_count == 1
    assert result.failures[0].sku == "Z1"
    assert result.failures[0].errors[0].code == "FILE_NOT_FOUND"
