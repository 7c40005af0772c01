"""Commit engine: staged valid rows → catalog products.

Each row is one unit (category, images, product write). A failing row is
recorded, its uploads are removed, and the batch carries on; the CommitResult
counters and failures list are the only signal of partial success.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

import httpx

from storefront.core.config import settings
from storefront.schemas.imports import (
    CommitResult,
    FailedRow,
    ImportMode,
    ValidatedRow,
    WriteMode,
)
from storefront.services.asset_catalog import AssetCatalog, ExtractedAsset, extract_entries
from storefront.services.catalog_store import (
    CatalogStore,
    ProductWrite,
    VariantWrite,
    WriteOutcome,
)
from storefront.services.categories import resolve_category_id
from storefront.services.import_errors import (
    AssetResolutionError,
    CommitRowError,
    ImportPipelineError,
)
from storefront.services.row_validator import is_valid_image_url
from storefront.services.storage import ImageUploader, UploadedImage

logger = logging.getLogger(__name__)

PLACEHOLDER_DESCRIPTION = "No description provided"
VALIDATION_FAILED = "Validation failed"

_CENT = Decimal("0.01")


# ─── Pricing ───

def compute_final_price(merchant_price: float | Decimal) -> Decimal:
    """merchant price plus the platform markup, rounded to cents."""
    base = Decimal(str(merchant_price))
    if base <= 0:
        return Decimal("0.00")
    markup = Decimal(str(settings.PLATFORM_MARKUP_PCT)) / Decimal(100)
    return (base * (1 + markup)).quantize(_CENT, rounding=ROUND_HALF_UP)


def build_product_write(
    merchant_id: str, row: ValidatedRow, category_id: str, images: list[str]
) -> ProductWrite:
    merchant_price = Decimal(str(row.price)).quantize(_CENT, rounding=ROUND_HALF_UP)
    final_price = compute_final_price(merchant_price)

    variants = [
        VariantWrite(
            sku=v.sku,
            attributes=v.attributes,
            merchant_price=Decimal(str(v.merchant_price)).quantize(_CENT, rounding=ROUND_HALF_UP),
            final_price=compute_final_price(v.merchant_price),
            stock=v.stock,
            images=v.images,
            is_active=v.is_active,
        )
        for v in row.variants
    ]
    if variants:
        cheapest = min(v.final_price for v in variants)
        if cheapest > 0:
            final_price = cheapest

    return ProductWrite(
        merchant_id=merchant_id,
        sku=row.sku,
        name=row.name,
        description=row.description or PLACEHOLDER_DESCRIPTION,
        merchant_price=merchant_price,
        final_price=final_price,
        currency=row.currency,
        stock=row.stock,
        images=images,
        category_id=category_id,
        variants=variants,
    )


def _failed(row: ValidatedRow, exc: ImportPipelineError) -> FailedRow:
    return FailedRow(
        row_index=row.row_index,
        sku=row.sku,
        name=row.name,
        reason=exc.message,
        errors=[exc.to_row_error()],
    )


@dataclass
class _RowOutcome:
    row: ValidatedRow
    written: WriteOutcome | None = None
    uploaded: int = 0
    failure: FailedRow | None = None


# ─── Per-row unit ───

@dataclass
class _RowCommitter:
    merchant_id: str
    mode: ImportMode
    extracted: dict[str, ExtractedAsset]
    category_map: dict[str, str]
    default_category_id: str | None
    catalog: CatalogStore
    uploader: ImageUploader
    write_mode: WriteMode
    http: httpx.AsyncClient | None = None
    # lower-cased archive filename → public URL, filled only after a row commits
    upload_cache: dict[str, str] = field(default_factory=dict)
    sku_locks: dict[str, asyncio.Lock] = field(default_factory=dict)

    async def run(self, rows: list[ValidatedRow], concurrency: int) -> list[_RowOutcome]:
        if concurrency <= 1:
            return [await self.process(row) for row in rows]

        semaphore = asyncio.Semaphore(concurrency)

        async def bounded(row: ValidatedRow) -> _RowOutcome:
            async with semaphore:
                return await self.process(row)

        return list(await asyncio.gather(*(bounded(row) for row in rows)))

    async def process(self, row: ValidatedRow) -> _RowOutcome:
        lock = self.sku_locks.setdefault(row.sku.lower(), asyncio.Lock())
        async with lock:
            uploaded: list[UploadedImage] = []
            try:
                category_id = resolve_category_id(row.category_name, self.category_map, self.default_category_id)
                images = await self._resolve_images(row, uploaded)
                product = build_product_write(self.merchant_id, row, category_id, images)
                written = await self.catalog.write_product(product, write_mode=self.write_mode)
            except ImportPipelineError as exc:
                await self._compensate(uploaded)
                logger.warning("Import row %d (SKU %s) failed: %s", row.row_index, row.sku, exc.message)
                return _RowOutcome(row, failure=_failed(row, exc))
            except Exception:
                await self._compensate(uploaded)
                logger.exception("Unexpected error committing row %d (SKU %s)", row.row_index, row.sku)
                return _RowOutcome(row, failure=_failed(row, CommitRowError("Unexpected error while saving product")))

            for image in uploaded:
                self.upload_cache.setdefault(image.filename.lower(), image.url)
            return _RowOutcome(row, written=written, uploaded=len(uploaded))

    async def _resolve_images(self, row: ValidatedRow, uploaded: list[UploadedImage]) -> list[str]:
        if self.mode is ImportMode.zip:
            return await self._resolve_archive_images(row, uploaded)
        return await self._resolve_url_images(row)

    async def _resolve_archive_images(self, row: ValidatedRow, uploaded: list[UploadedImage]) -> list[str]:
        urls: dict[str, str] = {}
        pending: list[ExtractedAsset] = []
        for filename in row.image_files:
            key = filename.lower()
            if key in self.upload_cache:
                urls[key] = self.upload_cache[key]
                continue
            asset = self.extracted.get(key)
            if asset is None:
                raise AssetResolutionError(
                    f"Image {filename} could not be read from the ZIP", field="image_files", code="FILE_NOT_FOUND"
                )
            if all(p.filename.lower() != key for p in pending):
                pending.append(asset)

        results = await asyncio.gather(
            *(self.uploader.upload(self.merchant_id, asset) for asset in pending),
            return_exceptions=True,
        )
        first_error: BaseException | None = None
        for result in results:
            if isinstance(result, BaseException):
                first_error = first_error or result
            else:
                uploaded.append(result)
                urls[result.filename.lower()] = result.url
        if first_error is not None:
            raise first_error

        return [urls[filename.lower()] for filename in row.image_files]

    async def _resolve_url_images(self, row: ValidatedRow) -> list[str]:
        for url in row.image_urls:
            if not is_valid_image_url(url):
                raise AssetResolutionError(f"Invalid URL: {url}", field="image_urls", code="INVALID_URL")
        if self.http is not None:
            reachable = await asyncio.gather(*(self._reachable(url) for url in row.image_urls))
            for url, ok in zip(row.image_urls, reachable):
                if not ok:
                    raise AssetResolutionError(
                        f"Image URL not reachable: {url}", field="image_urls", code="URL_UNREACHABLE"
                    )
        return list(row.image_urls)

    async def _reachable(self, url: str) -> bool:
        try:
            resp = await self.http.head(url)
        except httpx.HTTPError as exc:
            logger.info("HEAD %s failed: %s", url, exc)
            return False
        # Some image hosts refuse HEAD outright.
        return resp.status_code < 400 or resp.status_code == 405

    async def _compensate(self, uploaded: list[UploadedImage]) -> None:
        for image in uploaded:
            try:
                await self.uploader.delete(image)
            except Exception:
                logger.exception("Could not remove orphaned upload %s", image.object_name)


# ─── Entry point ───

async def commit_import(
    *,
    merchant_id: str,
    rows: list[ValidatedRow],
    mode: ImportMode,
    zip_buffer: bytes | None,
    asset_catalog: AssetCatalog | None,
    category_map: dict[str, str],
    default_category_id: str | None,
    catalog: CatalogStore,
    uploader: ImageUploader,
    write_mode: WriteMode = WriteMode.upsert,
    verify_urls: bool = False,
    concurrency: int = 1,
) -> CommitResult:
    result = CommitResult(total_rows=len(rows))
    valid = [row for row in rows if row.is_valid]

    for row in rows:
        if not row.is_valid:
            result.skipped_count += 1
            result.failures.append(FailedRow(
                row_index=row.row_index,
                sku=row.sku,
                name=row.name,
                reason=VALIDATION_FAILED,
                errors=row.errors,
            ))

    logger.info(
        "Commit started for merchant %s: %d valid of %d rows (mode=%s, write_mode=%s)",
        merchant_id, len(valid), len(rows), mode.value, write_mode.value,
    )

    extracted: dict[str, ExtractedAsset] = {}
    if mode is ImportMode.zip and valid and zip_buffer is not None and asset_catalog is not None:
        wanted = [filename for row in valid for filename in row.image_files]
        extracted = await asyncio.to_thread(extract_entries, zip_buffer, asset_catalog, wanted)

    committer = _RowCommitter(
        merchant_id=merchant_id,
        mode=mode,
        extracted=extracted,
        category_map=category_map,
        default_category_id=default_category_id,
        catalog=catalog,
        uploader=uploader,
        write_mode=write_mode,
    )
    if verify_urls and mode is ImportMode.url:
        async with httpx.AsyncClient(
            timeout=settings.URL_CHECK_TIMEOUT_SECONDS, follow_redirects=True
        ) as http:
            committer.http = http
            outcomes = await committer.run(valid, concurrency)
    else:
        outcomes = await committer.run(valid, concurrency)

    for outcome in sorted(outcomes, key=lambda o: o.row.row_index):
        result.uploaded_images += outcome.uploaded
        if outcome.failure is not None:
            result.failed_count += 1
            result.failures.append(outcome.failure)
        elif outcome.written is WriteOutcome.inserted:
            result.inserted_count += 1
        else:
            result.updated_count += 1

    result.failures.sort(key=lambda f: f.row_index)
    logger.info(
        "Commit completed for merchant %s: %d inserted, %d updated, %d failed, %d skipped, %d images uploaded",
        merchant_id, result.inserted_count, result.updated_count,
        result.failed_count, result.skipped_count, result.uploaded_images,
    )
    return result
