"""Row validation for bulk product imports.

Per-row field checks, variant checks and the cross-row rules (duplicate SKUs,
one image mode per file). Rows are never dropped: invalid rows keep their
original index and carry their errors so preview, commit and failure reports
can all point back at the same line of the merchant's file.
"""
import json
import logging
import math
import re
from collections.abc import Iterable
from typing import Any
from urllib.parse import urlsplit

from storefront.core.config import settings
from storefront.schemas.imports import (
    GlobalError,
    ImportMode,
    RowError,
    ValidatedRow,
    ValidationResult,
    VariantImport,
)
from storefront.services.asset_catalog import (
    ALLOWED_IMAGE_EXTENSIONS,
    AssetCatalog,
    is_allowed_image,
)
from storefront.services.import_errors import (
    AssetResolutionError,
    DuplicateSkuError,
    ImportPipelineError,
    RowValidationError,
)
from storefront.services.tabular import RawRow

logger = logging.getLogger(__name__)

IMAGE_URL_COLUMNS = ("image_urls",) + tuple(f"image_{i}" for i in range(1, 11))
IMAGE_FILE_COLUMN = "image_files"

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_GROUPED_NUMBER_RE = re.compile(r"^[+-]?\d{1,3}(,\d{3})+(\.\d+)?$")


# ─── Field parsing helpers ───

def split_pipe(value: str) -> list[str]:
    return [part.strip() for part in value.split("|") if part.strip()]


def collect_image_urls(raw: RawRow) -> list[str]:
    urls = split_pipe(raw.get("image_urls", ""))
    for i in range(1, 11):
        value = raw.get(f"image_{i}", "").strip()
        if value:
            urls.append(value)
    return urls


def is_valid_image_url(url: str) -> bool:
    """Absolute http(s) URL with a host."""
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(host) and not any(c.isspace() for c in url)


def parse_number(value: Any) -> float | None:
    """Parse a price-like value.

    Commas are accepted only as thousands separators in groups of three, so a
    decimal comma such as `9,99` is rejected rather than read as 999.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        if "," in text:
            if not _GROUPED_NUMBER_RE.match(text):
                return None
            text = text.replace(",", "")
        try:
            number = float(text)
        except ValueError:
            return None
    return number if math.isfinite(number) else None


def parse_count(value: Any) -> int | None:
    number = parse_number(value)
    if number is None or number < 0 or not number.is_integer():
        return None
    return int(number)


def _uses_url_mode(raw: RawRow) -> bool:
    return any(raw.get(col, "").strip() for col in IMAGE_URL_COLUMNS)


def _uses_zip_mode(raw: RawRow) -> bool:
    return bool(raw.get(IMAGE_FILE_COLUMN, "").strip())


def detect_mode(rows: list[RawRow]) -> ImportMode:
    """The first row that populates an image column decides the file's mode."""
    for raw in rows:
        if _uses_zip_mode(raw):
            return ImportMode.zip
        if _uses_url_mode(raw):
            return ImportMode.url
    return ImportMode.url


class _Errors(list):
    def add(self, exc: ImportPipelineError) -> None:
        self.append(exc.to_row_error())

    def invalid(self, field: str, message: str, code: str = "INVALID_FORMAT") -> None:
        self.add(RowValidationError(message, field=field, code=code))


def _check_sku(sku: str, errors: _Errors, field: str = "sku", label: str = "SKU") -> None:
    if not sku:
        errors.invalid(field, f"{label} is required", "REQUIRED_FIELD")
        return
    if len(sku) > settings.MAX_SKU_LENGTH:
        errors.invalid(field, f"{label} must be {settings.MAX_SKU_LENGTH} characters or less", "SKU_TOO_LONG")
    if any(c.isspace() for c in sku):
        errors.invalid(field, f"{label} cannot contain spaces", "SKU_INVALID_CHARS")


# ─── Variants ───

def _validate_variant(
    index: int, raw: Any, parent_sku: str, parent_price: float, seen: set[str]
) -> tuple[VariantImport | None, list[RowError]]:
    prefix = f"variants_json[{index}]"
    errors = _Errors()
    if not isinstance(raw, dict):
        errors.invalid(prefix, f"Variant {index} must be an object", "INVALID_JSON")
        return None, errors

    sku = str(raw.get("sku") or "").strip()
    _check_sku(sku, errors, field=f"{prefix}.sku", label="Variant SKU")
    if sku:
        key = sku.lower()
        if parent_sku and key == parent_sku.lower():
            errors.invalid(f"{prefix}.sku", "Variant SKU must differ from the product SKU", "DUPLICATE_SKU")
        elif key in seen:
            errors.invalid(f"{prefix}.sku", f"Duplicate variant SKU: {sku}", "DUPLICATE_SKU")
        seen.add(key)

    price_key = "merchantPrice" if "merchantPrice" in raw else "price"
    merchant_price = parent_price
    if raw.get(price_key) is not None:
        merchant_price = parse_number(raw[price_key])
        if merchant_price is None or merchant_price < 0:
            errors.invalid(f"{prefix}.{price_key}", "Variant price must be a non-negative number", "INVALID_NUMBER")
            merchant_price = 0.0

    stock = 0
    if raw.get("stock") is not None:
        stock = parse_count(raw["stock"])
        if stock is None:
            errors.invalid(f"{prefix}.stock", "Variant stock must be a non-negative integer", "INVALID_NUMBER")
            stock = 0

    attributes = raw.get("attributes") or {}
    if not isinstance(attributes, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in attributes.items()
    ):
        errors.invalid(f"{prefix}.attributes", "Variant attributes must be an object of string values")
        attributes = {}

    images = raw.get("images") or []
    if not isinstance(images, list) or not all(isinstance(i, str) for i in images):
        errors.invalid(f"{prefix}.images", "Variant images must be a list of strings")
        images = []

    is_active = raw.get("isActive", True)
    if not isinstance(is_active, bool):
        errors.invalid(f"{prefix}.isActive", "Variant isActive must be true or false")
        is_active = True

    if errors:
        return None, errors
    return VariantImport(
        sku=sku,
        attributes=attributes,
        merchant_price=merchant_price,
        stock=stock,
        images=images,
        is_active=is_active,
    ), errors


def _validate_variants(
    text: str, parent_sku: str, parent_price: float, errors: _Errors
) -> list[VariantImport]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        errors.invalid("variants_json", "variants_json must be valid JSON", "INVALID_JSON")
        return []
    if not isinstance(parsed, list):
        errors.invalid("variants_json", "variants_json must be a JSON array", "INVALID_JSON")
        return []

    variants: list[VariantImport] = []
    seen: set[str] = set()
    for index, raw in enumerate(parsed):
        variant, variant_errors = _validate_variant(index, raw, parent_sku, parent_price, seen)
        errors.extend(variant_errors)
        if variant is not None:
            variants.append(variant)
    return variants


# ─── Single row ───

def validate_row(
    raw: RawRow,
    row_index: int,
    mode: ImportMode,
    asset_catalog: AssetCatalog | None = None,
) -> ValidatedRow:
    errors = _Errors()
    warnings: list[str] = []

    sku = raw.get("sku", "").strip()
    _check_sku(sku, errors)

    name = raw.get("name", "").strip()
    if not name:
        errors.invalid("name", "Name is required", "REQUIRED_FIELD")

    price_text = raw.get("price", "").strip()
    price = parse_number(price_text)
    if not price_text:
        errors.invalid("price", "Price is required", "REQUIRED_FIELD")
    elif price is None or price < 0:
        errors.invalid("price", "Price must be a non-negative number", "INVALID_NUMBER")
    price = price if price is not None and price >= 0 else 0.0

    stock = 0
    stock_text = raw.get("stock", "").strip()
    if stock_text:
        parsed_stock = parse_count(stock_text)
        if parsed_stock is None:
            errors.invalid("stock", "Stock must be a non-negative integer", "INVALID_NUMBER")
        else:
            stock = parsed_stock

    currency = (raw.get("currency", "").strip() or settings.DEFAULT_CURRENCY).upper()
    if not _CURRENCY_RE.match(currency):
        errors.invalid("currency", f"Currency must be a 3-letter code, got {currency!r}", "INVALID_CURRENCY")

    category = raw.get("category", "").strip()
    if not category:
        warnings.append("Category is empty - the default category will be used if available")

    description = raw.get("description", "").strip()
    if not description:
        warnings.append("Description is empty - placeholder text will be used")

    # Images
    image_urls: list[str] = []
    image_files: list[str] = []
    conflict = False
    if mode is ImportMode.zip:
        if _uses_url_mode(raw):
            conflict = True
            errors.invalid("image_urls", "Image URLs cannot be used in a ZIP-mode file", "MODE_CONFLICT")
        image_files = split_pipe(raw.get(IMAGE_FILE_COLUMN, ""))
        for filename in image_files:
            if not is_allowed_image(filename):
                errors.add(AssetResolutionError(
                    f"Invalid image type for {filename}. Allowed: {', '.join(ALLOWED_IMAGE_EXTENSIONS)}",
                    field=IMAGE_FILE_COLUMN,
                    code="INVALID_FILE_TYPE",
                ))
            elif asset_catalog is None or filename not in asset_catalog:
                errors.add(AssetResolutionError(
                    f"File not found in ZIP: {filename}",
                    field=IMAGE_FILE_COLUMN,
                    code="FILE_NOT_FOUND",
                ))
    else:
        if _uses_zip_mode(raw):
            conflict = True
            errors.invalid(IMAGE_FILE_COLUMN, "Image files cannot be used in a URL-mode file", "MODE_CONFLICT")
        for url in collect_image_urls(raw):
            if is_valid_image_url(url):
                image_urls.append(url)
            else:
                errors.add(AssetResolutionError(f"Invalid URL: {url}", field="image_urls", code="INVALID_URL"))

    if not image_urls and not image_files and not conflict and not any(
        e.code == "INVALID_URL" for e in errors
    ):
        errors.invalid("images", "At least one image is required (provide image_urls or image_files)", "REQUIRED_FIELD")

    variants: list[VariantImport] = []
    variants_text = raw.get("variants_json", "").strip()
    if variants_text:
        variants = _validate_variants(variants_text, sku, price, errors)

    return ValidatedRow(
        row_index=row_index,
        sku=sku,
        name=name,
        description=description,
        price=price,
        currency=currency,
        category_name=category,
        stock=stock,
        image_urls=image_urls,
        image_files=image_files,
        variants=variants,
        errors=list(errors),
        warnings=warnings,
    )


# ─── Whole file ───

def validate_rows(
    rows: list[RawRow],
    *,
    asset_catalog: AssetCatalog | None = None,
    existing_skus: Iterable[str] = frozenset(),
) -> ValidationResult:
    """Validate every row and apply the cross-row rules."""
    mode = detect_mode(rows)
    errors: list[GlobalError] = []
    warnings: list[str] = []

    if mode is ImportMode.zip and asset_catalog is None:
        errors.append(GlobalError(
            code="ZIP_REQUIRED",
            message="ZIP file is required when using the image_files column",
        ))

    validated = [validate_row(raw, i, mode, asset_catalog) for i, raw in enumerate(rows)]

    conflicts = sum(1 for row in validated if any(e.code == "MODE_CONFLICT" for e in row.errors))
    if conflicts:
        other = "image URLs" if mode is ImportMode.zip else "image files"
        warnings.append(
            f"File is in {mode.value} mode; {conflicts} row(s) using {other} were rejected"
        )

    # Duplicate SKUs: every occurrence is flagged, the SKU is listed once.
    first_spelling: dict[str, str] = {}
    counts: dict[str, int] = {}
    for row in validated:
        if row.sku:
            key = row.sku.lower()
            first_spelling.setdefault(key, row.sku)
            counts[key] = counts.get(key, 0) + 1
    duplicates = [key for key, count in counts.items() if count > 1]
    for row in validated:
        if row.sku and counts[row.sku.lower()] > 1:
            row.errors.append(DuplicateSkuError(row.sku).to_row_error())

    existing = {s.lower() for s in existing_skus}
    if existing:
        for row in validated:
            if row.sku and row.sku.lower() in existing:
                row.warnings.append(f"SKU {row.sku} already exists; this row will update the existing product")

    valid = sum(1 for row in validated if row.is_valid)
    result = ValidationResult(
        rows=validated,
        total_rows=len(validated),
        valid_rows=valid,
        invalid_rows=len(validated) - valid,
        mode=mode,
        errors=errors,
        warnings=warnings,
        duplicate_skus=[first_spelling[key] for key in duplicates],
    )
    logger.info(
        "Validated %d rows (%d valid, %d invalid, mode=%s, %d duplicate SKUs)",
        result.total_rows, result.valid_rows, result.invalid_rows, mode.value, len(duplicates),
    )
    return result
