"""Tabular readers and writers for product import files.

CSV and XLSX input are both reduced to the same row shape (a dict of
lower-cased header → stripped string) so the validator never needs to know
which format the merchant uploaded.
"""
import csv
import io
import json
import logging
import zipfile
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any

from openpyxl import Workbook, load_workbook
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import InvalidFileException

from storefront.core.config import settings
from storefront.services.import_errors import FormatError

logger = logging.getLogger(__name__)

# ─── Column contract ───

REQUIRED_HEADERS = ("sku", "name", "price")

TEMPLATE_HEADERS = [
    "sku",
    "name",
    "description",
    "price",
    "currency",
    "category",
    "stock",
    "image_urls",
    "image_files",
    "variants_json",
]

_DELIMITERS = (",", ";", "\t")

RawRow = dict[str, str]


@dataclass
class ParseIssue:
    """A data row that was skipped. `line` is the 1-based line/sheet row."""

    line: int
    message: str

    def __str__(self) -> str:
        return f"Row {self.line}: {self.message}"


@dataclass
class TabularParseResult:
    rows: list[RawRow]
    errors: list[ParseIssue] = field(default_factory=list)
    headers: list[str] = field(default_factory=list)


# ─── Shared assembly ───

def _is_blank(values: list[str]) -> bool:
    return not any(v.strip() for v in values)


def _normalize_header(values: list[str], required: tuple[str, ...]) -> list[str]:
    headers = [v.strip().lower() for v in values]
    while headers and not headers[-1]:
        headers.pop()

    if any(not h for h in headers):
        raise FormatError("Header row contains blank column names")

    seen: set[str] = set()
    dupes = sorted({h for h in headers if h in seen or seen.add(h)})
    if dupes:
        raise FormatError(f"Duplicate column names in header: {', '.join(dupes)}")

    missing = [h for h in required if h not in headers]
    if missing:
        raise FormatError(f"Missing required headers: {', '.join(missing)}")
    return headers


def _assemble(
    records: Iterable[tuple[int, list[str]]], required: tuple[str, ...] = REQUIRED_HEADERS
) -> TabularParseResult:
    headers: list[str] | None = None
    rows: list[RawRow] = []
    errors: list[ParseIssue] = []

    for line, values in records:
        if _is_blank(values):
            continue
        if headers is None:
            headers = _normalize_header(values, required)
            continue

        if len(values) > len(headers):
            extra = values[len(headers):]
            if not _is_blank(extra):
                errors.append(ParseIssue(
                    line,
                    f"expected {len(headers)} columns, found {len(values)}; row skipped",
                ))
                continue
            values = values[:len(headers)]

        rows.append({
            h: (values[i].strip() if i < len(values) else "")
            for i, h in enumerate(headers)
        })
        if len(rows) > settings.MAX_IMPORT_ROWS:
            raise FormatError(f"File exceeds the maximum of {settings.MAX_IMPORT_ROWS} data rows")

    if headers is None:
        raise FormatError("File is empty")
    return TabularParseResult(rows=rows, errors=errors, headers=headers)


# ─── CSV ───

def detect_delimiter(first_line: str) -> str:
    """Pick the most frequent of comma, semicolon and tab; comma on ties."""
    best, best_count = ",", 0
    for delimiter in _DELIMITERS:
        count = first_line.count(delimiter)
        if count > best_count:
            best, best_count = delimiter, count
    return best


def _csv_records(reader) -> Iterator[tuple[int, list[str]]]:
    try:
        for values in reader:
            yield reader.line_num, values
    except csv.Error as exc:
        raise FormatError(f"Malformed CSV near line {reader.line_num}: {exc}") from exc


def parse_delimited(
    content: str | bytes, required: tuple[str, ...] = REQUIRED_HEADERS
) -> TabularParseResult:
    """Parse CSV (or semicolon/tab separated) text into raw rows."""
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise FormatError("CSV must be UTF-8 encoded") from exc
    content = content.lstrip("\ufeff")

    first_line = next((ln for ln in content.splitlines() if ln.strip()), "")
    if not first_line:
        raise FormatError("File is empty")

    reader = csv.reader(io.StringIO(content, newline=""), delimiter=detect_delimiter(first_line))
    result = _assemble(_csv_records(reader), required)
    logger.debug("Parsed CSV: %d rows, %d skipped", len(result.rows), len(result.errors))
    return result


def generate_csv(headers: list[str], rows: Iterable[dict[str, Any]]) -> str:
    """Render rows as RFC 4180 CSV (minimal quoting, CRLF line endings)."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\r\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if row.get(h) is None else row.get(h) for h in headers])
    return buf.getvalue()


# ─── XLSX ───

def _cell_to_str(value: Any) -> str:
    # Mirror what the same value looks like in a CSV export.
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else str(value)
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    return str(value)


def parse_spreadsheet(buffer: bytes, required: tuple[str, ...] = REQUIRED_HEADERS) -> TabularParseResult:
    """Parse the first sheet of an XLSX workbook into raw rows."""
    try:
        workbook = load_workbook(io.BytesIO(buffer), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, OSError) as exc:
        raise FormatError("Unreadable workbook", details=[str(exc)]) from exc

    try:
        if not workbook.worksheets:
            raise FormatError("No sheets found in workbook")
        sheet = workbook.worksheets[0]
        records = (
            (line, [_cell_to_str(v) for v in values])
            for line, values in enumerate(sheet.iter_rows(values_only=True), start=1)
        )
        result = _assemble(records, required)
    finally:
        workbook.close()

    logger.debug("Parsed XLSX: %d rows, %d skipped", len(result.rows), len(result.errors))
    return result


def generate_xlsx(headers: list[str], rows: Iterable[dict[str, Any]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Products"
    sheet.append(headers)
    for row in rows:
        sheet.append([row.get(h, "") for h in headers])
    for idx, header in enumerate(headers, start=1):
        sheet.column_dimensions[get_column_letter(idx)].width = max(len(header) + 2, 15)

    out = io.BytesIO()
    workbook.save(out)
    return out.getvalue()


# ─── Template ───

def template_rows() -> list[dict[str, Any]]:
    """One URL-mode row, one ZIP-mode row and one product with variants."""
    return [
        {
            "sku": "PROD-001",
            "name": "Example Product (URL Mode)",
            "description": "A sample product with image URLs",
            "price": "99.99",
            "currency": "USD",
            "category": "Electronics",
            "stock": "100",
            "image_urls": "https://example.com/img1.jpg|https://example.com/img2.jpg",
            "image_files": "",
            "variants_json": "",
        },
        {
            "sku": "PROD-002",
            "name": "Example Product (ZIP Mode)",
            "description": "A sample product with images from the ZIP file",
            "price": "149.99",
            "currency": "USD",
            "category": "Clothing",
            "stock": "50",
            "image_urls": "",
            "image_files": "product2-front.jpg|product2-back.jpg",
            "variants_json": "",
        },
        {
            "sku": "PROD-003",
            "name": "Product with Variants",
            "description": "A product demonstrating the variant structure",
            "price": "199.99",
            "currency": "USD",
            "category": "Clothing",
            "stock": "0",
            "image_urls": "https://example.com/prod3.jpg",
            "image_files": "",
            "variants_json": json.dumps([
                {"sku": "PROD-003-S-RED", "attributes": {"size": "S", "color": "Red"}, "merchantPrice": 199.99, "stock": 10},
                {"sku": "PROD-003-M-RED", "attributes": {"size": "M", "color": "Red"}, "merchantPrice": 199.99, "stock": 15},
                {"sku": "PROD-003-L-BLUE", "attributes": {"size": "L", "color": "Blue"}, "merchantPrice": 209.99, "stock": 8},
            ]),
        },
    ]
