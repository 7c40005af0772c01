"""Bulk product import endpoints: parse → (preview) → commit → failure report."""
import asyncio
import logging
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.core.deps import ROLE_ADMIN, ROLE_MERCHANT, CurrentUser, require_role
from storefront.core.limiter import limiter
from storefront.db.session import get_session
from storefront.schemas.imports import (
    CommitRequest,
    CommitResponse,
    FailedRow,
    FailureReportRequest,
    GlobalError,
    ImportMode,
    ParseResponse,
    SessionSummary,
)
from storefront.services import failure_report
from storefront.services.asset_catalog import AssetCatalog, index_zip
from storefront.services.catalog_store import CatalogStore, SqlCatalogStore
from storefront.services.categories import load_category_map, load_default_category_id
from storefront.services.import_commit import commit_import
from storefront.services.import_errors import (
    FormatError,
    ImportPipelineError,
    SessionNotFoundError,
    SessionStateError,
)
from storefront.services.import_sessions import (
    ImportSessionStore,
    check_access,
    check_merchant_access,
)
from storefront.services.row_validator import validate_rows
from storefront.services.storage import ImageUploader
from storefront.services.tabular import (
    TEMPLATE_HEADERS,
    generate_csv,
    generate_xlsx,
    parse_delimited,
    parse_spreadsheet,
    template_rows,
)

logger = logging.getLogger(__name__)

router = APIRouter()

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

ImportUser = Annotated[CurrentUser, Depends(require_role(ROLE_ADMIN, ROLE_MERCHANT))]


# ─── Dependencies ───

def get_session_store(request: Request) -> ImportSessionStore:
    return request.app.state.import_sessions


def get_catalog_store() -> CatalogStore:
    return SqlCatalogStore()


def get_image_uploader() -> ImageUploader:
    return ImageUploader()


# ─── Helpers ───

def _http_error(exc: ImportPipelineError) -> HTTPException:
    if isinstance(exc, SessionStateError):
        return HTTPException(status_code=exc.status_code, detail=exc.message)
    if isinstance(exc, FormatError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": exc.message, "details": exc.details},
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)


def _attachment(content: str | bytes, filename: str, media_type: str) -> StreamingResponse:
    return StreamingResponse(
        iter([content]),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _report(failures: list[FailedRow], fmt: str) -> StreamingResponse:
    if fmt == "json":
        return _attachment(failure_report.to_json(failures), "import-failures.json", "application/json")
    return _attachment(failure_report.to_csv(failures), "import-failures.csv", "text/csv")


def _too_large(label: str, limit: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=f"{label} exceeds the {limit // (1024 * 1024)} MB limit.",
    )


async def _read_limited(upload: UploadFile, limit: int, label: str) -> bytes:
    if upload.size is not None and upload.size > limit:
        raise _too_large(label, limit)
    # Never buffer more than one byte past the limit.
    content = await upload.read(limit + 1)
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{label} is empty.")
    if len(content) > limit:
        raise _too_large(label, limit)
    return content


async def _load_session(store: ImportSessionStore, session_id: str, user: CurrentUser):
    session = await store.get(session_id)
    try:
        if session is None:
            raise SessionNotFoundError("Import session not found")
        check_access(session, user)
    except SessionStateError as exc:
        raise _http_error(exc)
    return session


# ─── POST /parse ───

@router.post("/parse", response_model=ParseResponse, summary="Parse and validate an import file (ADMIN, MERCHANT)")
@limiter.limit(settings.IMPORT_RATE_LIMIT)
async def parse_import(
    request: Request,
    data_file: Annotated[UploadFile, File(description="Product sheet, .csv or .xlsx")],
    merchant_id: Annotated[str, Form(min_length=1)],
    current_user: ImportUser,
    store: Annotated[ImportSessionStore, Depends(get_session_store)],
    catalog: Annotated[CatalogStore, Depends(get_catalog_store)],
    zip_file: Annotated[UploadFile | None, File(description="Optional ZIP of product images")] = None,
):
    try:
        check_merchant_access(current_user, merchant_id)
    except SessionStateError as exc:
        raise _http_error(exc)

    filename = (data_file.filename or "").lower()
    if not filename.endswith((".csv", ".xlsx")):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Unsupported file type. Upload a .csv or .xlsx file.",
        )
    content = await _read_limited(data_file, settings.MAX_DATA_FILE_BYTES, "Data file")

    zip_bytes: bytes | None = None
    if zip_file is not None and zip_file.filename:
        if not zip_file.filename.lower().endswith(".zip"):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Images must be uploaded as a .zip file.")
        zip_bytes = await _read_limited(zip_file, settings.MAX_ZIP_BYTES, "ZIP file")

    try:
        if filename.endswith(".csv"):
            parsed = await asyncio.to_thread(parse_delimited, content)
        else:
            parsed = await asyncio.to_thread(parse_spreadsheet, content)
        asset_index = await asyncio.to_thread(index_zip, zip_bytes) if zip_bytes is not None else None
    except FormatError as exc:
        logger.info("Import parse rejected for merchant %s: %s", merchant_id, exc.message)
        raise _http_error(exc)

    existing = await catalog.existing_skus(merchant_id, (row.get("sku", "") for row in parsed.rows))
    validation = validate_rows(
        parsed.rows,
        asset_catalog=asset_index.files if asset_index else None,
        existing_skus=existing,
    )
    validation.errors.extend(GlobalError(code="ROW_SKIPPED", message=str(issue)) for issue in parsed.errors)
    if asset_index is not None:
        validation.warnings.extend(asset_index.errors)
        if validation.mode is ImportMode.url:
            validation.warnings.append("ZIP file was uploaded but the sheet uses image URLs; the ZIP is ignored")
            zip_bytes = None

    session = await store.create(merchant_id, current_user.id, validation, zip_bytes)
    return ParseResponse(
        session_id=session.id,
        preview=validation.rows[: settings.IMPORT_PREVIEW_ROWS],
        total_rows=validation.total_rows,
        valid_rows=validation.valid_rows,
        invalid_rows=validation.invalid_rows,
        mode=validation.mode,
        errors=validation.errors,
        warnings=validation.warnings,
        duplicate_skus=validation.duplicate_skus,
    )


# ─── GET /sessions/{id} ───

@router.get("/sessions/{session_id}", response_model=SessionSummary, summary="Import session status")
async def get_import_session(
    session_id: str,
    current_user: ImportUser,
    store: Annotated[ImportSessionStore, Depends(get_session_store)],
):
    session = await _load_session(store, session_id, current_user)
    result = session.validation_result
    return SessionSummary(
        session_id=session.id,
        merchant_id=session.merchant_id,
        status=session.status,
        created_at=session.created_at,
        expires_at=session.expires_at,
        total_rows=result.total_rows,
        valid_rows=result.valid_rows,
        invalid_rows=result.invalid_rows,
        mode=result.mode,
        commit_result=session.commit_result,
    )


# ─── POST /commit ───

@router.post("/commit", response_model=CommitResponse, summary="Commit a staged import session (ADMIN, MERCHANT)")
async def commit_session(
    body: CommitRequest,
    current_user: ImportUser,
    db: Annotated[AsyncSession, Depends(get_session)],
    store: Annotated[ImportSessionStore, Depends(get_session_store)],
    catalog: Annotated[CatalogStore, Depends(get_catalog_store)],
    uploader: Annotated[ImageUploader, Depends(get_image_uploader)],
):
    await _load_session(store, body.session_id, current_user)
    try:
        session = await store.claim_for_commit(body.session_id)
    except SessionStateError as exc:
        raise _http_error(exc)

    validation = session.validation_result
    asset_catalog: AssetCatalog | None = None
    if validation.mode is ImportMode.zip and session.zip_buffer is not None:
        asset_catalog = (await asyncio.to_thread(index_zip, session.zip_buffer)).files

    category_map = await load_category_map(db)
    default_category_id = await load_default_category_id(db)

    result = await commit_import(
        merchant_id=session.merchant_id,
        rows=validation.rows,
        mode=validation.mode,
        zip_buffer=session.zip_buffer,
        asset_catalog=asset_catalog,
        category_map=category_map,
        default_category_id=default_category_id,
        catalog=catalog,
        uploader=uploader,
        write_mode=body.write_mode,
        verify_urls=settings.VERIFY_IMAGE_URLS,
        concurrency=settings.COMMIT_CONCURRENCY,
    )

    await store.attach_result(session.id, result)
    await store.schedule_delete(session.id)
    return CommitResponse(success=not result.failures, result=result)


# ─── Failure reports ───

@router.post("/failures", summary="Download a failure report for the given rows")
async def download_failures(body: FailureReportRequest, current_user: ImportUser):
    return _report(body.failures, body.format)


@router.get("/sessions/{session_id}/failures", summary="Download the failure report of an import session")
async def download_session_failures(
    session_id: str,
    current_user: ImportUser,
    store: Annotated[ImportSessionStore, Depends(get_session_store)],
    fmt: Annotated[Literal["csv", "json"], Query(alias="format")] = "csv",
):
    session = await _load_session(store, session_id, current_user)
    if session.commit_result is not None:
        failures = session.commit_result.failures
    else:
        failures = failure_report.failures_from_validation(session.validation_result)
    return _report(failures, fmt)


# ─── Templates ───

@router.get("/template.csv", summary="CSV import template")
async def template_csv():
    return _attachment(generate_csv(TEMPLATE_HEADERS, template_rows()), "product-import-template.csv", "text/csv")


@router.get("/template.xlsx", summary="XLSX import template")
async def template_xlsx():
    content = await asyncio.to_thread(generate_xlsx, TEMPLATE_HEADERS, template_rows())
    return _attachment(content, "product-import-template.xlsx", XLSX_MEDIA_TYPE)
