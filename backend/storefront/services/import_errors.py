"""Error taxonomy for the bulk product import pipeline.

Only FormatError and SessionStateError abort an operation. The row-scoped
kinds are caught by the validator / commit engine and accumulated as RowError
entries so a caller always gets the complete picture in one round trip.
"""
from storefront.schemas.imports import RowError


class ImportPipelineError(Exception):
    code = "IMPORT_ERROR"

    def __init__(self, message: str, *, field: str = "general", code: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field
        if code is not None:
            self.code = code

    def to_row_error(self) -> RowError:
        return RowError(field=self.field, message=self.message, code=self.code)


# ─── Whole-operation failures ───

class FormatError(ImportPipelineError):
    """The uploaded file cannot be parsed at all."""

    code = "INVALID_FORMAT"

    def __init__(self, message: str, *, details: list[str] | None = None):
        super().__init__(message, field="file")
        self.details = details or []


class SessionStateError(ImportPipelineError):
    code = "SESSION_STATE"
    status_code = 400


class SessionNotFoundError(SessionStateError):
    code = "SESSION_NOT_FOUND"
    status_code = 404


class SessionExpiredError(SessionStateError):
    # Terminal: the session cannot be revived, the client has to re-upload.
    code = "SESSION_EXPIRED"
    status_code = 404


class SessionAlreadyCommittedError(SessionStateError):
    code = "SESSION_ALREADY_COMMITTED"
    status_code = 409


class SessionForbiddenError(SessionStateError):
    code = "SESSION_FORBIDDEN"
    status_code = 403


# ─── Row-scoped failures ───

class RowValidationError(ImportPipelineError):
    code = "INVALID_FORMAT"


class DuplicateSkuError(RowValidationError):
    code = "DUPLICATE_SKU"

    def __init__(self, sku: str):
        super().__init__(f"Duplicate SKU in file: {sku}", field="sku")
        self.sku = sku


class AssetResolutionError(ImportPipelineError):
    code = "ASSET_UNRESOLVED"

    def __init__(self, message: str, *, field: str = "images", code: str | None = None):
        super().__init__(message, field=field, code=code)


class CategoryResolutionError(ImportPipelineError):
    code = "CATEGORY_UNRESOLVED"

    def __init__(self, message: str = "Category is required and could not be resolved"):
        super().__init__(message, field="category")


class CommitRowError(ImportPipelineError):
    code = "COMMIT_FAILED"
