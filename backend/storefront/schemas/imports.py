"""Pydantic schemas for the bulk product import pipeline."""
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field


class ImportMode(str, Enum):
    url = "url"
    zip = "zip"


class SessionStatus(str, Enum):
    staged = "staged"
    committed = "committed"
    expired = "expired"


class WriteMode(str, Enum):
    upsert = "upsert"
    insert_only = "insert_only"


# ─── Validation ───

class RowError(BaseModel):
    field: str
    message: str
    code: str = "INVALID_FORMAT"


class GlobalError(BaseModel):
    code: str
    message: str


class VariantImport(BaseModel):
    sku: str
    attributes: dict[str, str] = Field(default_factory=dict)
    merchant_price: float
    stock: int = 0
    images: list[str] = Field(default_factory=list)
    is_active: bool = True


class ValidatedRow(BaseModel):
    row_index: int
    sku: str
    name: str
    description: str = ""
    price: float = 0.0
    currency: str = "USD"
    category_name: str = ""
    stock: int = 0
    image_urls: list[str] = Field(default_factory=list)
    image_files: list[str] = Field(default_factory=list)
    variants: list[VariantImport] = Field(default_factory=list)
    errors: list[RowError] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def is_valid(self) -> bool:
        return not self.errors


class ValidationResult(BaseModel):
    rows: list[ValidatedRow]
    total_rows: int
    valid_rows: int
    invalid_rows: int
    mode: ImportMode
    errors: list[GlobalError] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    duplicate_skus: list[str] = Field(default_factory=list)


# ─── Commit ───

class FailedRow(BaseModel):
    row_index: int
    sku: str
    name: str
    reason: str
    errors: list[RowError] = Field(default_factory=list)


class CommitResult(BaseModel):
    total_rows: int = 0
    inserted_count: int = 0
    updated_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    uploaded_images: int = 0
    failures: list[FailedRow] = Field(default_factory=list)


# ─── Session ───

class ImportSession(BaseModel):
    id: str
    merchant_id: str
    owner_user_id: str
    status: SessionStatus = SessionStatus.staged
    created_at: datetime
    expires_at: datetime
    validation_result: ValidationResult
    commit_result: CommitResult | None = None
    zip_buffer: bytes | None = Field(default=None, exclude=True, repr=False)


# ─── API payloads ───

class ParseResponse(BaseModel):
    success: bool = True
    session_id: str
    preview: list[ValidatedRow]
    total_rows: int
    valid_rows: int
    invalid_rows: int
    mode: ImportMode
    errors: list[GlobalError]
    warnings: list[str]
    duplicate_skus: list[str]


class SessionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_id: str
    merchant_id: str
    status: SessionStatus
    created_at: datetime
    expires_at: datetime
    total_rows: int
    valid_rows: int
    invalid_rows: int
    mode: ImportMode
    commit_result: CommitResult | None = None


class CommitRequest(BaseModel):
    session_id: str
    write_mode: WriteMode = WriteMode.upsert


class CommitResponse(BaseModel):
    success: bool
    result: CommitResult


class FailureReportRequest(BaseModel):
    failures: list[FailedRow]
    format: Literal["csv", "json"] = "csv"
