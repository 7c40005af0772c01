"""Failure reports for merchants (CSV or JSON download)."""
import json

from storefront.schemas.imports import FailedRow, ValidationResult
from storefront.services.tabular import generate_csv

REPORT_HEADERS = ["row", "sku", "name", "reason", "errors"]


def _flatten_errors(failure: FailedRow) -> str:
    return "; ".join(f"{e.field}: {e.message}" for e in failure.errors)


def to_csv(failures: list[FailedRow]) -> str:
    # `row` is 1-based for display; row_index stays 0-based everywhere else.
    return generate_csv(
        REPORT_HEADERS,
        (
            {
                "row": f.row_index + 1,
                "sku": f.sku,
                "name": f.name,
                "reason": f.reason,
                "errors": _flatten_errors(f),
            }
            for f in failures
        ),
    )


def to_json(failures: list[FailedRow]) -> str:
    return json.dumps([f.model_dump(mode="json") for f in failures], indent=2, ensure_ascii=False)


def failures_from_validation(result: ValidationResult) -> list[FailedRow]:
    """Pre-commit report: every invalid row, in file order."""
    return [
        FailedRow(
            row_index=row.row_index,
            sku=row.sku,
            name=row.name,
            reason="; ".join(e.message for e in row.errors),
            errors=row.errors,
        )
        for row in result.rows
        if not row.is_valid
    ]
