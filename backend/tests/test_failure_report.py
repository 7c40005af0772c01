"""Tests for failure report rendering."""
import json

from storefront.schemas.imports import FailedRow, RowError
from storefront.services import failure_report
from storefront.services.row_validator import validate_rows
from storefront.services.tabular import parse_delimited


def sample_failures() -> list[FailedRow]:
    return [
        FailedRow(
            row_index=0,
            sku="A1",
            name="Shirt",
            reason="Validation failed",
            errors=[
                RowError(field="price", message="Price is required", code="REQUIRED_FIELD"),
                RowError(field="stock", message="Stock must be a non-negative integer", code="INVALID_NUMBER"),
            ],
        ),
        FailedRow(row_index=4, sku="B2", name="Hat", reason="Invalid URL: ftp://x/1.jpg"),
    ]


def test_csv_has_header_and_one_based_rows():
    lines = failure_report.to_csv(sample_failures()).split("\r\n")
    assert lines[0] == "row,sku,name,reason,errors"
    assert lines[1].startswith("1,A1,Shirt,Validation failed,")
    assert lines[2].startswith("5,B2,Hat,")


def test_csv_round_trips_through_the_parser():
    parsed = parse_delimited(failure_report.to_csv(sample_failures()), required=("row", "sku"))
    assert parsed.headers == failure_report.REPORT_HEADERS
    assert parsed.rows[0]["sku"] == "A1"
    assert parsed.rows[0]["errors"] == "price: Price is required; stock: Stock must be a non-negative integer"
    assert parsed.rows[1] == {
        "row": "5",
        "sku": "B2",
        "name": "Hat",
        "reason": "Invalid URL: ftp://x/1.jpg",
        "errors": "",
    }


def test_csv_quotes_embedded_delimiters():
    failures = [FailedRow(row_index=0, sku="A1", name='Shirt, "large"', reason="bad\nthing")]
    parsed = parse_delimited(failure_report.to_csv(failures), required=("row", "sku"))
    assert parsed.rows[0]["name"] == 'Shirt, "large"'
    assert parsed.rows[0]["reason"] == "bad\nthing"


def test_empty_report_is_just_the_header():
    assert failure_report.to_csv([]) == "row,sku,name,reason,errors\r\n"
    assert json.loads(failure_report.to_json([])) == []


def test_json_keeps_structured_errors():
    data = json.loads(failure_report.to_json(sample_failures()))
    assert data[0]["row_index"] == 0
    assert data[0]["errors"][1]["code"] == "INVALID_NUMBER"
    assert data[1]["errors"] == []


def test_failures_from_validation_lists_invalid_rows_in_order():
    rows = [
        {"sku": "A1", "name": "Shirt", "price": "10", "image_urls": "http://x/1.jpg"},
        {"sku": "A2", "name": "", "price": "10", "image_urls": "http://x/2.jpg"},
        {"sku": "A3", "name": "Hat", "price": "-1", "image_urls": "http://x/3.jpg"},
    ]
    failures = failure_report.failures_from_validation(validate_rows(rows))
    assert [f.row_index for f in failures] == [1, 2]
    assert failures[0].reason == "Name is required"
    assert failures[1].errors[0].code == "INVALID_NUMBER"
