"""Tests for category lookup and resolution."""
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from storefront.core.config import settings
from storefront.services.categories import (
    load_category_map,
    load_default_category_id,
    normalize_category_records,
    normalize_key,
    resolve_category_id,
)
from storefront.services.import_errors import CategoryResolutionError


# ─── Helpers ──────────────────────────────────────────────────────────────────

class FakeCategory:
    def __init__(self, name: str, is_default: bool = False):
        self.id = uuid.uuid4()
        self.name = name
        self.is_default = is_default


def make_db(categories: list[FakeCategory]):
    mock_result = MagicMock()
    mock_result.scalars.return_value.all.return_value = categories
    db = AsyncMock()
    db.execute = AsyncMock(return_value=mock_result)
    return db


# ─── Payload shapes ───────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "payload",
    [
        [{"id": 1, "name": "Shoes"}],
        {"data": [{"id": 1, "name": "Shoes"}]},
        {"categories": [{"_id": 1, "name": "Shoes"}]},
        {"data": {"items": [{"id": 1, "name": " Shoes "}]}},
        {"results": [{"id": 1, "name": "Shoes"}, {"name": "no id"}, {"id": 2}, "junk"]},
    ],
)
def test_normalize_category_records_shapes(payload):
    assert normalize_category_records(payload) == [{"id": "1", "name": "Shoes", "is_default": False}]


def test_normalize_category_records_garbage():
    assert normalize_category_records(None) == []
    assert normalize_category_records({"unexpected": []}) == []
    assert normalize_category_records("categories") == []


def test_default_flag_accepts_camel_case():
    records = normalize_category_records([{"id": "c1", "name": "Misc", "isDefault": True}])
    assert records[0]["is_default"] is True


# ─── Resolution ───────────────────────────────────────────────────────────────

def test_resolve_is_case_and_whitespace_insensitive():
    category_map = {normalize_key("Home  & Garden"): "c-home"}
    assert resolve_category_id("home & garden", category_map, None) == "c-home"
    assert resolve_category_id("  HOME &   GARDEN ", category_map, None) == "c-home"


def test_resolve_falls_back_to_default():
    assert resolve_category_id("Unknown", {}, "c-default") == "c-default"
    assert resolve_category_id("", {}, "c-default") == "c-default"


def test_resolve_without_default_fails():
    with pytest.raises(CategoryResolutionError) as exc_info:
        resolve_category_id("Unknown", {}, None)
    assert "Unknown" in exc_info.value.message
    with pytest.raises(CategoryResolutionError):
        resolve_category_id("", {}, None)


# ─── Loaders ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_load_category_map_from_database():
    shoes, misc = FakeCategory("Shoes"), FakeCategory("Misc", is_default=True)
    db = make_db([shoes, misc])

    category_map = await load_category_map(db)
    default_id = await load_default_category_id(db)

    assert category_map == {"shoes": str(shoes.id), "misc": str(misc.id)}
    assert default_id == str(misc.id)


@pytest.mark.asyncio
async def test_default_by_configured_name(monkeypatch):
    monkeypatch.setattr(settings, "DEFAULT_CATEGORY_NAME", "general")
    general = FakeCategory("General")
    assert await load_default_category_id(make_db([FakeCategory("Shoes"), general])) == str(general.id)


@pytest.mark.asyncio
async def test_no_default_category():
    assert await load_default_category_id(make_db([FakeCategory("Shoes")])) is None


@pytest.mark.asyncio
async def test_database_failure_yields_empty_map():
    db = AsyncMock()
    db.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down")))
    assert await load_category_map(db) == {}
    assert await load_default_category_id(db) is None


@pytest.mark.asyncio
async def test_remote_service_used_when_configured(monkeypatch):
    monkeypatch.setattr(settings, "CATEGORY_SERVICE_URL", "http://categories.internal/api/categories")
    records = [{"id": "r1", "name": "Remote", "is_default": True}]
    db = make_db([])
    with patch("storefront.services.categories._fetch_remote", new=AsyncMock(return_value=records)) as fetch:
        assert await load_category_map(db) == {"remote": "r1"}
        assert await load_default_category_id(db) == "r1"
    fetch.assert_awaited_with("http://categories.internal/api/categories")
    db.execute.assert_not_called()


@pytest.mark.asyncio
async def test_remote_service_failure_yields_empty_map(monkeypatch):
    monkeypatch.setattr(settings, "CATEGORY_SERVICE_URL", "http://categories.internal/api/categories")
    failing = AsyncMock(side_effect=httpx.ConnectError("connection refused"))
    with patch("storefront.services.categories._fetch_remote", new=failing):
        assert await load_category_map(make_db([])) == {}
