"""Category name → id resolution for imports.

The map is loaded once per commit, either from the local categories table or
from the category service when CATEGORY_SERVICE_URL is set.
"""
import logging
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.models.category import Category
from storefront.services.import_errors import CategoryResolutionError

logger = logging.getLogger(__name__)

_ENVELOPE_KEYS = ("data", "categories", "items", "results")


def normalize_key(name: str) -> str:
    return " ".join(name.split()).lower()


# ─── Payload adapter ───

def normalize_category_records(payload: Any) -> list[dict[str, Any]]:
    """Reduce any category service response to [{id, name, is_default}].

    Accepts a bare list or a dict wrapping the list under one of the usual
    envelope keys (possibly nested once, e.g. {"data": {"items": [...]}}).
    Records may carry `id` or `_id`; records without an id or name are dropped.
    """
    records = payload
    for _ in range(2):
        if not isinstance(records, dict):
            break
        records = next((records[k] for k in _ENVELOPE_KEYS if k in records), None)
    if not isinstance(records, list):
        return []

    normalized = []
    for record in records:
        if not isinstance(record, dict):
            continue
        category_id = record.get("id", record.get("_id"))
        name = record.get("name")
        if category_id is None or not isinstance(name, str) or not name.strip():
            continue
        normalized.append({
            "id": str(category_id),
            "name": name.strip(),
            "is_default": bool(record.get("is_default", record.get("isDefault", False))),
        })
    return normalized


def _build_map(records: list[dict[str, Any]]) -> dict[str, str]:
    category_map: dict[str, str] = {}
    for record in records:
        category_map.setdefault(normalize_key(record["name"]), record["id"])
    return category_map


def _pick_default(records: list[dict[str, Any]]) -> str | None:
    for record in records:
        if record["is_default"]:
            return record["id"]
    if settings.DEFAULT_CATEGORY_NAME:
        wanted = normalize_key(settings.DEFAULT_CATEGORY_NAME)
        for record in records:
            if normalize_key(record["name"]) == wanted:
                return record["id"]
    return None


# ─── Loaders ───

async def _fetch_remote(url: str) -> list[dict[str, Any]]:
    async with httpx.AsyncClient(timeout=settings.CATEGORY_SERVICE_TIMEOUT_SECONDS) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return normalize_category_records(resp.json())


async def _load_records(db: AsyncSession) -> list[dict[str, Any]]:
    if settings.CATEGORY_SERVICE_URL:
        return await _fetch_remote(settings.CATEGORY_SERVICE_URL)
    result = await db.execute(select(Category).order_by(Category.created_at))
    return [
        {"id": str(c.id), "name": c.name, "is_default": c.is_default}
        for c in result.scalars().all()
    ]


async def load_category_map(db: AsyncSession) -> dict[str, str]:
    """Return normalised category name → id. Empty on load failure."""
    try:
        records = await _load_records(db)
    except (httpx.HTTPError, ValueError, SQLAlchemyError) as exc:
        logger.error("Failed to load categories, continuing with an empty map: %s", exc)
        return {}
    category_map = _build_map(records)
    logger.info("Loaded %d categories", len(category_map))
    return category_map


async def load_default_category_id(db: AsyncSession) -> str | None:
    try:
        records = await _load_records(db)
    except (httpx.HTTPError, ValueError, SQLAlchemyError) as exc:
        logger.error("Failed to load the default category: %s", exc)
        return None
    default_id = _pick_default(records)
    if default_id is None:
        logger.warning("No default category configured; unresolved categories will fail their rows")
    return default_id


def resolve_category_id(
    name: str,
    category_map: dict[str, str],
    default_id: str | None,
) -> str:
    if name:
        category_id = category_map.get(normalize_key(name))
        if category_id:
            return category_id
    if default_id:
        return default_id
    if name:
        raise CategoryResolutionError(f"Category '{name}' not found and no default category exists")
    raise CategoryResolutionError()
