import asyncio
import logging
import math
import re
from typing import Any, Callable, Dict, Mapping, Optional

from bson import ObjectId

import config
from database import Database, live_filter
from errors import NotFound
from relations import populate_relations
from schemas import CollectionSpec, FieldType, get_collection_spec, parse_datetime

logger = logging.getLogger(__name__)

RESERVED_PARAMS = ("search", "limit", "page", "is_count", "include_relations")

# Marks a filter value that could not be coerced and must be dropped
_SKIP = object()


def _as_number(key: str, value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    try:
        number = float(value)
    except (TypeError, ValueError):
        return _SKIP
    return _SKIP if math.isnan(number) else number


def _as_object_id(key: str, value: Any) -> Any:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    logger.warning("Invalid ObjectId for field %s: %r", key, value)
    return _SKIP


def _as_boolean(key: str, value: Any) -> bool:
    return value is True or value == "true"


def _as_date(key: str, value: Any) -> Any:
    parsed = parse_datetime(value)
    return _SKIP if parsed is None else parsed


def _verbatim(key: str, value: Any) -> Any:
    return value


_COERCERS: Dict[FieldType, Callable[[str, Any], Any]] = {
    FieldType.STRING: _verbatim,
    FieldType.NUMBER: _as_number,
    FieldType.BOOLEAN: _as_boolean,
    FieldType.DATE: _as_date,
    FieldType.OBJECT_ID: _as_object_id,
    FieldType.OBJECT: _verbatim,
}


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def coerce_filter_value(spec: CollectionSpec, key: str, value: Any) -> Any:
    field = spec.fields.get(key)
    if field is None:
        # keys outside the schema are passed through for ad hoc filtering
        return value
    return _COERCERS[field.type](key, value)


def build_query(
    spec: CollectionSpec, search: Optional[str] = None, filters: Optional[Mapping[str, Any]] = None
) -> Dict[str, Any]:
    """Translate a search string and loose key/value filters into a MongoDB filter."""
    query = live_filter()

    if search and spec.searchable_fields:
        pattern = {"$regex": re.escape(str(search)), "$options": "i"}
        query["$or"] = [{field: pattern} for field in spec.searchable_fields]

    for key, value in (filters or {}).items():
        if key.startswith("$") or key == "deleted_at":
            logger.warning("Ignoring filter on reserved key %s", key)
            continue
        if isinstance(value, (list, tuple)) and len(value) == 1:
            value = value[0]
        if _is_empty(value):
            continue

        if isinstance(value, (list, tuple)):
            coerced = [coerce_filter_value(spec, key, item) for item in value if not _is_empty(item)]
            coerced = [item for item in coerced if item is not _SKIP]
            if coerced:
                query[key] = {"$in": coerced}
            continue

        coerced = coerce_filter_value(spec, key, value)
        if coerced is not _SKIP:
            query[key] = coerced

    return query


def parse_limit(limit: Any) -> Optional[int]:
    """Page size capped at MAX_LIMIT; None means the no-limit sentinel."""
    if limit == config.NO_LIMIT:
        return None
    try:
        size = int(limit)
    except (TypeError, ValueError):
        size = config.DEFAULT_LIMIT
    if size <= 0:
        size = config.DEFAULT_LIMIT
    return min(size, config.MAX_LIMIT)


def parse_page(page: Any) -> int:
    try:
        number = int(page)
    except (TypeError, ValueError):
        return 1
    return max(number, 1)


def parse_flag(value: Any) -> bool:
    if isinstance(value, (list, tuple)):
        value = value[-1] if value else False
    return value is True or str(value).lower() == "true"


async def find_all(db: Database, collection: Any, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    spec = get_collection_spec(collection)
    filters = dict(params or {})

    search = filters.pop("search", None)
    if isinstance(search, (list, tuple)):
        search = search[0] if search else None
    limit = parse_limit(filters.pop("limit", config.DEFAULT_LIMIT))
    page = parse_page(filters.pop("page", 1))
    is_count = parse_flag(filters.pop("is_count", False))
    include_relations = parse_flag(filters.pop("include_relations", False))

    query = build_query(spec, search, filters)
    logger.debug("Final MongoDB query on %s: %s", spec.name.value, query)
    documents = db.collection(spec.name)

    if is_count:
        return {"count": await documents.count_documents(query)}

    cursor = documents.find(query).sort("_id", 1)

    if limit is None:
        rows = await cursor.to_list(length=None)
        if include_relations:
            rows = await populate_relations(db, spec, rows)
        return {"data": rows}

    skip = (page - 1) * limit
    total, rows = await asyncio.gather(
        documents.count_documents(query),
        cursor.skip(skip).limit(limit).to_list(length=limit),
    )
    if include_relations:
        rows = await populate_relations(db, spec, rows)

    return {
        "data": rows,
        "pagination": {
            "current_page": page,
            "total_pages": math.ceil(total / limit),
            "total_items": total,
            "per_page": limit,
        },
    }


async def find_by_id(db: Database, collection: Any, id: Any) -> Dict[str, Any]:
    spec = get_collection_spec(collection)
    if not ObjectId.is_valid(id):
        raise NotFound(f"{spec.singular} not found: invalid ID format")

    document = await db.collection(spec.name).find_one(live_filter(_id=ObjectId(id)))
    if document is None:
        raise NotFound(f"{spec.singular} not found")
    return document
