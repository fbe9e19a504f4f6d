import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import BulkWriteError, DuplicateKeyError, PyMongoError

from auth import get_password_hash
from database import Database, live_filter
from errors import DUPLICATE_ENTRY_MESSAGE, Conflict, NotFound, ValidationFailed
from schemas import (
    Collection,
    CollectionSpec,
    date_fields,
    get_collection_spec,
    parse_datetime,
    to_object_id,
    validate_document,
)

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = ("_id", "created_at", "deleted_at")
VOTE_TUPLE = ("position_id", "period_start", "period_end")
CANDIDACY_KEY = ("user_id", "period_start", "period_end")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _session_kwargs(session) -> Dict[str, Any]:
    return {"session": session} if session is not None else {}


def normalize_ids(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert string `*_id` values to ObjectIds; `position_id` is a number and stays as is."""
    converted = dict(data)
    for key, value in data.items():
        if key.endswith("_id") and key != "position_id" and isinstance(value, str):
            object_id = to_object_id(value)
            if object_id is not None:
                converted[key] = object_id
    return converted


def _parse_dates(spec: CollectionSpec, data: Dict[str, Any]) -> None:
    for field in date_fields(spec):
        if isinstance(data.get(field), str):
            parsed = parse_datetime(data[field])
            if parsed is not None:
                data[field] = parsed


def _hash_password(spec: CollectionSpec, data: Dict[str, Any]) -> None:
    if spec.name == Collection.USERS and data.get("password"):
        data["password"] = get_password_hash(data["password"])


def _prepare_document(spec: CollectionSpec, data: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    document = {**spec.defaults(), **{k: v for k, v in data.items() if k not in ("_id", "deleted_at")}}
    document = normalize_ids(document)
    _parse_dates(spec, document)
    document["created_at"] = now
    document["updated_at"] = now
    _hash_password(spec, document)
    return document


def _is_duplicate_key(exc: BulkWriteError) -> bool:
    return any(error.get("code") == 11000 for error in exc.details.get("writeErrors", []))


async def _ensure_no_candidacy(
    db: Database, items: Iterable[Dict[str, Any]], session=None, exclude: Optional[ObjectId] = None
) -> None:
    """Reject users that already hold a live candidacy in the same period."""
    periods = defaultdict(list)
    for item in items:
        periods[(item["period_start"], item["period_end"])].append(to_object_id(item["user_id"]))

    candidates = db.collection(Collection.CANDIDATES)
    for (period_start, period_end), user_ids in periods.items():
        repeated = {str(user_id) for user_id in user_ids if user_ids.count(user_id) > 1}
        if repeated:
            raise Conflict(
                f"Users listed more than once for period {period_start}-{period_end}. "
                f"User IDs: {', '.join(sorted(repeated))}"
            )

        query = live_filter(user_id={"$in": user_ids}, period_start=period_start, period_end=period_end)
        if exclude is not None:
            query["_id"] = {"$ne": exclude}
        existing = await candidates.find(
            query,
            {"user_id": 1},
            **_session_kwargs(session),
        ).to_list(length=None)
        if existing:
            raise Conflict(_candidacy_taken(period_start, period_end, (c["user_id"] for c in existing)))


def _candidacy_taken(period_start: int, period_end: int, user_ids: Iterable[Any]) -> str:
    return (
        f"User is already registered as a candidate for period {period_start}-{period_end}. "
        f"User IDs: {', '.join(str(user_id) for user_id in user_ids)}. "
        "Each user can only be a candidate for one position per period."
    )


async def _recheck_candidacy(db: Database, inserted: List[Dict[str, Any]], session=None) -> None:
    """Undo candidacies that raced another registration of the same user and period."""
    candidates = db.collection(Collection.CANDIDATES)
    for document in inserted:
        live = await candidates.count_documents(
            live_filter(
                user_id=document["user_id"],
                period_start=document["period_start"],
                period_end=document["period_end"],
            ),
            **_session_kwargs(session),
        )
        if live > 1:
            await candidates.delete_many(
                {"_id": {"$in": [doc["_id"] for doc in inserted]}}, **_session_kwargs(session)
            )
            logger.warning("Rolled back candidacy for user %s after a concurrent registration", document["user_id"])
            raise Conflict(_candidacy_taken(document["period_start"], document["period_end"], [document["user_id"]]))


async def check_vote_constraint(
    db: Database, user_id: Any, position_id: int, period_start: int, period_end: int
) -> bool:
    """Whether a live vote already exists for this user, position and period.

    A malformed `user_id` cannot own a vote, so it reads as False.
    """
    object_id = to_object_id(user_id)
    if object_id is None:
        return False
    existing = await db.collection(Collection.VOTES).find_one(
        live_filter(
            user_id=object_id,
            position_id=position_id,
            period_start=period_start,
            period_end=period_end,
        )
    )
    return existing is not None


async def _check_ballot(db: Database, data: Dict[str, Any]) -> None:
    """The vote must name a live candidate running for the same position and period."""
    candidate = await db.collection(Collection.CANDIDATES).find_one(
        live_filter(_id=to_object_id(data["candidate_id"]))
    )
    if candidate is None:
        raise NotFound("candidate not found")

    mismatched = [field for field in VOTE_TUPLE if candidate.get(field) != data[field]]
    if mismatched:
        raise ValidationFailed(f"Validation failed: vote does not match the candidate's {', '.join(mismatched)}")


async def _check_vote(db: Database, data: Dict[str, Any]) -> None:
    await _check_ballot(db, data)
    if await check_vote_constraint(db, data["user_id"], *(data[field] for field in VOTE_TUPLE)):
        raise Conflict("User has already voted for this position in this period")


async def create(db: Database, collection: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    spec = get_collection_spec(collection)
    validate_document(spec, data)

    if spec.name == Collection.CANDIDATES:
        await _ensure_no_candidacy(db, [data])
    elif spec.name == Collection.VOTES:
        await _check_vote(db, data)

    document = _prepare_document(spec, data, _now())
    documents = db.collection(spec.name)
    try:
        result = await documents.insert_one(document)
    except DuplicateKeyError:
        raise Conflict(DUPLICATE_ENTRY_MESSAGE)
    if spec.name == Collection.CANDIDATES:
        await _recheck_candidacy(db, [{**document, "_id": result.inserted_id}])

    logger.info("Created %s %s", spec.singular, result.inserted_id)
    return await documents.find_one({"_id": result.inserted_id})


async def update(db: Database, collection: Any, id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    spec = get_collection_spec(collection)
    object_id = to_object_id(id)
    if object_id is None:
        raise NotFound(f"{spec.singular} not found: invalid ID format")

    documents = db.collection(spec.name)
    existing = await documents.find_one(live_filter(_id=object_id))
    if existing is None:
        raise NotFound(f"{spec.singular} not found")

    patch = {key: value for key, value in data.items() if key not in IMMUTABLE_FIELDS}
    if not patch:
        raise ValidationFailed("No fields provided for update")

    merged = {key: value for key, value in {**existing, **patch}.items() if key != "_id"}
    validate_document(spec, merged)
    if spec.name == Collection.VOTES and any(field in patch for field in ("candidate_id",) + VOTE_TUPLE):
        await _check_ballot(db, merged)
    elif spec.name == Collection.CANDIDATES and any(field in patch for field in CANDIDACY_KEY):
        await _ensure_no_candidacy(db, [merged], exclude=object_id)

    patch = normalize_ids(patch)
    _parse_dates(spec, patch)
    patch["updated_at"] = _now()
    _hash_password(spec, patch)

    try:
        updated = await documents.find_one_and_update(
            live_filter(_id=object_id),
            {"$set": patch},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise Conflict(DUPLICATE_ENTRY_MESSAGE)

    if updated is None:
        raise NotFound(f"{spec.singular} not found")
    return updated


def _deletable(object_id) -> Dict[str, Any]:
    # admin accounts read as missing so their existence is not revealed
    return live_filter(_id=object_id, role={"$ne": "admin"})


async def soft_delete(db: Database, collection: Any, id: Any) -> Dict[str, str]:
    spec = get_collection_spec(collection)
    object_id = to_object_id(id)
    if object_id is None:
        raise NotFound(f"{spec.singular} not found: invalid ID format")

    now = _now()
    result = await db.collection(spec.name).update_one(
        _deletable(object_id), {"$set": {"deleted_at": now, "updated_at": now}}
    )
    if result.matched_count == 0:
        raise NotFound(f"{spec.singular} not found")

    logger.info("Soft-deleted %s %s", spec.singular, object_id)
    return {"message": f"{spec.singular} deleted successfully"}


async def hard_delete(db: Database, collection: Any, id: Any) -> Dict[str, str]:
    spec = get_collection_spec(collection)
    object_id = to_object_id(id)
    if object_id is None:
        raise NotFound(f"{spec.singular} not found: invalid ID format")

    result = await db.collection(spec.name).delete_one(_deletable(object_id))
    if result.deleted_count == 0:
        raise NotFound(f"{spec.singular} not found")

    logger.info("Hard-deleted %s %s", spec.singular, object_id)
    return {"message": f"{spec.singular} permanently deleted"}


async def bulk_create(db: Database, collection: Any, items: List[Dict[str, Any]]) -> Dict[str, Any]:
    spec = get_collection_spec(collection)
    if not isinstance(items, list) or not items:
        raise ValidationFailed("Request body must be a non-empty array")

    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationFailed(f"Item {index}: must be an object")
        try:
            validate_document(spec, item)
        except ValidationFailed as exc:
            raise ValidationFailed(f"Item {index}: {exc.message}")

    if spec.name == Collection.VOTES:
        for index, item in enumerate(items):
            try:
                await _check_vote(db, item)
            except (NotFound, ValidationFailed, Conflict) as exc:
                raise type(exc)(f"Item {index}: {exc.message}")

    documents = db.collection(spec.name)
    now = _now()
    try:
        async with db.transaction() as session:
            if spec.name == Collection.CANDIDATES:
                await _ensure_no_candidacy(db, items, session=session)
            prepared = [_prepare_document(spec, item, now) for item in items]
            result = await documents.insert_many(prepared, ordered=False, **_session_kwargs(session))
            if spec.name == Collection.CANDIDATES:
                inserted = [{**doc, "_id": _id} for doc, _id in zip(prepared, result.inserted_ids)]
                await _recheck_candidacy(db, inserted, session=session)
    except DuplicateKeyError:
        raise Conflict(DUPLICATE_ENTRY_MESSAGE)
    except BulkWriteError as exc:
        if _is_duplicate_key(exc):
            raise Conflict(DUPLICATE_ENTRY_MESSAGE)
        raise

    logger.info("Bulk created %d %s", len(result.inserted_ids), spec.name.value)
    return {
        "message": "Bulk create successful",
        "inserted_count": len(result.inserted_ids),
        "inserted_ids": result.inserted_ids,
    }


async def flush_delete(db: Database, collections: Iterable[Any]) -> Dict[str, Any]:
    """Hard-wipe whole collections, keeping admin users."""
    specs = [get_collection_spec(name) for name in collections]
    if not specs:
        raise ValidationFailed("At least one collection is required")

    details = []
    for spec in specs:
        query: Dict[str, Any] = {"role": {"$ne": "admin"}} if spec.name == Collection.USERS else {}
        try:
            result = await db.collection(spec.name).delete_many(query)
        except PyMongoError as exc:
            logger.error("Failed to flush %s: %s", spec.name.value, exc)
            details.append(
                {"collection": spec.name.value, "success": False, "deleted_count": 0, "message": str(exc)}
            )
            continue
        details.append(
            {
                "collection": spec.name.value,
                "success": True,
                "deleted_count": result.deleted_count,
                "message": f"{spec.name.value} flushed successfully",
            }
        )

    failed = [detail for detail in details if not detail["success"]]
    if failed:
        message = f"{len(failed)} of {len(details)} collections failed to flush"
    else:
        message = "All specified collections flushed successfully"
    return {"message": message, "details": details}
