import asyncio
import logging
from typing import Any, Dict, List, NamedTuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError

from database import Database, live_filter
from errors import InvalidCollection
from schemas import CollectionSpec, FieldType, get_collection_spec

logger = logging.getLogger(__name__)


class Relation(NamedTuple):
    field: str
    collection: str
    embed_as: str
    by_object_id: bool


def relation_fields(spec: CollectionSpec) -> List[Relation]:
    """Foreign-key-like fields of a collection: `user_id` -> `users` embedded as `user`."""
    relations = []
    for field, field_spec in spec.fields.items():
        if not field.endswith("_id"):
            continue
        if field_spec.type not in (FieldType.OBJECT_ID, FieldType.NUMBER):
            continue
        collection = field[:-3]
        if not collection.endswith("s"):
            collection += "s"
        relations.append(
            Relation(
                field=field,
                collection=collection,
                embed_as=collection[:-1],
                by_object_id=field_spec.type == FieldType.OBJECT_ID,
            )
        )
    return relations


async def _fetch_related(db: Database, relation: Relation, value: Any):
    related_spec = get_collection_spec(relation.collection)
    if relation.by_object_id:
        query = live_filter(_id=ObjectId(value))
    else:
        # numeric references match the same field in the related collection
        query = live_filter(**{relation.field: value})
    projection = {field: 0 for field in related_spec.hidden_fields} or None
    return await db.collection(related_spec.name).find_one(query, projection)


async def _populate_document(
    db: Database, spec: CollectionSpec, document: Dict[str, Any], relations: List[Relation]
) -> Dict[str, Any]:
    populated = dict(document)
    for relation in relations:
        value = document.get(relation.field)
        if value is None:
            continue
        try:
            related = await _fetch_related(db, relation, value)
        except (InvalidCollection, InvalidId, TypeError, PyMongoError) as exc:
            logger.warning(
                "Failed to populate %s for %s %s: %s",
                relation.field, spec.singular, document.get("_id"), exc,
            )
            continue
        if related is None:
            logger.warning(
                "No live %s matches %s=%s on %s %s",
                relation.embed_as, relation.field, value, spec.singular, document.get("_id"),
            )
            continue
        populated[relation.embed_as] = related
    return populated


async def populate_relations(db: Database, spec: CollectionSpec, documents: List[Dict[str, Any]]):
    if not documents:
        return documents
    relations = relation_fields(spec)
    if not relations:
        return documents
    return list(
        await asyncio.gather(*(_populate_document(db, spec, doc, relations) for doc in documents))
    )
