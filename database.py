"""
MongoDB access helpers.

The connection is opened lazily from ``DATABASE_URL``/``DATABASE_NAME``.
Route handlers receive the database through the ``get_db`` dependency so the
test-suite can swap in another database with ``app.dependency_overrides``.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

import settings
from errors import ConcurrentModification, ServerError, ValidationError

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None


def connect() -> Database:
    global _client, db
    if db is not None:
        return db
    if not settings.DATABASE_URL:
        raise RuntimeError("DATABASE_URL is not set")
    logger.info("Connecting to MongoDB database %s", settings.DATABASE_NAME)
    _client = MongoClient(settings.DATABASE_URL, tz_aware=True)
    # fail fast when the server is unreachable
    _client.admin.command("ping")
    db = _client[settings.DATABASE_NAME]
    return db


def close() -> None:
    global _client, db
    if _client is not None:
        _client.close()
    _client = None
    db = None


def get_db() -> Database:
    if db is None:
        raise ServerError("Database not configured")
    return db


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index([("role", ASCENDING)])
    database["user"].create_index([("providerDetails.verificationStatus", ASCENDING)])
    database["user"].create_index([("providerDetails.isVerified", ASCENDING)])
    database["job"].create_index([("category", ASCENDING), ("status", ASCENDING)])
    database["job"].create_index([("location.city", ASCENDING)])
    database["job"].create_index([("client", ASCENDING)])
    database["job"].create_index([("createdAt", DESCENDING)])


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError("Invalid ID format")


def to_public_id(doc):
    """Make a stored document JSON-ready: ``_id`` -> ``id``, ObjectIds and datetimes to strings."""
    if isinstance(doc, dict):
        d = {}
        for k, v in doc.items():
            if k == "_id":
                d["id"] = str(v)
            else:
                d[k] = to_public_id(v)
        return d
    if isinstance(doc, list):
        return [to_public_id(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        if doc.tzinfo is None:
            doc = doc.replace(tzinfo=timezone.utc)
        return doc.astimezone(timezone.utc).isoformat()
    return doc


def create_document(database: Database, collection_name: str, data: Dict[str, Any]) -> ObjectId:
    doc = dict(data)
    stamp = now()
    doc.setdefault("createdAt", stamp)
    doc["updatedAt"] = stamp
    doc["revision"] = 0
    return database[collection_name].insert_one(doc).inserted_id


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[Iterable] = None,
    skip: int = 0,
    limit: Optional[int] = None,
    projection: Optional[Dict[str, Any]] = None,
):
    cursor = database[collection_name].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(list(sort))
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def update_document(
    database: Database,
    collection_name: str,
    doc: Dict[str, Any],
    set_fields: Optional[Dict[str, Any]] = None,
    unset_fields: Iterable[str] = (),
) -> Dict[str, Any]:
    """Write changes to a previously loaded document.

    The write only applies if the stored ``revision`` still matches the one
    that was loaded; otherwise another request got there first.
    """
    revision = doc.get("revision")
    query: Dict[str, Any] = {"_id": doc["_id"]}
    query["revision"] = revision if revision is not None else {"$exists": False}

    update: Dict[str, Any] = {
        "$set": {**(set_fields or {}), "updatedAt": now()},
        "$inc": {"revision": 1},
    }
    unset = {field: "" for field in unset_fields}
    if unset:
        update["$unset"] = unset

    updated = database[collection_name].find_one_and_update(
        query, update, return_document=ReturnDocument.AFTER
    )
    if updated is None:
        logger.warning("Revision conflict on %s %s", collection_name, doc["_id"])
        raise ConcurrentModification()
    return updated


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
