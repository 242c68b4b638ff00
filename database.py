"""
MongoDB access

A single client is opened at import time when DATABASE_URL is configured.
Route handlers receive the database through `Depends(get_db)` so tests can swap
in an in-memory one.
"""

import logging
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import get_settings
from errors import ServiceUnavailableError, ValidationError

logger = logging.getLogger(__name__)

_settings = get_settings()
client: Optional[MongoClient] = (
    MongoClient(_settings.database_url) if _settings.database_url else None
)
db: Optional[Database] = client[_settings.database_name] if client is not None else None


def get_db() -> Database:
    if db is None:
        raise ServiceUnavailableError("Database is not configured")
    return db


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands datetimes back naive; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def as_datetime(value: Union[date, datetime]) -> datetime:
    """
    BSON has no date type, so calendar dates are stored at midnight UTC.
    Returned naive, the way Mongo returns stored values, so range queries
    and comparisons against stored dates line up.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    return datetime.combine(value, time.min)


def oid(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except Exception:
        raise ValidationError("Invalid id")


def maybe_oid(id_str: Any) -> Optional[ObjectId]:
    if isinstance(id_str, ObjectId):
        return id_str
    if id_str is not None and ObjectId.is_valid(str(id_str)):
        return ObjectId(str(id_str))
    return None


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = data
    now = utc_now()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    sort: Optional[list] = None,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    cursor = cursor.sort(sort or [("created_at", DESCENDING)])
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def touch(db: Database, collection_name: str, _id: ObjectId, fields: dict) -> None:
    fields = dict(fields)
    fields["updated_at"] = utc_now()
    db[collection_name].update_one({"_id": _id}, {"$set": fields})


def serialize(value: Any) -> Any:
    """Make a Mongo document JSON friendly: `_id` becomes `id`, ObjectIds become strings."""
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if key == "_id":
                out["id"] = str(item)
            else:
                out[key] = serialize(item)
        return out
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    return value


def ensure_indexes(db: Database) -> None:
    db["user"].create_index("email", unique=True)
    db["session"].create_index("token", unique=True)
    db["cart"].create_index("user", unique=True)
    db["order"].create_index("order_number", unique=True)
    db["order"].create_index([("customer", ASCENDING), ("created_at", DESCENDING)])
    db["listing"].create_index([("farmer", ASCENDING), ("status", ASCENDING)])
    db["rental_booking"].create_index(
        [("item", ASCENDING), ("start_date", ASCENDING), ("end_date", ASCENDING)]
    )
    db["delivery"].create_index("order")
    db["delivery_review"].create_index(
        [("delivery", ASCENDING), ("reviewer", ASCENDING)], unique=True
    )
    db["activity"].create_index([("farmer", ASCENDING), ("created_at", DESCENDING)])
    db["buyer_activity"].create_index([("buyer", ASCENDING), ("created_at", DESCENDING)])
    logger.debug("Indexes ensured on %s", db.name)
