"""
MongoDB access.

``db`` is the process-wide database handle; handlers receive it through
``Depends(get_db)`` so tests can point them at an in-memory database.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import get_settings

_settings = get_settings()
client = MongoClient(_settings.database_url, serverSelectionTimeoutMS=5000, tz_aware=True)
db = client[_settings.database_name]


def get_db() -> Database:
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse ``value`` as an ObjectId, returning None when it is not one."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def _plain(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def serialize_doc(doc):
    """Make a Mongo document JSON-friendly: ``_id`` becomes ``id``, ids and dates become strings."""
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    return {k: _plain(v) for k, v in doc.items()}


def create_document(
    collection_name: str,
    data: Union[BaseModel, Dict[str, Any]],
    database: Optional[Database] = None,
    session=None,
) -> str:
    """Insert ``data`` with created/updated timestamps and return the new id."""
    if isinstance(data, BaseModel):
        payload = data.model_dump()
    else:
        payload = dict(data)
    stamp = now_utc()
    payload.setdefault("created_at", stamp)
    payload["updated_at"] = stamp
    database = db if database is None else database
    result = database[collection_name].insert_one(payload, **session_kwargs(session))
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    database: Optional[Database] = None,
    sort=None,
) -> List[dict]:
    database = db if database is None else database
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def session_kwargs(session) -> dict:
    """Keyword arguments threading an optional client session into a call."""
    return {"session": session} if session is not None else {}


@contextmanager
def transaction(database: Database, enabled: bool):
    """
    Yield a client session inside a multi-document transaction, or None.

    Transactions need a replica set; with ``enabled`` false the caller runs
    its writes unsessioned and is responsible for compensating on failure.
    """
    if not enabled:
        yield None
        return
    with database.client.start_session() as session:
        with session.start_transaction():
            yield session


def ensure_indexes(database: Database) -> None:
    database["cart"].create_index([("user", ASCENDING)], unique=True)
    database["pendingorder"].create_index([("user", ASCENDING)], unique=True)
    database["order"].create_index([("customOrderId", ASCENDING)], unique=True)
    database["order"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index(
        [("payment.gatewayPaymentId", ASCENDING)],
        unique=True,
        partialFilterExpression={"payment.gatewayPaymentId": {"$exists": True}},
    )
