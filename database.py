"""
MongoDB access for the Book Club API.

The connection is configured from DATABASE_URL and DATABASE_NAME. When either is
missing `db` stays None and every helper raises, so the API can still boot and
report its state on /test.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


class DatabaseNotAvailable(RuntimeError):
    pass


def _collection(collection_name: str):
    if db is None:
        raise DatabaseNotAvailable("Database not available. Set DATABASE_URL and DATABASE_NAME.")
    return db[collection_name]


def collection(collection_name: str):
    """Raw collection handle, used by listeners that need `watch()`."""
    return _collection(collection_name)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def object_id(doc_id: Any) -> Any:
    """Turn a path id back into the stored `_id`. Non-ObjectId ids pass through."""
    if isinstance(doc_id, ObjectId):
        return doc_id
    try:
        return ObjectId(doc_id)
    except (InvalidId, TypeError):
        return doc_id


def ensure_indexes() -> None:
    """Unique constraints the API relies on."""
    _collection("user").create_index("username", unique=True)
    _collection("user").create_index("email", unique=True, sparse=True)
    _collection("session").create_index("token", unique=True)
    _collection("post").create_index([("created_at", DESCENDING)])
    _collection("thread").create_index([("group_id", ASCENDING), ("created_at", DESCENDING)])
    _collection("reply").create_index([("thread_id", ASCENDING), ("created_at", ASCENDING)])
    logger.info("Indexes ensured on database %s", db.name)


def create_document(collection_name: str, data: Union[BaseModel, dict], doc_id: Any = None) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    now = _now()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    if doc_id is not None:
        data_dict["_id"] = doc_id
    result = _collection(collection_name).insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
) -> List[dict]:
    cursor = _collection(collection_name).find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document(collection_name: str, doc_id: Any) -> Optional[dict]:
    return _collection(collection_name).find_one({"_id": object_id(doc_id)})


def update_document(collection_name: str, doc_id: Any, update: Dict[str, Any], touch: bool = True) -> Optional[dict]:
    """
    Apply a MongoDB update to one document and return it after the update.

    `update` is a raw update document (`{"$set": ...}`, `{"$addToSet": ...}`).
    With `touch` the document's updated_at is refreshed too.
    """
    update = {op: dict(fields) for op, fields in update.items()}
    if touch:
        update.setdefault("$set", {})["updated_at"] = _now()
    return _collection(collection_name).find_one_and_update(
        {"_id": object_id(doc_id)},
        update,
        return_document=ReturnDocument.AFTER,
    )


def increment(collection_name: str, doc_id: Any, field: str, amount: int = 1) -> Optional[dict]:
    """Atomic counter change; the store applies `$inc` server side."""
    return update_document(collection_name, doc_id, {"$inc": {field: amount}}, touch=False)


def delete_documents(collection_name: str, filter_dict: dict) -> int:
    result = _collection(collection_name).delete_many(filter_dict)
    return result.deleted_count
