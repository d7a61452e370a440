"""
MongoDB access helpers.

`db` is bound at import from DATABASE_URL / DATABASE_NAME; call `init_db`
to rebind it (the test suite hands in a mongomock client).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

db = None


def init_db(client=None, name: str = DATABASE_NAME):
    """Bind the module-level database handle and make sure indexes exist."""
    global db
    if client is None:
        client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = client[name]
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["order"].create_index([("user_id", ASCENDING)])
    db["order"].create_index([("product_id", ASCENDING)])
    logger.info("Database bound to %s", name)
    return db


def get_db():
    if db is None:
        init_db()
    return db


def to_object_id(value: Union[str, ObjectId]) -> Optional[ObjectId]:
    """Parse an identifier, returning None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="python")
    now = datetime.now(timezone.utc)
    data = {**data, "created_at": now, "updated_at": now}
    result = get_db()[collection_name].insert_one(data)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> list:
    cursor = get_db()[collection_name].find(filter_dict or {}).sort("created_at", -1)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def doc_to_dict(doc: dict) -> dict:
    """Make a stored document JSON friendly: ObjectIds to str, `_id` to `id`."""
    out: dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, datetime):
            out[k] = v.isoformat()
        elif isinstance(v, dict):
            out[k] = doc_to_dict(v)
        else:
            out[k] = v
    if "_id" in out:
        out["id"] = out.pop("_id")
    return out
