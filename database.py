"""
Database Helper Functions

MongoDB helpers used by the API. Per-instance collections (tiers, listings,
...) are stored as whole JSON blobs under "{resource}:{appId}" keys in the
"kv" collection; accounts, jobs and messages are regular documents.
"""

import json
import os
from datetime import datetime, timezone
from typing import Any, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument

# Load environment variables from .env file
load_dotenv()

KV_COLLECTION = "kv"

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


class DatabaseUnavailable(Exception):
    pass


def _db():
    if db is None:
        raise DatabaseUnavailable("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def _now():
    return datetime.now(timezone.utc)


def utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """MongoDB keeps naive UTC datetimes; normalise before storing or querying."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _is_live(doc: dict) -> bool:
    expires_at = doc.get("expires_at")
    if expires_at is None:
        return True
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at > _now()


# ---------- Key/value blobs ----------

def read_blob(key: str, default: Any = None) -> Any:
    """Return the decoded value stored under key, or default when absent/expired."""
    doc = _db()[KV_COLLECTION].find_one({"_id": key})
    if not doc or not _is_live(doc):
        return default
    return json.loads(doc["value"])


def write_blob(key: str, value: Any, expires_at: Optional[datetime] = None):
    update = {"value": json.dumps(value), "updated_at": _now(), "expires_at": utc_naive(expires_at)}
    _db()[KV_COLLECTION].update_one({"_id": key}, {"$set": update}, upsert=True)


def delete_blob(key: str):
    _db()[KV_COLLECTION].delete_one({"_id": key})


def increment_counter(key: str, field: str, by: int = 1) -> int:
    """Bump a named counter inside the hash-like document stored at key."""
    doc = _db()[KV_COLLECTION].find_one_and_update(
        {"_id": key},
        {"$inc": {f"counts.{field}": by}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return doc["counts"][field]


def read_counter(key: str, field: str) -> int:
    doc = _db()[KV_COLLECTION].find_one({"_id": key}) or {}
    return (doc.get("counts") or {}).get(field, 0)


def clear_counter(key: str, field: str):
    _db()[KV_COLLECTION].update_one({"_id": key}, {"$unset": {f"counts.{field}": ""}})


# ---------- Documents ----------

def create_document(collection_name: str, data: Union[BaseModel, dict]):
    """Insert a single document with timestamp"""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    data_dict["created_at"] = _now()
    data_dict["updated_at"] = _now()

    result = _db()[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: dict = None, limit: int = None):
    """Get documents from collection"""
    cursor = _db()[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def update_document(collection_name: str, doc_id, changes: dict) -> int:
    changes = dict(changes, updated_at=_now())
    res = _db()[collection_name].update_one({"_id": doc_id}, {"$set": changes})
    return res.matched_count
