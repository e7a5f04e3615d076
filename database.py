"""
MongoDB helpers.

The database handle is built once by the entry point (connect) and passed to
every service; nothing in this module holds a global client.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import Settings
from errors import ValidationError

logger = logging.getLogger(__name__)

ACCOUNTS = "accounts"
LISTINGS = "listings"
TUTOR_PROFILES = "tutorProfiles"
APPLICATIONS = "applications"
PAYMENTS = "payments"
COLLECTIONS = (ACCOUNTS, LISTINGS, TUTOR_PROFILES, APPLICATIONS, PAYMENTS)


def connect(settings: Settings) -> MongoClient:
    timeout = settings.db_timeout_ms
    return MongoClient(
        settings.database_url,
        serverSelectionTimeoutMS=timeout,
        connectTimeoutMS=timeout,
        socketTimeoutMS=timeout,
        tz_aware=True,
    )


def ensure_indexes(db: Database) -> None:
    db[ACCOUNTS].create_index([("email", ASCENDING)], unique=True)
    db[ACCOUNTS].create_index([("role", ASCENDING)])
    db[TUTOR_PROFILES].create_index([("email", ASCENDING)], unique=True)
    db[LISTINGS].create_index([("created_at", DESCENDING)])
    db[APPLICATIONS].create_index([("tuition_id", ASCENDING), ("tutor_email", ASCENDING)], unique=True)
    db[PAYMENTS].create_index([("transaction_id", ASCENDING)], unique=True)
    logger.info(f"Indexes ensured on {db.name}")


def now() -> datetime:
    return datetime.now(timezone.utc)


def oid(val: Any) -> ObjectId:
    if isinstance(val, ObjectId):
        return val
    try:
        return ObjectId(str(val))
    except Exception:
        raise ValidationError("Invalid id format")


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Replace the ObjectId `_id` with a string `id` so the document is JSON friendly."""
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    else:
        data = dict(data)
    stamp = now()
    data.setdefault("created_at", stamp)
    data["updated_at"] = stamp
    result = db[collection_name].insert_one(data)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[List] = None,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(doc) for doc in cursor]


def get_document(db: Database, collection_name: str, doc_id: Any) -> Optional[Dict[str, Any]]:
    return db[collection_name].find_one({"_id": oid(doc_id)})


def update_document(db: Database, collection_name: str, doc_id: Any, changes: Dict[str, Any]) -> int:
    changes = dict(changes)
    changes["updated_at"] = now()
    result = db[collection_name].update_one({"_id": oid(doc_id)}, {"$set": changes})
    return result.matched_count
