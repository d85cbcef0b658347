"""
MongoDB access for the portal.

One collection per schema in `schemas.py`; the collection name is the
lowercase class name (User -> "user", Task -> "task", ...).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from .errors import DatabaseUnavailableError, ValidationError
from .settings import settings

logger = logging.getLogger("iqac.database")

client: Optional[MongoClient] = None
db: Optional[Database] = None


def connect() -> Database:
    """Open the process-wide client once and make sure indexes exist"""
    global client, db
    if db is not None:
        return db
    client = MongoClient(settings.DATABASE_URL, serverSelectionTimeoutMS=settings.DATABASE_TIMEOUT_MS)
    db = client[settings.DATABASE_NAME]
    ensure_indexes(db)
    logger.info(f"Connected to MongoDB database '{settings.DATABASE_NAME}'")
    return db


def disconnect() -> None:
    global client, db
    if client is not None:
        client.close()
        logger.info("MongoDB connection closed")
    client = None
    db = None


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["user"].create_index("username", unique=True)
    database["task"].create_index("assignedToInitiator")
    database["task"].create_index("assignedToReviewer")
    database["task"].create_index([("courseCode", ASCENDING), ("status", ASCENDING)])
    database["notification"].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    database["file"].create_index("fileID")
    database["file"].create_index("metadata.assignmentId")
    database["file"].create_index([("metadata.category", ASCENDING), ("metadata.isLatest", ASCENDING)])
    database["file"].create_index([("metadata.uploadedAt", DESCENDING)])
    database["course"].create_index("courseId", unique=True)
    database["course"].create_index([("courseCode", ASCENDING), ("year", ASCENDING)])


def get_db() -> Database:
    if db is None:
        raise DatabaseUnavailableError()
    return db


# ----------------------
# Helpers
# ----------------------

def now() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except (InvalidId, TypeError):
        raise ValidationError("Invalid id", details={"id": str(id_str)})


def clean(doc: Any) -> Any:
    """Make a stored document JSON friendly: `_id` -> `id`, ObjectIds to str, datetimes to ISO"""
    if isinstance(doc, list):
        return [clean(item) for item in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    if not isinstance(doc, dict):
        return doc
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        else:
            out[k] = clean(v)
    return out


def create_document(collection_name: str, data: Dict[str, Any]) -> str:
    """Insert a document stamped with createdAt/updatedAt and return its id"""
    database = get_db()
    stamp = now()
    doc = dict(data)
    doc.setdefault("createdAt", stamp)
    doc["updatedAt"] = stamp
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[List[tuple]] = None,
    skip: int = 0,
) -> List[Dict[str, Any]]:
    database = get_db()
    cursor = database[collection_name].find(filter_dict or {})
    cursor = cursor.sort(sort or [("createdAt", DESCENDING)])
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document(collection_name: str, doc_id: Any) -> Optional[Dict[str, Any]]:
    return get_db()[collection_name].find_one({"_id": oid(doc_id)})
