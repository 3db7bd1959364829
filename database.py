import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from pymongo import MongoClient, UpdateOne
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv

# Load environment variables if present
load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "examresults")

client = None
_db = None

try:
    client = MongoClient(DATABASE_URL)
    _db = client[DATABASE_NAME]
except Exception as e:
    logger.error("Failed to create MongoDB client: %s", e)
    client = None
    _db = None

# Expose db for other modules
db = _db


class DatabaseUnavailable(RuntimeError):
    pass


def _require_db():
    if db is None:
        raise DatabaseUnavailable("Database not initialized")
    return db


def _to_str_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    if doc.get("_id") is not None:
        doc["id"] = str(doc["_id"])
        del doc["_id"]
    return doc


def _id_query(doc_id: str) -> Dict[str, Any]:
    # Documents created here get ObjectIds, upserted ones keep their string ids
    try:
        return {"_id": {"$in": [ObjectId(doc_id), doc_id]}}
    except (InvalidId, TypeError):
        return {"_id": doc_id}


def create_document(collection_name: str, data: Dict[str, Any]) -> str:
    store = _require_db()
    data = dict(data)
    now = datetime.utcnow()
    if "created_at" not in data:
        data["created_at"] = now
    data["updated_at"] = now
    result = store[collection_name].insert_one(data)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: int = 100,
    sort: Optional[Sequence[Tuple[str, int]]] = None,
) -> List[Dict[str, Any]]:
    store = _require_db()
    filter_dict = filter_dict or {}
    cursor = store[collection_name].find(filter_dict)
    if sort:
        cursor = cursor.sort(list(sort))
    cursor = cursor.limit(int(limit))
    return [_to_str_id(doc) for doc in cursor]


def get_document_by_id(collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
    store = _require_db()
    doc = store[collection_name].find_one(_id_query(doc_id))
    return _to_str_id(doc) if doc else None


def upsert_document(collection_name: str, doc_id: str, data: Dict[str, Any]) -> str:
    """Merge ``data`` into the document with string id ``doc_id``, creating it if needed."""
    store = _require_db()
    data = dict(data)
    now = datetime.utcnow()
    created_at = data.pop("created_at", now)
    data["updated_at"] = now
    store[collection_name].update_one(
        {"_id": doc_id},
        {"$set": data, "$setOnInsert": {"created_at": created_at}},
        upsert=True,
    )
    return doc_id


def delete_document(collection_name: str, doc_id: str) -> bool:
    store = _require_db()
    result = store[collection_name].delete_one(_id_query(doc_id))
    return result.deleted_count > 0


def delete_documents(collection_name: str, filter_dict: Dict[str, Any]) -> int:
    store = _require_db()
    result = store[collection_name].delete_many(filter_dict)
    return result.deleted_count


def upsert_documents(collection_name: str, items: Sequence[Tuple[str, Dict[str, Any]]]) -> int:
    """Bulk form of ``upsert_document``; returns the number of documents written."""
    store = _require_db()
    if not items:
        return 0
    now = datetime.utcnow()
    ops = []
    for doc_id, data in items:
        data = dict(data)
        created_at = data.pop("created_at", now)
        data["updated_at"] = now
        ops.append(UpdateOne(
            {"_id": doc_id},
            {"$set": data, "$setOnInsert": {"created_at": created_at}},
            upsert=True,
        ))
    result = store[collection_name].bulk_write(ops, ordered=False)
    return result.upserted_count + result.matched_count


def count_by_field(
    collection_name: str, field: str, filter_dict: Optional[Dict[str, Any]] = None
) -> Dict[str, int]:
    """Number of documents per distinct value of ``field``."""
    store = _require_db()
    pipeline = [
        {"$match": filter_dict or {}},
        {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
    ]
    return {str(row["_id"]): row["count"] for row in store[collection_name].aggregate(pipeline) if row["_id"] is not None}
