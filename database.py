"""
MongoDB access for the Sparrow API.

The connection is opened from DATABASE_URL / DATABASE_NAME. When either is
missing ``db`` stays None and the API reports the database as unavailable.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL
from errors import NotFound

logger = logging.getLogger(__name__)

_client = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    stamp = now()
    data_dict.setdefault("created_at", stamp)
    data_dict["updated_at"] = stamp
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def oid(value: str, what: str = "Document") -> ObjectId:
    """Parse a string id; malformed ids are reported as not found."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def find_by_id(database: Database, collection_name: str, doc_id: str, what: str = "Document", projection=None) -> dict:
    doc = database[collection_name].find_one({"_id": oid(doc_id, what)}, projection)
    if not doc:
        raise NotFound(f"{what} not found")
    return doc


def to_public(doc: Any):
    """Make a stored document JSON friendly.

    ``_id`` becomes ``id``, ObjectIds become strings and credentials are dropped,
    recursively through populated sub-documents.
    """
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, list):
        return [to_public(item) for item in doc]
    if not isinstance(doc, dict):
        return doc
    d = {}
    for key, value in doc.items():
        if key == "password_hash":
            continue
        if key == "_id":
            d["id"] = str(value)
            continue
        d[key] = to_public(value)
    return d


def paginate(page: int, limit: int, total: int, returned: int, label: str) -> dict:
    skip = (page - 1) * limit
    return {
        "current_page": page,
        "total_pages": (total + limit - 1) // limit,
        f"total_{label}": total,
        "has_more": skip + returned < total,
    }


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["user"].create_index("username", unique=True)
    database["conversation"].create_index("participant_key", unique=True)
    database["conversation"].create_index("participants")
    database["message"].create_index([("conversation", ASCENDING), ("created_at", DESCENDING)])
    database["message"].create_index("sender")
    database["notification"].create_index([("to_user", ASCENDING), ("created_at", DESCENDING)])
    database["notification"].create_index([("from_user", ASCENDING), ("to_user", ASCENDING), ("type", ASCENDING)])
    database["post"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])
    logger.info("Indexes ensured on %s", database.name)
