"""
MongoDB access for the game store.

The connection is configured from DATABASE_URL / DATABASE_NAME (a .env file is
honoured). When either is missing `db` stays None and the API reports the
database as unavailable.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient

from errors import BadRequestError

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def utcnow() -> datetime:
    # Naive UTC, the same shape pymongo hands back from the server.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Any, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise BadRequestError(f"Invalid {label} format.")


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)

    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now

    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def paginate(database, collection_name: str, page: int = 1, limit: int = 10,
             filter_dict: Optional[dict] = None, sort_field: str = "updated_at") -> Dict[str, Any]:
    """Page through a collection, newest first."""
    page = max(1, page)
    limit = max(1, limit)
    filter_dict = filter_dict or {}

    total = database[collection_name].count_documents(filter_dict)
    cursor = (
        database[collection_name]
        .find(filter_dict)
        .sort(sort_field, -1)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {
        "result": list(cursor),
        "total_pages": (total + limit - 1) // limit,
        "current_page": page,
    }


def to_str_id(doc):
    """Recursively turn ObjectIds into strings, exposing `_id` as `id`."""
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, list):
        return [to_str_id(v) for v in doc]
    if isinstance(doc, dict):
        d = {}
        for key, value in doc.items():
            if key == "_id":
                d["id"] = to_str_id(value)
            else:
                d[key] = to_str_id(value)
        return d
    return doc
