"""
MongoDB connection shared by the API.

`db` stays None when DATABASE_URL / DATABASE_NAME are not set, in which case
the file-backed stores are used instead.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from pymongo import MongoClient

from config import Config

logger = logging.getLogger(__name__)

_client = None
db = None

if Config.DATABASE_URL and Config.DATABASE_NAME:
    _client = MongoClient(Config.DATABASE_URL)
    db = _client[Config.DATABASE_NAME]
    logger.info("MongoDB configured: %s", Config.DATABASE_NAME)


def create_document(collection_name: str, data, database=None) -> str:
    """Insert a pydantic model or dict, stamping created_at/updated_at."""
    database = database if database is not None else db
    if database is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")

    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True)
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("createdAt", now)
    doc.setdefault("updatedAt", now)

    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  sort: Optional[list] = None, database=None) -> list:
    database = database if database is not None else db
    if database is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")

    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
