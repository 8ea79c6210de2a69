"""
Database helpers

A single MongoDB client is created at import time from DATABASE_URL /
DATABASE_NAME. Every collection is named after the lowercase schema class
(MockTest -> "mocktest", Attempt -> "attempt").
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "mock_tests")

_client: Optional[MongoClient] = None
db: Optional[Database] = None

try:
    # connect=False keeps import cheap; the first query opens the socket
    _client = MongoClient(DATABASE_URL, connect=False, tz_aware=True)
    db = _client[DATABASE_NAME]
except Exception as e:
    logger.error("Could not configure MongoDB client: %s", e)
    db = None


def use_database(database: Database) -> None:
    """Point the module-level handle at another database (tests, scripts)."""
    global db
    db = database


def get_db() -> Database:
    if db is None:
        raise RuntimeError("Database not configured")
    return db


def ensure_indexes() -> None:
    database = get_db()
    # at most one in-progress attempt per user and test
    database["attempt"].create_index(
        [("user_id", ASCENDING), ("test_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"is_completed": False},
        name="one_open_attempt",
    )
    database["attempt"].create_index([("test_id", ASCENDING), ("score", DESCENDING)])
    database["attempt"].create_index("is_completed")
    database["mocktest"].create_index("slug")


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = get_db()[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    skip: int = 0,
    sort: Optional[List] = None,
) -> List[Dict[str, Any]]:
    cursor = get_db()[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
