"""
MongoDB access for the marketplace.

A single client is created from DATABASE_URL / DATABASE_NAME. Endpoints get the
database through the `get_db` dependency so tests can swap it out.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

import config
from helpers import now

logger = logging.getLogger(__name__)

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = _client[config.DATABASE_NAME]
else:
    logger.warning("DATABASE_URL / DATABASE_NAME not set, database unavailable")


def get_db():
    if db is None:
        raise RuntimeError("Database not configured")
    return db


def create_document(database, collection_name: str, data) -> Dict[str, Any]:
    """Insert a document, stamping created_at/updated_at. Returns the stored dict."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    stamp = now()
    doc["created_at"] = stamp
    doc["updated_at"] = stamp
    result = database[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, sort=None):
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database) -> None:
    for account in ("user", "collector", "vendor", "admin"):
        database[account].create_index("email", unique=True)
    database["reward_redemption"].create_index("redemption_code", unique=True)
    database["reward_redemption"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["badge"].create_index("name", unique=True)
    database["vendor_pricing"].create_index("vendor_id", unique=True)
    database["collector_purchase_request"].create_index([("offer_id", ASCENDING), ("status", ASCENDING)])
    database["waste_purchase"].create_index([("offer_id", ASCENDING), ("status", ASCENDING)])
    database["user_waste_offer"].create_index([("waste_type", ASCENDING), ("status", ASCENDING)])
    database["waste_offer"].create_index([("status", ASCENDING), ("expires_at", ASCENDING)])
    database["waste_transaction"].create_index([("collector_id", ASCENDING), ("created_at", DESCENDING)])
    database["ledger"].create_index([("account_id", ASCENDING), ("field", ASCENDING)])
