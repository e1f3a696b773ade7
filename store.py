# store.py
"""
MongoDB access for every component.

All state lives in one database; each component owns one collection.
Uniqueness and expiry are enforced by indexes so that concurrent writers
can rely on single-document atomicity instead of process locks.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config

# Child logger (parent configured in bot.py)
logger = logging.getLogger("orion.store")

COL_CODES = "codes"
COL_LINKS = "links"
COL_PRODUCTS = "products"
COL_ENTITLEMENTS = "entitlements"
COL_FLAGS = "flags"

_lock = threading.Lock()
_db: Optional[Database] = None


def ensure_indexes(db: Database) -> None:
    """Create the indexes the invariants depend on. Safe to call repeatedly."""
    db[COL_CODES].create_index([("code", ASCENDING)], unique=True)
    db[COL_CODES].create_index([("game_account_id", ASCENDING)])
    db[COL_CODES].create_index(
        [("created_at", ASCENDING)], expireAfterSeconds=config.CODE_TTL_SECONDS
    )

    db[COL_LINKS].create_index([("game_account_id", ASCENDING)], unique=True)
    db[COL_LINKS].create_index([("chat_account_id", ASCENDING), ("linked_at", DESCENDING)])

    db[COL_PRODUCTS].create_index([("external_product_id", ASCENDING)], unique=True)
    db[COL_PRODUCTS].create_index([("hub", ASCENDING)])

    db[COL_ENTITLEMENTS].create_index(
        [("game_account_id", ASCENDING), ("product_id", ASCENDING)], unique=True
    )
    db[COL_ENTITLEMENTS].create_index([("product_id", ASCENDING)])
    logger.info(f"indexes:ok db='{db.name}'")


def get_db() -> Database:
    global _db
    with _lock:
        if _db is None:
            client = MongoClient(config.MONGO_URL, tz_aware=True)
            db = client[config.MONGO_DB]
            ensure_indexes(db)
            _db = db
            logger.info(f"connect:ok db='{config.MONGO_DB}'")
        return _db


def use_database(db: Database) -> Database:
    """Point every component at `db` (an alternate cluster, or an in-memory one)."""
    global _db
    ensure_indexes(db)
    with _lock:
        _db = db
    return db


def collection(name: str):
    return get_db()[name]

