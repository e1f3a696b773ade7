# ledger.py
"""
Entitlement ledger: which Roblox account owns which product.

Key features
------------
- One row per (game_account_id, product_id), backed by a unique index
- `grant` is insert-if-absent and reports whether the row is new
- `revoke` is idempotent; revoking something not owned is not an error
- Cascade helper for product deletion

Storage format
--------------
entitlements collection:
{
  "game_account_id": "500100",
  "product_id": "65f0c0ffee...",
  "source": "purchase",
  "granted_at": ISODate(...)
}
"""

from __future__ import annotations

import logging
from typing import List

from pymongo.errors import DuplicateKeyError

import store
from errors import require
from schemas import Entitlement, utcnow

# Child logger (parent configured in bot.py)
logger = logging.getLogger("orion.ledger")


def _rows():
    return store.collection(store.COL_ENTITLEMENTS)


def _k(game_account_id, product_id) -> dict:
    return {
        "game_account_id": require(game_account_id, "userId"),
        "product_id": require(product_id, "productId"),
    }


# ---------------- Core API ----------------
def grant(game_account_id, product_id, source: str = "grant") -> bool:
    """Record ownership. Returns True if a new row was created, False if already owned."""
    key = _k(game_account_id, product_id)
    row = Entitlement(**key, source=source, granted_at=utcnow()).model_dump(exclude=set(key))
    try:
        res = _rows().update_one(key, {"$setOnInsert": row}, upsert=True)
    except DuplicateKeyError:
        # lost an upsert race; the other writer created the row
        logger.info(f"grant:race game_account_id={key['game_account_id']} product_id={key['product_id']} -> owned")
        return False
    created = res.upserted_id is not None
    logger.info(
        f"grant:{'ok' if created else 'already_owned'} game_account_id={key['game_account_id']} "
        f"product_id={key['product_id']} source={source}"
    )
    return created


def revoke(game_account_id, product_id) -> bool:
    """Remove ownership. Returns True if a row existed."""
    key = _k(game_account_id, product_id)
    res = _rows().delete_one(key)
    logger.info(
        f"revoke:{'ok' if res.deleted_count else 'not_owned'} "
        f"game_account_id={key['game_account_id']} product_id={key['product_id']}"
    )
    return res.deleted_count > 0


def is_owned(game_account_id, product_id) -> bool:
    owned = _rows().find_one(_k(game_account_id, product_id), {"_id": 1}) is not None
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"is_owned game_account_id={game_account_id} product_id={product_id} -> {owned}")
    return owned


# ---------------- Introspection ----------------
def list_owned(game_account_id) -> List[str]:
    gid = require(game_account_id, "userId")
    rows = _rows().find({"game_account_id": gid}, {"product_id": 1, "granted_at": 1}).sort("granted_at", 1)
    return [str(r["product_id"]) for r in rows]


def list_owners(product_id) -> List[str]:
    pid = require(product_id, "productId")
    rows = _rows().find({"product_id": pid}, {"game_account_id": 1})
    return [str(r["game_account_id"]) for r in rows]


def remove_all_for_product(product_id) -> int:
    pid = require(product_id, "productId")
    res = _rows().delete_many({"product_id": pid})
    logger.info(f"cascade product_id={pid} removed={res.deleted_count}")
    return res.deleted_count
