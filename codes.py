# codes.py
"""
One-time verification codes minted by the game.

A code maps to a Roblox user id for CODE_TTL_SECONDS. Exchanging it is a
single `find_one_and_delete`, so two racing exchanges cannot both win.
An expired code is consumed like any other but reported as missing; the
TTL index only does the housekeeping for codes nobody tries.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone

import config
import store
from errors import NotFoundError, ValidationError, require
from schemas import VerificationCode

# Child logger (parent configured in bot.py)
logger = logging.getLogger("orion.codes")

CODE_RE = re.compile(r"^\d{6}$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _expired(doc: dict) -> bool:
    created = doc.get("created_at")
    if not isinstance(created, datetime):
        return True
    # BSON dates come back naive unless the client is tz_aware
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return _now() - created > timedelta(seconds=config.CODE_TTL_SECONDS)


def normalize_code(code) -> str:
    c = require(code, "code")
    if not CODE_RE.match(c):
        raise ValidationError("Code must be 6 digits")
    return c


def issue_code(game_account_id, code) -> None:
    """Store (or overwrite) `code` for `game_account_id` with a fresh TTL window."""
    gid = require(game_account_id, "userId")
    c = normalize_code(code)
    doc = VerificationCode(code=c, game_account_id=gid, created_at=_now())
    res = store.collection(store.COL_CODES).update_one(
        {"code": c}, {"$set": doc.model_dump()}, upsert=True
    )
    logger.info(
        f"code:issue game_account_id={gid} overwritten={res.upserted_id is None}"
    )


def exchange_code(code, chat_account_id) -> str:
    """
    Consume `code` and return its game account id.
    Raises NotFoundError if the code is unknown, expired or already used.
    """
    c = require(code, "code")
    chat_id = require(chat_account_id, "chatAccountId")
    doc = store.collection(store.COL_CODES).find_one_and_delete({"code": c})
    if not doc:
        logger.info(f"code:exchange_miss chat_account_id={chat_id}")
        raise NotFoundError("That code is invalid or expired.")
    if _expired(doc):
        logger.info(
            f"code:exchange_expired game_account_id={doc.get('game_account_id')} chat_account_id={chat_id}"
        )
        raise NotFoundError("That code is invalid or expired.")
    gid = str(doc["game_account_id"])
    logger.info(f"code:exchange_ok game_account_id={gid} chat_account_id={chat_id}")
    return gid


def invalidate_codes(game_account_id) -> int:
    """Delete every outstanding code for the account. Returns how many went."""
    gid = require(game_account_id, "userId")
    res = store.collection(store.COL_CODES).delete_many({"game_account_id": gid})
    if res.deleted_count:
        logger.info(f"code:invalidate game_account_id={gid} deleted={res.deleted_count}")
    return res.deleted_count


def is_live(code) -> bool:
    c = str(code or "").strip()
    if not c:
        return False
    doc = store.collection(store.COL_CODES).find_one({"code": c})
    return doc is not None and not _expired(doc)
