# links.py
"""
Roblox account ↔ Discord account links.
Maps a Roblox user id (game account) to the Discord user id (chat account)
that verified it.

Features
- Upsert by Roblox user id: relinking overwrites, never duplicates
- Indexed reverse lookup (Discord id → Roblox id) for profile/grant/revoke
- Unlinking also burns any outstanding verification codes for the account
- `verify` exchanges a one-time code and writes the link in one call
"""

from __future__ import annotations

import logging
from typing import Optional

import codes
import store
from errors import NotLinkedError, require
from schemas import AccountLink, utcnow

# Child logger (parent configured in bot.py)
logger = logging.getLogger("orion.links")


def _links():
    return store.collection(store.COL_LINKS)


# ---------- Public API ----------

def link(game_account_id, chat_account_id) -> None:
    gid = require(game_account_id, "userId")
    cid = require(chat_account_id, "chatAccountId")
    doc = AccountLink(game_account_id=gid, chat_account_id=cid, linked_at=utcnow())
    prev = _links().find_one_and_update(
        {"game_account_id": gid},
        {"$set": doc.model_dump()},
        upsert=True,
    )
    if prev is None:
        logger.info(f"link:set game_account_id={gid} chat_account_id={cid}")
    elif str(prev.get("chat_account_id")) != cid:
        logger.info(
            f"link:update game_account_id={gid} chat_account_id={cid} (was {prev.get('chat_account_id')})"
        )
    elif logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"link:noop game_account_id={gid} chat_account_id={cid}")


def unlink(game_account_id) -> bool:
    """Remove a link and its outstanding codes. Returns True if a link existed."""
    gid = require(game_account_id, "userId")
    res = _links().delete_one({"game_account_id": gid})
    burned = codes.invalidate_codes(gid)
    logger.info(f"link:unlink game_account_id={gid} existed={res.deleted_count > 0} codes_burned={burned}")
    return res.deleted_count > 0


def lookup_by_game_account(game_account_id) -> Optional[str]:
    gid = str(game_account_id or "").strip()
    if not gid:
        return None
    doc = _links().find_one({"game_account_id": gid})
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"lookup_game game_account_id={gid} -> {'hit' if doc else 'miss'}")
    return str(doc["chat_account_id"]) if doc else None


def lookup_by_chat_account(chat_account_id) -> Optional[str]:
    """Most recently linked game account for a Discord id, if any."""
    cid = str(chat_account_id or "").strip()
    if not cid:
        return None
    doc = _links().find_one({"chat_account_id": cid}, sort=[("linked_at", -1)])
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"lookup_chat chat_account_id={cid} -> {'hit' if doc else 'miss'}")
    return str(doc["game_account_id"]) if doc else None


def require_chat_account(game_account_id) -> str:
    cid = lookup_by_game_account(game_account_id)
    if not cid:
        raise NotLinkedError(f"Roblox user {game_account_id} has no linked Discord account.")
    return cid


def verify(code, chat_account_id) -> str:
    """Exchange `code` and link the resulting game account to `chat_account_id`."""
    gid = codes.exchange_code(code, chat_account_id)
    link(gid, chat_account_id)
    return gid
