# downtime.py
"""
Global maintenance switch read by the game.

The local document is authoritative (last writer wins). Every write is
followed by a best-effort push to Roblox Open Cloud messaging so running
servers hear about it without polling.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

import httpx

import config
import store
from errors import UpstreamError, ValidationError
from schemas import DowntimeFlag, utcnow

# Child logger (parent configured in bot.py)
logger = logging.getLogger("orion.downtime")

FLAG_KEY = "downtime"
MESSAGING_URL = "https://apis.roblox.com/messaging-service/v1/universes/{universe}/topics/{topic}"
BROADCAST_TIMEOUT = 10.0


def get_downtime() -> bool:
    doc = store.collection(store.COL_FLAGS).find_one({"_id": FLAG_KEY})
    return bool(doc.get("enabled", False)) if doc else False


def flag_info() -> dict:
    doc = store.collection(store.COL_FLAGS).find_one({"_id": FLAG_KEY}) or {}
    return {
        "enabled": bool(doc.get("enabled", False)),
        "updatedBy": doc.get("updated_by", ""),
        "updatedAt": doc["updated_at"].isoformat() if doc.get("updated_at") else None,
    }


async def broadcast_downtime(enabled: bool, client: Optional[httpx.AsyncClient] = None) -> bool:
    """
    Publish the flag to the game. Returns False when broadcasting is not
    configured; raises UpstreamError when Roblox does not accept it.
    """
    if not (config.ROBLOX_UNIVERSE_ID and config.ROBLOX_API_KEY):
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("broadcast:skip reason='not_configured'")
        return False

    url = MESSAGING_URL.format(universe=config.ROBLOX_UNIVERSE_ID, topic=config.DOWNTIME_TOPIC)
    body = {"message": json.dumps({"enabled": bool(enabled)})}
    headers = {"x-api-key": config.ROBLOX_API_KEY}
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=BROADCAST_TIMEOUT)
    try:
        resp = await client.post(url, json=body, headers=headers)
        resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise UpstreamError(f"Roblox messaging returned HTTP {e.response.status_code}") from e
    except httpx.HTTPError as e:
        raise UpstreamError(f"Roblox messaging unreachable: {e}") from e
    finally:
        if owns_client:
            await client.aclose()
    logger.info(f"broadcast:ok enabled={bool(enabled)} topic={config.DOWNTIME_TOPIC}")
    return True


async def set_downtime(enabled, updated_by, client: Optional[httpx.AsyncClient] = None) -> bool:
    """Store the flag, then broadcast it. Returns the value this call stored."""
    if not isinstance(enabled, bool):
        raise ValidationError("enabled must be true or false")
    who = str(updated_by or "").strip() or "unknown"
    doc = DowntimeFlag(enabled=enabled, updated_by=who, updated_at=utcnow()).model_dump()
    store.collection(store.COL_FLAGS).update_one({"_id": FLAG_KEY}, {"$set": doc}, upsert=True)
    logger.info(f"downtime:set enabled={enabled} updated_by='{who}'")

    try:
        await broadcast_downtime(enabled, client=client)
    except UpstreamError as e:
        logger.warning(f"broadcast:failed enabled={enabled}: {e.message}")
    return enabled
