# purchases.py
"""
Purchase, grant and revoke: the NotOwned ⇄ Owned transitions per
(Roblox account, product).

A purchase writes ownership only after the product and the account link
are both resolved. Delivery happens after the ownership write and its failure is
reported, not rolled back.

Redelivery policy
- purchase: always delivers, even if already owned (each purchase is a paid
  event and doubles as the retry path for a failed DM)
- grant: delivers only when it created the ownership row; an unlinked
  account still gets the row and the result says it was not delivered
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import catalog
import delivery
import ledger
import links
from errors import DeliveryError, NotFoundError, NotLinkedError, require

# Child logger (parent configured in bot.py)
logger = logging.getLogger("orion.purchases")


@dataclass
class OwnershipResult:
    product_id: str
    product_name: str
    game_account_id: str
    newly_owned: bool
    delivered: bool = False
    delivery_error: Optional[str] = None
    delivery_error_kind: Optional[str] = None

    def to_dict(self) -> dict:
        out = {
            "success": True,
            "productId": self.product_id,
            "newlyOwned": self.newly_owned,
            "delivered": self.delivered,
        }
        if self.delivery_error:
            out["error"] = self.delivery_error_kind
            out["message"] = self.delivery_error
        return out


async def _deliver(courier, result: OwnershipResult, product: dict) -> OwnershipResult:
    try:
        await delivery.deliver(courier, result.game_account_id, product)
        result.delivered = True
    except (DeliveryError, NotLinkedError) as e:
        result.delivery_error = e.message
        result.delivery_error_kind = e.kind
    return result


async def purchase(courier, game_account_id, external_product_id) -> OwnershipResult:
    gid = require(game_account_id, "userId")
    ext = require(external_product_id, "devProductId")

    product = catalog.find_by_external_id(ext)
    if not product:
        logger.info(f"purchase:unknown_product game_account_id={gid} external_product_id={ext}")
        raise NotFoundError(f"Unknown product {ext}")
    links.require_chat_account(gid)

    created = ledger.grant(gid, product["id"], source="purchase")
    result = OwnershipResult(product["id"], product["name"], gid, newly_owned=created)
    await _deliver(courier, result, product)
    logger.info(
        f"purchase:done game_account_id={gid} product_id={product['id']} "
        f"newly_owned={created} delivered={result.delivered}"
    )
    return result


async def grant(courier, game_account_id, product_id, redeliver: bool = False) -> OwnershipResult:
    gid = require(game_account_id, "userId")
    product = catalog.get_product(product_id)

    created = ledger.grant(gid, product["id"], source="grant")
    result = OwnershipResult(product["id"], product["name"], gid, newly_owned=created)
    if created or redeliver:
        await _deliver(courier, result, product)
    logger.info(
        f"grant:done game_account_id={gid} product_id={product['id']} "
        f"newly_owned={created} delivered={result.delivered}"
    )
    return result


def revoke(game_account_id, product_id) -> bool:
    product = catalog.get_product(product_id)
    return ledger.revoke(game_account_id, product["id"])


async def replace_product_file(courier, product_id, file_name, payload: bytes) -> Tuple[dict, int, int]:
    """Swap the deliverable, then push it to everyone who owns the product."""
    product = catalog.update_product(product_id, "file", (file_name, payload))
    sent, failed = await delivery.redeliver_to_owners(courier, product)
    return product, sent, failed
