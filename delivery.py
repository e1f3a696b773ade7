# delivery.py
from __future__ import annotations

import datetime
import io
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import discord

import ledger
import links
from errors import DeliveryError, NotLinkedError

# Child logger (parent configured in bot.py)
logger = logging.getLogger("orion.delivery")


@dataclass(frozen=True)
class DeliveryResult:
    product_id: str
    product_name: str
    game_account_id: str
    chat_account_id: str
    channel: str


# ---------------- Discord side-effect: DMs and staff log ----------------
class DiscordCourier:
    """
    Sends product files as Discord DMs and posts delivery embeds to the
    staff log channel. Anything with the same two coroutines can be used
    in its place.
    """

    def __init__(self, bot: discord.Client, log_channel_id: Optional[int] = None):
        self.bot = bot
        self.log_channel_id = log_channel_id

    async def send_product(self, chat_account_id: str, product: dict) -> str:
        try:
            uid = int(chat_account_id)
            user = self.bot.get_user(uid) or await self.bot.fetch_user(uid)
        except (ValueError, discord.NotFound) as e:
            raise DeliveryError(f"Discord user {chat_account_id} not found") from e
        except discord.HTTPException as e:
            raise DeliveryError(f"Could not fetch Discord user {chat_account_id}: {e}") from e

        embed = discord.Embed(
            title=f"🎁 You received: {product['name']}",
            description=product.get("description") or None,
            color=0x00FFEA,
        )
        embed.set_footer(text=f"{product.get('hub', '')} • Orion")
        attachment = discord.File(io.BytesIO(product["file_data"]), filename=product["file_name"])
        try:
            msg = await user.send(embed=embed, file=attachment)
        except discord.Forbidden as e:
            raise DeliveryError(f"Discord user {chat_account_id} does not accept DMs") from e
        except discord.HTTPException as e:
            raise DeliveryError(f"Discord rejected the file for {chat_account_id}: {e}") from e
        return f"dm:{msg.channel.id}"

    async def post_log(self, title: str, fields: dict, color: int = 0x00FFEA) -> None:
        """Posts an embed to the staff log channel if configured."""
        if not self.log_channel_id:
            return  # silently skip if not configured
        try:
            ch = self.bot.get_channel(self.log_channel_id) or await self.bot.fetch_channel(self.log_channel_id)
            if not isinstance(ch, (discord.TextChannel, discord.Thread)):
                return  # bad channel id or missing perms
            e = discord.Embed(title=title, color=color, timestamp=datetime.datetime.now(datetime.timezone.utc))
            for name, value in fields.items():
                e.add_field(name=name, value=str(value), inline=True)
            await ch.send(embed=e)
        except Exception:
            # Avoid crashing command flows if channel perms are missing
            logger.exception("Failed to post log embed")


# ---------------- Public API ----------------
async def deliver(courier, game_account_id, product: dict) -> DeliveryResult:
    """
    DM the product file to the Discord account linked to `game_account_id`.
    Raises NotLinkedError or DeliveryError; never changes ownership.
    """
    gid = str(game_account_id)
    chat_id = links.require_chat_account(gid)
    try:
        channel = await courier.send_product(chat_id, product)
    except DeliveryError:
        logger.warning(
            f"deliver:failed product_id={product['id']} game_account_id={gid} chat_account_id={chat_id}"
        )
        raise
    except Exception as e:
        logger.exception(
            f"deliver:error product_id={product['id']} game_account_id={gid} chat_account_id={chat_id}"
        )
        raise DeliveryError(f"Delivery to {chat_id} failed: {e}") from e

    result = DeliveryResult(
        product_id=product["id"],
        product_name=product["name"],
        game_account_id=gid,
        chat_account_id=chat_id,
        channel=channel,
    )
    logger.info(
        f"deliver:ok product='{result.product_name}' product_id={result.product_id} "
        f"game_account_id={gid} recipient={chat_id} channel={channel}"
    )
    try:
        await courier.post_log(
            "📦 Product Delivered",
            {"Product": result.product_name, "Recipient": f"<@{chat_id}>", "Roblox": gid, "Channel": channel},
        )
    except Exception:
        logger.exception(f"deliver:log_failed product_id={result.product_id}")
    return result


async def redeliver_to_owners(courier, product: dict) -> Tuple[int, int]:
    """
    Send the (updated) file to every current owner, one at a time.
    Per-recipient failures are logged and skipped. Returns (sent, failed).
    """
    sent = failed = 0
    for gid in ledger.list_owners(product["id"]):
        try:
            await deliver(courier, gid, product)
            sent += 1
        except (NotLinkedError, DeliveryError) as e:
            failed += 1
            logger.info(f"redeliver:skip product_id={product['id']} game_account_id={gid} reason={e.kind}")
    logger.info(f"redeliver:done product_id={product['id']} sent={sent} failed={failed}")
    return sent, failed
