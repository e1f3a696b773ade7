# bot.py
import asyncio
import re
import time
import logging
import logging.handlers
from typing import Optional

import discord
import uvicorn
from discord.ext import commands, tasks

import api
import catalog
import config
import downtime
import ledger
import links
import purchases
import status
import store
from delivery import DiscordCourier
from errors import NotFoundError, NotLinkedError, OrionError, ValidationError
from flows import FlowCancelled, FlowTimeout, Prompt, Reply, file_prompt, run_flow

# ---------------- LOGGING ----------------
LOG_LEVEL = config.LOG_LEVEL
LOG_FILE = config.LOG_FILE


def setup_logging():
    # Root logger: keep minimal setup so third-party libs aren't affected.
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(logging.INFO)
    root.addHandler(logging.StreamHandler())  # simple console for non-app logs

    # Our app logger + handlers
    app_logger = logging.getLogger("orion")
    app_logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    app_logger.propagate = False

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)-7s %(name)s :: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    ch = logging.StreamHandler()
    ch.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    ch.setFormatter(fmt)

    fh = logging.handlers.RotatingFileHandler(
        LOG_FILE, maxBytes=2_000_000, backupCount=3, encoding="utf-8"
    )
    fh.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    fh.setFormatter(fmt)

    # Clear existing handlers on the app logger to avoid duplicates
    for h in list(app_logger.handlers):
        app_logger.removeHandler(h)

    app_logger.addHandler(ch)
    app_logger.addHandler(fh)


logger = logging.getLogger("orion")

# ---------------- COLORS ----------------
COLOR_INFO = 0x00FFEA
COLOR_OK = 0x00FF00
COLOR_WARN = 0xFFAA00
COLOR_ERROR = 0xFF0000

STARTED_AT = time.time()

# ---------------- BOT SETUP ----------------
intents = discord.Intents.default()
intents.message_content = True   # prefix commands + DM flow replies
intents.members = True           # member converter for !profile
bot = commands.Bot(
    command_prefix="!",
    intents=intents,
    case_insensitive=True,
    help_command=None,
)

courier = DiscordCourier(bot, config.LOG_CHANNEL_ID)
api.app.state.courier = courier

# ---------------- HELPERS ----------------
_MENTION_RE = re.compile(r"^<@!?(\d+)>$")


def _embed(title: str, description: str = "", color: int = COLOR_INFO) -> discord.Embed:
    return discord.Embed(title=title, description=description or None, color=color)


async def _reply(ctx: commands.Context, title: str, description: str = "", color: int = COLOR_INFO):
    return await ctx.reply(embed=_embed(title, description, color), mention_author=False)


def _resolve_target(raw: str) -> str:
    """A Discord mention resolves through the link registry; digits are a Roblox id."""
    raw = raw.strip()
    m = _MENTION_RE.match(raw)
    if m:
        gid = links.lookup_by_chat_account(m.group(1))
        if not gid:
            raise ValidationError("That Discord user has no linked Roblox account.")
        return gid
    if not raw.isdigit():
        raise ValidationError("Send a Roblox user id or mention a Discord user.")
    return raw


def _existing_product(raw: str) -> dict:
    try:
        return catalog.get_product(raw)
    except NotFoundError as e:
        raise ValidationError(e.message)


def _free_external_id(editing_product_id: Optional[str] = None):
    """Validator for a developer product id; the product being edited may keep its own."""
    def check(raw: str) -> str:
        if catalog.external_id_taken(raw, exclude_product_id=editing_product_id):
            raise ValidationError(f"Developer product id {raw} is already used. Pick another.")
        return raw
    return check


def _digits(label: str):
    def check(raw: str) -> str:
        if not raw.isdigit():
            raise ValidationError(f"{label} must be a number.")
        return raw
    return check


def _catalog_text() -> str:
    rows = catalog.list_products()
    if not rows:
        return ""
    return "\n\n".join(
        f"**ID:** `{p['id']}`\n**Name:** {p['name']} ({p['hub']})\n**DevProductId:** {p['external_product_id']}"
        for p in rows
    )[:4000]


async def _open_dm(ctx: commands.Context, title: str, intro: str, color: int = COLOR_INFO):
    """DM the invoking admin and return (channel, ask, notify) bound to that DM, or None."""
    try:
        await ctx.author.send(embed=_embed(title, intro + "\nType `cancel` at any step to stop.", color))
    except discord.Forbidden:
        await ctx.reply("I couldn't DM you. Please enable DMs and try again.")
        return None
    channel = ctx.author.dm_channel or await ctx.author.create_dm()

    async def ask(prompt: Prompt) -> Reply:
        await channel.send(embed=_embed("", prompt.question, color))

        def check(m: discord.Message) -> bool:
            return m.author.id == ctx.author.id and m.channel.id == channel.id

        msg = await bot.wait_for("message", check=check)
        attachment = None
        if msg.attachments:
            a = msg.attachments[0]
            attachment = (a.filename, await a.read())
        return Reply(msg.content or "", attachment)

    async def notify(text: str):
        await channel.send(text)

    return channel, ask, notify


async def _run_dm_flow(ctx, channel, prompts, ask, notify) -> Optional[dict]:
    try:
        return await run_flow(prompts, ask, notify)
    except FlowTimeout:
        await channel.send("⏳ Timed out.")
    except FlowCancelled:
        await channel.send("Cancelled. Nothing was changed.")
    return None


# ---------------- EVENTS ----------------
@bot.event
async def on_ready():
    logger.info("startup: bot ready as %s (guilds=%d, LOG_LEVEL=%s, LOG_FILE=%s)",
                bot.user, len(bot.guilds), LOG_LEVEL, LOG_FILE)
    await bot.change_presence(activity=discord.Activity(type=discord.ActivityType.watching, name="Orion"))
    if not heartbeat.is_running():
        heartbeat.start()


@bot.event
async def on_command_error(ctx: commands.Context, error: commands.CommandError):
    if isinstance(error, commands.CommandNotFound):
        return
    if isinstance(error, (commands.MissingPermissions, commands.NoPrivateMessage)):
        await _reply(ctx, "❌ Not allowed", "This command is for server admins.", COLOR_ERROR)
        return
    if isinstance(error, commands.BadArgument):
        await _reply(ctx, "❌ Invalid argument", str(error), COLOR_ERROR)
        return
    original = getattr(error, "original", error)
    if isinstance(original, OrionError):
        await _reply(ctx, "❌ " + original.kind.replace("_", " ").title(), original.message, COLOR_ERROR)
        return
    logger.exception(f"command:error name={getattr(ctx.command, 'name', None)} author={ctx.author.id}",
                     exc_info=original)
    await _reply(ctx, "❌ Error", "Something went wrong. Check server logs.", COLOR_ERROR)


@tasks.loop(seconds=5)
async def heartbeat():
    latency = bot.latency
    ping = 0 if latency != latency else round(latency * 1000)  # NaN before the first ack
    status.record_heartbeat(ping=ping, uptime=int(time.time() - STARTED_AT), version=config.BOT_VERSION)


# ---------------- PUBLIC COMMANDS ----------------
@bot.command(name="commands")
async def commands_cmd(ctx: commands.Context):
    e = _embed("📜 OrionBot Commands")
    e.add_field(
        name="👥 Public Commands",
        value=(
            "`!pverify <code>` – Link your Roblox account\n"
            "`!profile [@user]` – Linked account and owned products"
        ),
        inline=False,
    )
    e.add_field(
        name="🛡️ Staff Commands",
        value=(
            "`!resetverify <RobloxUserId>`\n"
            "`!addproduct` – Create a shop product\n"
            "`!editproduct` – Change one field of a product\n"
            "`!removeproduct` – Remove a shop product\n"
            "`!grantproduct [@user]` – Give a product\n"
            "`!revokeproduct [@user]` – Take a product back\n"
            "`!downtime [on|off]` – Show or set game downtime"
        ),
        inline=False,
    )
    e.set_footer(text="OrionBot • All systems operational")
    await ctx.reply(embed=e, mention_author=False)


@bot.command(name="pverify")
async def pverify_cmd(ctx: commands.Context, code: Optional[str] = None):
    if not code:
        await _reply(ctx, "❌ Missing Code", "Please provide your 6-digit verification code.", COLOR_ERROR)
        return
    try:
        gid = links.verify(code, ctx.author.id)
    except (NotFoundError, ValidationError):
        await _reply(ctx, "❌ Invalid Code", "That code is invalid or expired.", COLOR_ERROR)
        return

    await _reply(
        ctx,
        "✅ Verified & Linked",
        f"Linked Roblox user **{gid}** to Discord user {ctx.author.mention}.\n"
        "Roblox can now see your Discord account.",
        COLOR_OK,
    )
    await courier.post_log(
        "✅ Verification Linked",
        {"Roblox": gid, "Discord": f"{ctx.author} ({ctx.author.id})"},
        COLOR_OK,
    )


@bot.command(name="profile")
async def profile_cmd(ctx: commands.Context, member: Optional[discord.Member] = None):
    target = member or ctx.author
    gid = links.lookup_by_chat_account(target.id)
    if not gid:
        await _reply(ctx, "🔗 Not Linked", f"{target.mention} has not linked a Roblox account.", COLOR_WARN)
        return
    owned = ledger.list_owned(gid)
    names = catalog.product_names(owned)
    lines = [f"• {names[pid]}" for pid in owned if pid in names]
    e = _embed(f"👤 {target.display_name}", f"Roblox user **{gid}**")
    e.add_field(name=f"Owned Products ({len(lines)})", value="\n".join(lines)[:1024] or "None yet", inline=False)
    e.set_thumbnail(url=target.display_avatar.url)
    await ctx.reply(embed=e, mention_author=False)


# ---------------- ADMIN COMMANDS ----------------
@bot.command(name="resetverify")
@commands.guild_only()
@commands.has_permissions(administrator=True)
async def resetverify_cmd(ctx: commands.Context, game_account_id: Optional[str] = None):
    if not game_account_id or not game_account_id.isdigit():
        await _reply(ctx, "❌ Invalid UserId", "Please provide a valid Roblox UserId.", COLOR_ERROR)
        return
    existed = links.unlink(game_account_id)
    await _reply(
        ctx,
        "♻️ Verification Reset",
        f"Verification/link reset for Roblox user **{game_account_id}**."
        + ("" if existed else "\n(No link existed; outstanding codes were cleared.)"),
        COLOR_OK,
    )
    await courier.post_log(
        "♻️ Verification Reset",
        {"Roblox": game_account_id, "By": f"{ctx.author} ({ctx.author.id})"},
        COLOR_OK,
    )


@bot.command(name="addproduct")
@commands.guild_only()
@commands.has_permissions(administrator=True)
async def addproduct_cmd(ctx: commands.Context):
    opened = await _open_dm(ctx, "🛒 Add New Product", "I'll ask you for product details, one step at a time.")
    if not opened:
        return
    channel, ask, notify = opened
    prompts = [
        Prompt("hub", f"Which **Hub** is it in? ({', '.join(catalog.HUBS)})", validate=catalog.normalize_hub),
        Prompt("name", "What is the **Product Name**?"),
        Prompt("description", "What is the **Product Description**?"),
        Prompt("image_id", "What is the **Product Image ID**? (Roblox asset ID)", validate=_digits("Image ID")),
        Prompt("external_product_id", "What is the **Developer Product ID**?", validate=_free_external_id()),
        file_prompt("file", "Please upload the **file** that buyers will receive."),
    ]
    values = await _run_dm_flow(ctx, channel, prompts, ask, notify)
    if values is None:
        return

    file_name, payload = values.pop("file")
    try:
        product_id = catalog.create_product({**values, "file_name": file_name, "file_data": payload})
    except OrionError as e:
        await channel.send(f"❌ {e.message}")
        return

    await channel.send(embed=_embed(
        "✅ Product Added", f"**{values['name']}** has been added to the shop.\nID: `{product_id}`", COLOR_OK
    ))
    await courier.post_log(
        "🛒 Product Added",
        {"Product": values["name"], "Hub": values["hub"], "ID": product_id, "By": str(ctx.author)},
    )


@bot.command(name="removeproduct")
@commands.guild_only()
@commands.has_permissions(administrator=True)
async def removeproduct_cmd(ctx: commands.Context):
    listing = _catalog_text()
    if not listing:
        await _reply(ctx, "🗑 Remove Product", "There are currently no products.", COLOR_WARN)
        return
    opened = await _open_dm(ctx, "🗑 Remove Product", "Reply with the **Product ID** to remove.", COLOR_WARN)
    if not opened:
        return
    channel, ask, notify = opened
    await channel.send(embed=_embed("Current Products", listing))

    values = await _run_dm_flow(
        ctx, channel, [Prompt("product", "Which **Product ID**?", validate=_existing_product)], ask, notify
    )
    if values is None:
        return
    try:
        removed = await asyncio.to_thread(catalog.remove_product, values["product"]["id"])
    except NotFoundError:
        await channel.send("❌ That product was already removed.")
        return

    await channel.send(embed=_embed(
        "✅ Product Removed", f"**{removed['name']}** (`{removed['id']}`) has been removed.", COLOR_OK
    ))
    await courier.post_log(
        "🗑 Product Removed",
        {"Product": removed["name"], "ID": removed["id"], "By": str(ctx.author)},
        COLOR_WARN,
    )


def _field_prompt(field: str, product_id: str) -> Prompt:
    if field == "file":
        return file_prompt("value", "Upload the new **file**. Current owners will receive it.")
    if field == "hub":
        return Prompt("value", f"New **Hub**? ({', '.join(catalog.HUBS)})", validate=catalog.normalize_hub)
    if field == "image_id":
        return Prompt("value", "New **Image ID**?", validate=_digits("Image ID"))
    if field == "external_product_id":
        return Prompt("value", "New **Developer Product ID**?", validate=_free_external_id(product_id))
    return Prompt("value", f"New **{field.replace('_', ' ').title()}**?")


def _field_name(raw: str) -> str:
    key = raw.strip().lower()
    if key not in catalog.EDITABLE_FIELDS:
        raise ValidationError(f"Field must be one of: {', '.join(catalog.EDITABLE_FIELDS)}")
    return key


@bot.command(name="editproduct")
@commands.guild_only()
@commands.has_permissions(administrator=True)
async def editproduct_cmd(ctx: commands.Context):
    listing = _catalog_text()
    if not listing:
        await _reply(ctx, "✏️ Edit Product", "There are currently no products.", COLOR_WARN)
        return
    opened = await _open_dm(ctx, "✏️ Edit Product", "Pick a product, then the field to change.")
    if not opened:
        return
    channel, ask, notify = opened
    await channel.send(embed=_embed("Current Products", listing))

    picked = await _run_dm_flow(ctx, channel, [
        Prompt("product", "Which **Product ID**?", validate=_existing_product),
        Prompt("field", f"Which field? ({', '.join(catalog.EDITABLE_FIELDS)})", validate=_field_name),
    ], ask, notify)
    if picked is None:
        return
    product, field = picked["product"], picked["field"]
    values = await _run_dm_flow(ctx, channel, [_field_prompt(field, product["id"])], ask, notify)
    if values is None:
        return

    try:
        if field == "file":
            file_name, payload = values["value"]
            updated, sent, failed = await purchases.replace_product_file(courier, product["id"], file_name, payload)
            summary = f"New file **{file_name}** sent to {sent} owner(s); {failed} could not be reached."
        else:
            updated = catalog.update_product(product["id"], field, values["value"])
            summary = f"**{field}** is now `{values['value']}`."
    except OrionError as e:
        await channel.send(f"❌ {e.message}")
        return

    await channel.send(embed=_embed("✅ Product Updated", f"**{updated['name']}**: {summary}", COLOR_OK))
    await courier.post_log(
        "✏️ Product Edited",
        {"Product": updated["name"], "Field": field, "By": str(ctx.author)},
    )


async def _ownership_flow(ctx: commands.Context, member: Optional[discord.Member], title: str):
    """Collect (roblox id, product) for grant/revoke. Returns (channel, gid, product) or None."""
    listing = _catalog_text()
    if not listing:
        await _reply(ctx, title, "There are currently no products.", COLOR_WARN)
        return None
    gid = None
    if member is not None:
        gid = links.lookup_by_chat_account(member.id)
        if not gid:
            raise NotLinkedError(f"{member.display_name} has not linked a Roblox account.")
    opened = await _open_dm(ctx, title, "Reply with the details below.")
    if not opened:
        return None
    channel, ask, notify = opened
    await channel.send(embed=_embed("Current Products", listing))

    prompts = []
    if gid is None:
        prompts.append(Prompt("target", "Which **Roblox user id** (or Discord mention)?", validate=_resolve_target))
    prompts.append(Prompt("product", "Which **Product ID**?", validate=_existing_product))
    values = await _run_dm_flow(ctx, channel, prompts, ask, notify)
    if values is None:
        return None
    return channel, gid or values["target"], values["product"]


@bot.command(name="grantproduct")
@commands.guild_only()
@commands.has_permissions(administrator=True)
async def grantproduct_cmd(ctx: commands.Context, member: Optional[discord.Member] = None):
    collected = await _ownership_flow(ctx, member, "🎁 Grant Product")
    if not collected:
        return
    channel, gid, product = collected
    try:
        result = await purchases.grant(courier, gid, product["id"])
    except OrionError as e:
        await channel.send(f"❌ {e.message}")
        return

    if not result.newly_owned:
        text = f"Roblox user **{gid}** already owns **{product['name']}**. Nothing was sent."
    elif result.delivered:
        text = f"Granted **{product['name']}** to Roblox user **{gid}** and sent the file."
    else:
        text = f"Granted **{product['name']}** to Roblox user **{gid}**, but the file was not sent: {result.delivery_error}"
    await channel.send(embed=_embed("✅ Grant", text, COLOR_OK if result.delivered or not result.newly_owned else COLOR_WARN))
    await courier.post_log(
        "🎁 Product Granted",
        {"Product": product["name"], "Roblox": gid, "New": result.newly_owned, "By": str(ctx.author)},
    )


@bot.command(name="revokeproduct")
@commands.guild_only()
@commands.has_permissions(administrator=True)
async def revokeproduct_cmd(ctx: commands.Context, member: Optional[discord.Member] = None):
    collected = await _ownership_flow(ctx, member, "🚫 Revoke Product")
    if not collected:
        return
    channel, gid, product = collected
    try:
        existed = purchases.revoke(gid, product["id"])
    except OrionError as e:
        await channel.send(f"❌ {e.message}")
        return

    text = (f"Revoked **{product['name']}** from Roblox user **{gid}**." if existed
            else f"Roblox user **{gid}** did not own **{product['name']}**.")
    await channel.send(embed=_embed("✅ Revoke", text, COLOR_OK))
    if existed:
        await courier.post_log(
            "🚫 Product Revoked",
            {"Product": product["name"], "Roblox": gid, "By": str(ctx.author)},
            COLOR_WARN,
        )


@bot.command(name="downtime")
@commands.guild_only()
@commands.has_permissions(administrator=True)
async def downtime_cmd(ctx: commands.Context, state: Optional[str] = None):
    if state is None:
        enabled = downtime.get_downtime()
        await _reply(ctx, "🛠 Downtime", f"Downtime is currently **{'ON' if enabled else 'OFF'}**.")
        return
    choice = state.strip().lower()
    if choice not in ("on", "off", "true", "false"):
        await _reply(ctx, "❌ Invalid State", "Use `!downtime on` or `!downtime off`.", COLOR_ERROR)
        return
    enabled = await downtime.set_downtime(choice in ("on", "true"), f"{ctx.author} ({ctx.author.id})")
    await _reply(ctx, "🛠 Downtime Updated", f"Downtime is now **{'ON' if enabled else 'OFF'}**.", COLOR_OK)
    await courier.post_log(
        "🛠 Downtime Changed",
        {"Enabled": enabled, "By": f"{ctx.author} ({ctx.author.id})"},
        COLOR_WARN,
    )


# ---------------- RUN ----------------
async def main():
    token = config.check_discord_token()
    store.get_db()
    server = uvicorn.Server(uvicorn.Config(
        api.app, host="0.0.0.0", port=config.PORT, log_level=LOG_LEVEL.lower()
    ))
    async with bot:
        await asyncio.gather(bot.start(token), server.serve())


if __name__ == "__main__":
    setup_logging()
    logger.info("Starting bot process...")
    asyncio.run(main())
