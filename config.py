# config.py
"""
Environment-driven settings shared by the bot and the REST gateway.

Values come from a `.env` next to this file (loaded once, here) and the
process environment. Everything is a plain module-level constant.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(dotenv_path=Path(__file__).with_name(".env"), override=False)

# ---------------- LOGGING ----------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "orion.log")

# ---------------- DISCORD ----------------
DISCORD_BOT_TOKEN = (os.getenv("DISCORD_BOT_TOKEN") or "").strip()

# If someone pasted "Bot <token>", fix it:
if DISCORD_BOT_TOKEN.lower().startswith("bot "):
    DISCORD_BOT_TOKEN = DISCORD_BOT_TOKEN.split(" ", 1)[1].strip()

# Staff log channel (Text Channel or Thread ID); 0/unset disables log embeds
LOG_CHANNEL_ID = int(os.getenv("LOG_CHANNEL_ID", "0") or 0) or None

BOT_VERSION = os.getenv("BOT_VERSION", "1.0.0")

# ---------------- STORAGE ----------------
MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
MONGO_DB = os.getenv("MONGO_DB", "orion")

# ---------------- HTTP GATEWAY ----------------
PORT = int(os.getenv("PORT", "3000"))
ADMIN_API_KEY = (os.getenv("ADMIN_API_KEY") or "").strip()

# ---------------- ROBLOX OPEN CLOUD ----------------
ROBLOX_UNIVERSE_ID = (os.getenv("ROBLOX_UNIVERSE_ID") or "").strip()
ROBLOX_API_KEY = (os.getenv("ROBLOX_API_KEY") or "").strip()
DOWNTIME_TOPIC = os.getenv("DOWNTIME_TOPIC", "DowntimeEvent")

# ---------------- PRODUCTS ----------------
# Closed set of hubs; changed by redeploying with a new PRODUCT_HUBS value.
PRODUCT_HUBS = tuple(
    h.strip() for h in os.getenv("PRODUCT_HUBS", "Orion,Nova,Eclipse").split(",") if h.strip()
)

CODE_TTL_SECONDS = 10 * 60


def check_discord_token() -> str:
    """Sanity checks (safe: masked). Only the bot process needs a token."""
    if not DISCORD_BOT_TOKEN:
        raise RuntimeError("DISCORD_BOT_TOKEN is missing. Check your .env and load_dotenv(...).")
    if len(DISCORD_BOT_TOKEN) < 50 or "." not in DISCORD_BOT_TOKEN:
        raise RuntimeError("DISCORD_BOT_TOKEN looks malformed. Make sure you copied the Bot Token from the Bot tab.")
    return DISCORD_BOT_TOKEN
