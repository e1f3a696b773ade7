"""
Database Schemas for the Orion bot

Each Pydantic model represents one document in a MongoDB collection.

- VerificationCode -> "codes"
- AccountLink -> "links"
- Product -> "products"
- Entitlement -> "entitlements"
- DowntimeFlag -> "flags" (singleton, _id="downtime")
"""

from datetime import datetime, timezone

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationCode(BaseModel):
    code: str = Field(..., description="6-digit numeric token minted by the game")
    game_account_id: str = Field(..., description="Roblox user id")
    created_at: datetime = Field(default_factory=utcnow, description="Start of the TTL window")


class AccountLink(BaseModel):
    game_account_id: str = Field(..., description="Roblox user id (unique)")
    chat_account_id: str = Field(..., description="Discord user id")
    linked_at: datetime = Field(default_factory=utcnow)


class Product(BaseModel):
    hub: str = Field(..., description="One of the configured hubs")
    name: str
    description: str
    image_id: str = Field(..., description="Roblox asset id for the product image")
    external_product_id: str = Field(..., description="Roblox developer product id (unique)")
    file_name: str
    file_data: bytes = Field(..., description="Deliverable payload")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Entitlement(BaseModel):
    game_account_id: str
    product_id: str
    source: str = Field("grant", description="purchase or grant")
    granted_at: datetime = Field(default_factory=utcnow)


class DowntimeFlag(BaseModel):
    enabled: bool = False
    updated_by: str = ""
    updated_at: datetime = Field(default_factory=utcnow)
