# api.py
"""
Game-facing REST gateway.

Every response carries a boolean `success`. Domain failures come back as
HTTP 200 with `success: false` and an `error` kind so Roblox HttpService
callers can always read the body; only a bad admin key gets a 401.
"""

import base64
import binascii
import logging
import secrets
from typing import Optional, Union

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import catalog
import codes
import config
import downtime
import ledger
import links
import purchases
import status
from errors import DeliveryError, NotFoundError, OrionError, ValidationError, require

# Child logger (parent configured in bot.py)
logger = logging.getLogger("orion.api")

app = FastAPI(title="Orion Relay API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Id = Optional[Union[str, int]]


class _OfflineCourier:
    """Stand-in until the Discord client attaches its courier."""

    async def send_product(self, chat_account_id, product):
        raise DeliveryError("The Discord bot is not connected")

    async def post_log(self, title, fields, color=0):
        return None


def get_courier():
    return getattr(app.state, "courier", None) or _OfflineCourier()


def _camel(summary: dict) -> dict:
    return {
        "id": summary["id"],
        "hub": summary["hub"],
        "name": summary["name"],
        "description": summary["description"],
        "imageId": summary["image_id"],
        "devProductId": summary["external_product_id"],
        "fileName": summary["file_name"],
    }


def _decode_file(data: Optional[str]) -> bytes:
    raw = require(data, "fileData")
    if "," in raw and raw.lstrip().startswith("data:"):
        raw = raw.split(",", 1)[1]
    raw = "".join(raw.split())  # MIME-style line breaks
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("fileData is not valid base64")


# ---------- Error translation ----------
@app.exception_handler(OrionError)
async def orion_error_handler(request: Request, exc: OrionError):
    logger.info(f"request:rejected path={request.url.path} error={exc.kind} message='{exc.message}'")
    return JSONResponse(status_code=200, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=200,
        content={"success": False, "error": ValidationError.kind, "message": "Malformed request body"},
    )


def is_admin(x_admin_key: Optional[str]) -> bool:
    expected = config.ADMIN_API_KEY
    return bool(expected and x_admin_key and secrets.compare_digest(x_admin_key, expected))


# ---------- Public Endpoints ----------
@app.get("/")
def root():
    return {"success": True, "message": "Orion relay running"}


class HeartbeatRequest(BaseModel):
    ping: Optional[float] = 0
    uptime: Optional[float] = 0
    version: Optional[str] = None


@app.get("/status")
def get_status():
    return {"success": True, **status.snapshot()}


@app.post("/status")
def post_status(payload: HeartbeatRequest):
    status.record_heartbeat(payload.ping, payload.uptime, payload.version)
    return {"success": True}


# ---------- Codes & links ----------
class CreateCodeRequest(BaseModel):
    userId: Id = None
    code: Id = None


@app.post("/createCode")
def create_code(payload: CreateCodeRequest):
    codes.issue_code(payload.userId, payload.code)
    return {"success": True}


@app.get("/link/{user_id}")
def get_link(user_id: str):
    chat_id = links.lookup_by_game_account(user_id)
    if not chat_id:
        return {"success": True, "linked": False, "chatAccountId": None}
    return {"success": True, "linked": True, "chatAccountId": chat_id}


# ---------- Products ----------
class AddProductRequest(BaseModel):
    hub: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    imageId: Id = None
    devProductId: Id = None
    fileName: Optional[str] = None
    fileData: Optional[str] = None


@app.post("/addProduct")
def add_product(payload: AddProductRequest):
    product_id = catalog.create_product({
        "hub": payload.hub,
        "name": payload.name,
        "description": payload.description,
        "image_id": payload.imageId,
        "external_product_id": payload.devProductId,
        "file_name": payload.fileName,
        "file_data": _decode_file(payload.fileData),
    })
    return {"success": True, "productId": product_id}


class RemoveProductRequest(BaseModel):
    productId: Optional[str] = None


@app.post("/removeProduct")
def remove_product(payload: RemoveProductRequest):
    removed = catalog.remove_product(require(payload.productId, "productId"))
    return {"success": True, "productId": removed["id"]}


@app.get("/products")
def list_products(hub: Optional[str] = Query(None)):
    return {"success": True, "products": [_camel(p) for p in catalog.list_products(hub)]}


@app.get("/owned/{user_id}")
def owned_products(user_id: str):
    return {"success": True, "owned": ledger.list_owned(user_id)}


# ---------- Purchases ----------
class PurchaseRequest(BaseModel):
    userId: Id = None
    devProductId: Id = None


@app.post("/purchase")
async def purchase(payload: PurchaseRequest):
    result = await purchases.purchase(get_courier(), payload.userId, payload.devProductId)
    return result.to_dict()


@app.post("/whitelist/check")
def whitelist_check(payload: PurchaseRequest):
    gid = require(payload.userId, "userId")
    product = catalog.find_by_external_id(require(payload.devProductId, "devProductId"))
    if not product:
        raise NotFoundError(f"Unknown product {payload.devProductId}")
    return {"success": True, "allowed": ledger.is_owned(gid, product["id"])}


class ProductCheckRequest(BaseModel):
    userId: Id = None
    productId: Optional[str] = None


def _check_by_product_id(user_id, product_id) -> dict:
    gid = require(user_id, "userId")
    product = catalog.get_product(require(product_id, "productId"))
    return {"success": True, "allowed": ledger.is_owned(gid, product["id"])}


@app.post("/whitelist/checkByProductId")
def whitelist_check_by_product_id(payload: ProductCheckRequest):
    return _check_by_product_id(payload.userId, payload.productId)


@app.get("/whitelist/checkByProductId")
def whitelist_check_by_product_id_get(
    userId: Optional[str] = Query(None),
    productId: Optional[str] = Query(None),
):
    return _check_by_product_id(userId, productId)


# ---------- Downtime ----------
class DowntimeRequest(BaseModel):
    enabled: Optional[bool] = None
    updatedBy: Optional[str] = None


@app.get("/downtime")
def get_downtime():
    return {"success": True, **downtime.flag_info()}


@app.post("/downtime")
async def set_downtime(payload: DowntimeRequest, x_admin_key: Optional[str] = Header(None)):
    if not is_admin(x_admin_key):
        return JSONResponse(
            status_code=401,
            content={"success": False, "error": "unauthorized", "message": "Invalid admin key"},
        )
    if payload.enabled is None:
        raise ValidationError("Missing enabled")
    enabled = await downtime.set_downtime(payload.enabled, payload.updatedBy or "api")
    return {"success": True, "enabled": enabled}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
