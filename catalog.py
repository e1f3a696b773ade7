# catalog.py
from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
import ledger
import store
from errors import ConflictError, NotFoundError, ValidationError, require
from schemas import Product, utcnow

# Child logger (parent configured in bot.py)
logger = logging.getLogger("orion.catalog")

HUBS: Tuple[str, ...] = config.PRODUCT_HUBS

REQUIRED_FIELDS = ("hub", "name", "description", "image_id", "external_product_id", "file_name")
EDITABLE_FIELDS = ("hub", "name", "description", "image_id", "external_product_id", "file")

CASCADE_ATTEMPTS = 3

# ---------------- Helpers ----------------
def _products():
    return store.collection(store.COL_PRODUCTS)


def _oid(product_id) -> ObjectId:
    try:
        return ObjectId(str(product_id).strip())
    except (InvalidId, TypeError):
        raise NotFoundError(f"No product with id {product_id}")


def _summary(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "hub": doc.get("hub", ""),
        "name": doc.get("name", ""),
        "description": doc.get("description", ""),
        "image_id": doc.get("image_id", ""),
        "external_product_id": doc.get("external_product_id", ""),
        "file_name": doc.get("file_name", ""),
    }


def _full(doc: dict) -> dict:
    out = _summary(doc)
    out["file_data"] = bytes(doc.get("file_data") or b"")
    return out


def normalize_hub(value) -> str:
    """Case-insensitive exact match against HUBS; returns the canonical spelling."""
    v = require(value, "hub").lower()
    for hub in HUBS:
        if hub.lower() == v:
            return hub
    raise ValidationError(f"Unknown hub '{value}'. Choose one of: {', '.join(HUBS)}")


def _ensure_external_id_free(external_product_id: str, exclude: Optional[ObjectId] = None) -> None:
    if external_id_taken(external_product_id, exclude):
        raise ConflictError(f"Developer product id {external_product_id} is already used by another product.")


# ---------------- Public API ----------------
def external_id_taken(external_product_id, exclude_product_id=None) -> bool:
    """True if another product (not `exclude_product_id`) already uses the id."""
    q: Dict = {"external_product_id": str(external_product_id).strip()}
    if exclude_product_id is not None:
        q["_id"] = {"$ne": _oid(exclude_product_id)}
    return _products().find_one(q, {"_id": 1}) is not None


def create_product(fields: dict) -> str:
    """
    Validate and insert a product. Returns the new product id.
    `fields` needs every name in REQUIRED_FIELDS plus non-empty `file_data` bytes.
    """
    values = {k: require(fields.get(k), k) for k in REQUIRED_FIELDS}
    values["hub"] = normalize_hub(values["hub"])
    payload = fields.get("file_data")
    if not isinstance(payload, (bytes, bytearray)) or not payload:
        raise ValidationError("Missing file_data")

    _ensure_external_id_free(values["external_product_id"])
    doc = Product(**values, file_data=bytes(payload)).model_dump()
    try:
        res = _products().insert_one(doc)
    except DuplicateKeyError:
        raise ConflictError(
            f"Developer product id {values['external_product_id']} is already used by another product."
        )
    pid = str(res.inserted_id)
    logger.info(
        f"product:create id={pid} hub='{values['hub']}' name='{values['name']}' "
        f"external_product_id={values['external_product_id']} bytes={len(payload)}"
    )
    return pid


def get_product(product_id) -> dict:
    doc = _products().find_one({"_id": _oid(product_id)})
    if not doc:
        raise NotFoundError(f"No product with id {product_id}")
    return _full(doc)


def find_by_external_id(external_product_id) -> Optional[dict]:
    ext = str(external_product_id or "").strip()
    if not ext:
        return None
    doc = _products().find_one({"external_product_id": ext})
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"find_external external_product_id={ext} -> {'hit' if doc else 'miss'}")
    return _full(doc) if doc else None


def list_products(hub: Optional[str] = None) -> List[dict]:
    """Summaries only; payload bytes are never loaded."""
    q = {"hub": normalize_hub(hub)} if hub else {}
    docs = _products().find(q, {"file_data": 0}).sort([("hub", 1), ("name", 1)])
    out = [_summary(d) for d in docs]
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"list_products hub='{hub or '*'}' -> {len(out)} products")
    return out


def product_names(product_ids) -> Dict[str, str]:
    ids = []
    for pid in product_ids:
        try:
            ids.append(ObjectId(str(pid)))
        except (InvalidId, TypeError):
            continue
    docs = _products().find({"_id": {"$in": ids}}, {"name": 1})
    return {str(d["_id"]): d.get("name", "") for d in docs}


def update_product(product_id, field: str, value) -> dict:
    """
    Patch a single field. For `file`, `value` is (file_name, payload) and both
    are replaced in the same document write.
    """
    oid = _oid(product_id)
    key = (field or "").strip().lower()
    if key not in EDITABLE_FIELDS:
        raise ValidationError(f"Field must be one of: {', '.join(EDITABLE_FIELDS)}")

    if key == "file":
        try:
            file_name, payload = value
        except (TypeError, ValueError):
            raise ValidationError("File update needs a file name and payload")
        if not isinstance(payload, (bytes, bytearray)) or not payload:
            raise ValidationError("Missing file_data")
        updates = {"file_name": require(file_name, "file_name"), "file_data": bytes(payload)}
    elif key == "hub":
        updates = {"hub": normalize_hub(value)}
    elif key == "external_product_id":
        ext = require(value, key)
        _ensure_external_id_free(ext, exclude=oid)
        updates = {"external_product_id": ext}
    else:
        updates = {key: require(value, key)}

    updates["updated_at"] = utcnow()
    try:
        doc = _products().find_one_and_update(
            {"_id": oid}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise ConflictError(f"Developer product id {updates.get('external_product_id')} is already used by another product.")
    if not doc:
        raise NotFoundError(f"No product with id {product_id}")

    shown = {k: (f"<{len(v)} bytes>" if isinstance(v, bytes) else v) for k, v in updates.items() if k != "updated_at"}
    logger.info(f"product:update id={product_id} field={key} new={shown}")
    return _full(doc)


def remove_product(product_id) -> dict:
    """Delete the product, then every entitlement row pointing at it."""
    oid = _oid(product_id)
    doc = _products().find_one_and_delete({"_id": oid}, projection={"file_data": 0})
    if not doc:
        raise NotFoundError(f"No product with id {product_id}")
    pid = str(oid)

    removed = None
    for attempt in range(1, CASCADE_ATTEMPTS + 1):
        try:
            removed = ledger.remove_all_for_product(pid)
            break
        except PyMongoError as e:
            logger.warning(f"product:cascade_retry id={pid} attempt={attempt}: {e}")
            time.sleep(0.2 * attempt)
    if removed is None:
        logger.error(f"product:cascade_failed id={pid} -- entitlement rows left behind")

    logger.info(f"product:remove id={pid} name='{doc.get('name')}' entitlements_removed={removed}")
    return _summary(doc)
