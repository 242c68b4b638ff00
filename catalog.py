"""
Produce listings and farm-supply inventory.

Listing reads run expiry maintenance inline before querying: any AVAILABLE
listing with stock left whose best-before window has passed is moved to
REMOVED. That maintenance must never block the read it piggybacks on.
"""

import logging
from datetime import date, timedelta
from typing import Optional

from bson import ObjectId
from pymongo.database import Database

from activity import log_item_expired, log_listing_added, log_listing_removed, log_listing_updated
from assets import store_images
from config import Settings
from database import (
    as_datetime,
    create_document,
    ensure_utc,
    get_documents,
    maybe_oid,
    serialize,
    touch,
    utc_now,
)
from errors import ConflictError, NotFoundError, ValidationError
from pricing import derive_inventory_status, derive_listing_status, final_price_with_commission
from schemas import (
    InventoryCreate,
    InventoryProduct,
    InventoryUpdate,
    Listing,
    ListingCreate,
    ListingStatus,
    ListingUpdate,
)

logger = logging.getLogger(__name__)


def referenced_by_orders(db: Database, item_id: ObjectId) -> bool:
    return db["order"].count_documents({"items.item_id": item_id}, limit=1) > 0


# ---------- Listings ----------

def get_listing(db: Database, listing_id) -> Optional[dict]:
    _id = maybe_oid(listing_id)
    if _id is None:
        return None
    return db["listing"].find_one({"_id": _id})


def expire_listings(db: Database, extra_filter: Optional[dict] = None) -> int:
    """Move listings past harvested_at + expire_after_days to REMOVED. Returns the count."""
    expired = 0
    try:
        query = {
            "status": ListingStatus.AVAILABLE.value,
            "capacity_kg": {"$gt": 0},
            "expire_after_days": {"$gt": 0},
        }
        query.update(extra_filter or {})
        now = utc_now()
        for listing in db["listing"].find(query):
            harvested = ensure_utc(listing.get("harvested_at"))
            if harvested is None:
                continue
            if harvested + timedelta(days=listing["expire_after_days"]) >= now:
                continue
            touch(db, "listing", listing["_id"], {"status": ListingStatus.REMOVED.value})
            log_item_expired(db, listing)
            expired += 1
    except Exception:
        logger.exception("Listing expiry sweep failed")
    if expired:
        logger.info("Expired %d listing(s)", expired)
    return expired


def with_final_price(listing: dict, settings: Settings) -> dict:
    out = serialize(listing)
    out["final_price_per_kg"] = final_price_with_commission(
        listing["price_per_kg"], settings.commission_rate
    )
    return out


def _farmer_summary(db: Database, farmer_id: ObjectId) -> Optional[dict]:
    farmer = db["user"].find_one({"_id": farmer_id}, {"full_name": 1, "email": 1, "role": 1})
    return serialize(farmer) if farmer else None


def available_listings(db: Database, settings: Settings) -> list:
    expire_listings(db)
    listings = get_documents(db, "listing", {"status": ListingStatus.AVAILABLE.value})
    out = []
    for listing in listings:
        item = with_final_price(listing, settings)
        item["farmer"] = _farmer_summary(db, listing["farmer"]) or item["farmer"]
        out.append(item)
    return out


def all_listings(db: Database, settings: Settings) -> list:
    expire_listings(db)
    return [with_final_price(l, settings) for l in get_documents(db, "listing")]


def my_listings(db: Database, settings: Settings, farmer_id: ObjectId) -> list:
    expire_listings(db, {"farmer": farmer_id})
    return [
        with_final_price(l, settings)
        for l in get_documents(db, "listing", {"farmer": farmer_id})
    ]


def _check_harvest_date(harvested_at) -> None:
    if as_datetime(harvested_at).date() > date.today():
        raise ValidationError("Harvested date cannot be in the future")


def create_listing(db: Database, settings: Settings, farmer_id: ObjectId, req: ListingCreate) -> dict:
    _check_harvest_date(req.harvested_at)
    doc = Listing(
        farmer=farmer_id,
        crop_name=req.crop_name,
        price_per_kg=req.price_per_kg,
        capacity_kg=req.capacity_kg,
        details=req.details.strip(),
        harvested_at=as_datetime(req.harvested_at),
        expire_after_days=req.expire_after_days,
        images=store_images(settings, req.images),
        status=derive_listing_status(req.capacity_kg),
    ).model_dump()
    create_document(db, "listing", doc)
    log_listing_added(db, doc)
    return with_final_price(doc, settings)


def update_listing(
    db: Database, settings: Settings, farmer_id: ObjectId, listing_id: str, req: ListingUpdate
) -> dict:
    listing = get_listing(db, listing_id)
    if not listing or listing["farmer"] != farmer_id:
        raise NotFoundError("Listing not found")

    changes = req.model_dump(exclude_none=True, exclude={"images", "status"})
    if "harvested_at" in changes:
        _check_harvest_date(changes["harvested_at"])
        changes["harvested_at"] = as_datetime(changes["harvested_at"])
    if "details" in changes:
        changes["details"] = changes["details"].strip()
    if req.images is not None:
        images = store_images(settings, req.images)
        if images:
            changes["images"] = images

    capacity = changes.get("capacity_kg", listing["capacity_kg"])
    if req.status is not None:
        requested = req.status.value if hasattr(req.status, "value") else req.status
        if requested == ListingStatus.REMOVED.value:
            changes["status"] = requested
        else:
            changes["status"] = derive_listing_status(capacity)
    elif "capacity_kg" in changes:
        changes["status"] = derive_listing_status(capacity, listing.get("status"))

    if changes:
        touch(db, "listing", listing["_id"], changes)
        listing.update(changes)
        log_listing_updated(db, listing, changes)
    return with_final_price(listing, settings)


def remove_listing(db: Database, listing: dict) -> None:
    """Listings referenced by orders are only marked REMOVED so order history stays intact."""
    if referenced_by_orders(db, listing["_id"]):
        touch(db, "listing", listing["_id"], {"status": ListingStatus.REMOVED.value})
    else:
        db["listing"].delete_one({"_id": listing["_id"]})
    log_listing_removed(db, listing)


def delete_listing(db: Database, farmer_id: Optional[ObjectId], listing_id: str) -> None:
    listing = get_listing(db, listing_id)
    if not listing or (farmer_id is not None and listing["farmer"] != farmer_id):
        raise NotFoundError("Listing not found")
    remove_listing(db, listing)


# ---------- Inventory ----------

def get_inventory_item(db: Database, item_id) -> Optional[dict]:
    _id = maybe_oid(item_id)
    if _id is None:
        return None
    return db["inventory_product"].find_one({"_id": _id})


def list_inventory(db: Database) -> list:
    return serialize(get_documents(db, "inventory_product"))


def create_inventory(db: Database, settings: Settings, req: InventoryCreate) -> dict:
    doc = InventoryProduct(
        name=req.name.strip(),
        category=req.category,
        description=req.description.strip(),
        images=store_images(settings, req.images),
        stock_quantity=req.stock_quantity,
        price=req.price,
        status=derive_inventory_status(req.stock_quantity, settings.low_stock_threshold),
    ).model_dump()
    create_document(db, "inventory_product", doc)
    return serialize(doc)


def update_inventory(db: Database, settings: Settings, item_id: str, req: InventoryUpdate) -> dict:
    item = get_inventory_item(db, item_id)
    if not item:
        raise NotFoundError("Not found")
    update = req.model_dump(exclude_none=True, exclude={"images"})
    if "category" in update and hasattr(update["category"], "value"):
        update["category"] = update["category"].value
    if req.images is not None:
        update["images"] = store_images(settings, req.images)
    if "stock_quantity" in update:
        update["status"] = derive_inventory_status(
            update["stock_quantity"], settings.low_stock_threshold
        )
    if update:
        touch(db, "inventory_product", item["_id"], update)
    return serialize(db["inventory_product"].find_one({"_id": item["_id"]}))


def delete_inventory(db: Database, item_id: str) -> None:
    item = get_inventory_item(db, item_id)
    if not item:
        raise NotFoundError("Not found")
    if referenced_by_orders(db, item["_id"]):
        raise ConflictError("Item is referenced by existing orders", code="ITEM_IN_USE")
    db["inventory_product"].delete_one({"_id": item["_id"]})
