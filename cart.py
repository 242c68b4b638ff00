"""
Per-user shopping cart.

Lines are point-in-time snapshots of catalog items. Every read re-resolves
them against the catalog: vanished items are dropped, quantities are clamped
to what is available now, and the refreshed cart is written back.
"""

import logging
from datetime import date
from typing import Iterable, List, Optional

from bson import ObjectId
from pymongo.database import Database

from catalog import get_inventory_item, get_listing
from config import Settings
from database import as_datetime, maybe_oid, serialize, utc_now
from errors import BadRequestError, NotFoundError
from pricing import final_price_with_commission, rental_line_total, round_half_up_2
from rentals import available_quantity, get_rental_item
from schemas import CartAddRequest, CartClearRequest, CartItem, CartItemRef, CartUpdateRequest, ItemType

logger = logging.getLogger(__name__)

ITEM_TYPES = [t.value for t in ItemType]


def item_details(db: Database, settings: Settings, item_id, item_type: str, start=None, end=None) -> Optional[dict]:
    """Current title, price and availability of a catalog item, or None if it is gone."""
    if item_type == ItemType.INVENTORY.value:
        item = get_inventory_item(db, item_id)
        if not item:
            return None
        return {
            "title": item["name"],
            "price": item["price"],
            "image": (item.get("images") or [""])[0],
            "category": item.get("category") or "",
            "max_quantity": item.get("stock_quantity", 0),
            "unit": "units",
        }
    if item_type == ItemType.LISTING.value:
        listing = get_listing(db, item_id)
        if not listing:
            return None
        return {
            "title": listing["crop_name"],
            "price": final_price_with_commission(listing["price_per_kg"], settings.commission_rate),
            "image": (listing.get("images") or [""])[0],
            "category": "",
            "max_quantity": listing.get("capacity_kg", 0),
            "unit": "kg",
        }
    if item_type == ItemType.RENTAL.value:
        rental = get_rental_item(db, item_id)
        if not rental:
            return None
        if start is not None and end is not None:
            available = available_quantity(db, rental, start, end)
        else:
            available = rental.get("total_qty") or 0
        return {
            "title": rental["product_name"],
            "price": rental["rental_per_day"],
            "image": (rental.get("images") or [""])[0],
            "category": "",
            "max_quantity": available,
            "unit": "items",
            "rental_per_day": rental["rental_per_day"],
        }
    return None


def line_total(line: dict) -> float:
    if line["item_type"] == ItemType.RENTAL.value and line.get("rental_start_date") and line.get("rental_end_date"):
        return rental_line_total(
            line.get("rental_per_day") or line["price"],
            line["rental_start_date"],
            line["rental_end_date"],
            line["quantity"],
        )
    return round_half_up_2(line["price"] * line["quantity"])


def summarize(items: List[dict]) -> dict:
    return {
        "items": serialize(items),
        "item_count": len(items),
        "total_quantity": sum(it["quantity"] for it in items),
        "total_price": round_half_up_2(sum(line_total(it) for it in items)),
    }


def _matches(line: dict, item_id, item_type: str) -> bool:
    return str(line["item_id"]) == str(item_id) and line["item_type"] == item_type


def _same_dates(line: dict, start: date, end: date) -> bool:
    if not line.get("rental_start_date") or not line.get("rental_end_date"):
        return False
    return (
        as_datetime(line["rental_start_date"]).isoformat() == as_datetime(start).isoformat()
        and as_datetime(line["rental_end_date"]).isoformat() == as_datetime(end).isoformat()
    )


def _save_items(db: Database, user_id: ObjectId, items: List[dict]) -> None:
    now = utc_now()
    db["cart"].update_one(
        {"user": user_id},
        {"$set": {"items": items, "updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )


def _load(db: Database, user_id: ObjectId) -> dict:
    cart = db["cart"].find_one({"user": user_id})
    if not cart:
        raise NotFoundError("Cart not found")
    return cart


def _refresh(line: dict, details: dict) -> None:
    line.update(
        title=details["title"],
        price=details["price"],
        image=details["image"],
        category=details["category"],
        max_quantity=details["max_quantity"],
        unit=details["unit"],
    )
    if line["item_type"] == ItemType.RENTAL.value:
        line["rental_per_day"] = details["rental_per_day"]


def get_cart(db: Database, settings: Settings, user_id: ObjectId) -> dict:
    cart = db["cart"].find_one({"user": user_id})
    if not cart:
        return summarize([])

    refreshed = []
    for line in cart.get("items", []):
        details = item_details(
            db, settings, line["item_id"], line["item_type"],
            line.get("rental_start_date"), line.get("rental_end_date"),
        )
        if not details:
            logger.debug("Dropping %s %s from cart of %s", line["item_type"], line["item_id"], user_id)
            continue
        _refresh(line, details)
        if line["quantity"] > line["max_quantity"]:
            line["quantity"] = line["max_quantity"]
        # nothing left to buy
        if line["quantity"] < 1:
            continue
        refreshed.append(line)

    _save_items(db, user_id, refreshed)
    return summarize(refreshed)


def cart_count(db: Database, user_id: ObjectId) -> int:
    cart = db["cart"].find_one({"user": user_id}, {"items": 1})
    return len(cart.get("items", [])) if cart else 0


def add_to_cart(db: Database, settings: Settings, user_id: ObjectId, req: CartAddRequest) -> dict:
    if req.item_type not in ITEM_TYPES:
        raise BadRequestError("Invalid item type")
    if req.quantity < 1:
        raise BadRequestError("Quantity must be at least 1")

    start = end = None
    if req.item_type == ItemType.RENTAL.value:
        if req.rental_start_date is None or req.rental_end_date is None:
            raise BadRequestError("Start and end dates are required for rental items")
        start, end = req.rental_start_date, req.rental_end_date
        if start > end:
            raise BadRequestError("End date must be after start date")
        if start < date.today():
            raise BadRequestError("Start date cannot be in the past")

    details = item_details(db, settings, req.item_id, req.item_type, start, end)
    if not details:
        raise NotFoundError("Item not found")
    if details["max_quantity"] < req.quantity:
        raise BadRequestError(f"Only {details['max_quantity']} {details['unit']} available")

    cart = db["cart"].find_one({"user": user_id})
    items = cart.get("items", []) if cart else []

    existing = None
    for line in items:
        if not _matches(line, req.item_id, req.item_type):
            continue
        if req.item_type == ItemType.RENTAL.value and not _same_dates(line, start, end):
            continue
        existing = line
        break

    if existing is not None:
        new_quantity = existing["quantity"] + req.quantity
        if new_quantity > details["max_quantity"]:
            left = details["max_quantity"] - existing["quantity"]
            raise BadRequestError(
                f"Cannot add {req.quantity} more. Only {left} {details['unit']} available"
            )
        existing["quantity"] = new_quantity
        existing["max_quantity"] = details["max_quantity"]
    else:
        line = CartItem(
            item_id=maybe_oid(req.item_id),
            item_type=req.item_type,
            title=details["title"],
            price=details["price"],
            image=details["image"],
            category=details["category"],
            quantity=req.quantity,
            max_quantity=details["max_quantity"],
            unit=details["unit"],
        ).model_dump()
        if req.item_type == ItemType.RENTAL.value:
            line["rental_start_date"] = as_datetime(start)
            line["rental_end_date"] = as_datetime(end)
            line["rental_per_day"] = details["rental_per_day"]
        items.append(line)

    _save_items(db, user_id, items)
    return {"message": "Item added to cart successfully", "cart": summarize(items)}


def update_cart_item(db: Database, settings: Settings, user_id: ObjectId, req: CartUpdateRequest) -> dict:
    if req.quantity < 1:
        raise BadRequestError("Quantity must be at least 1")
    cart = _load(db, user_id)
    items = cart.get("items", [])
    item_type = ItemType(req.item_type).value
    line = next((it for it in items if _matches(it, req.item_id, item_type)), None)
    if line is None:
        raise NotFoundError("Item not found in cart")

    details = item_details(
        db, settings, line["item_id"], item_type,
        line.get("rental_start_date"), line.get("rental_end_date"),
    )
    if not details:
        raise NotFoundError("Item no longer exists")
    if req.quantity > details["max_quantity"]:
        raise BadRequestError(f"Only {details['max_quantity']} {details['unit']} available")

    _refresh(line, details)
    line["quantity"] = req.quantity
    _save_items(db, user_id, items)
    return {"message": "Cart item updated successfully", "cart": summarize(items)}


def ref_matches(line: dict, ref: CartItemRef) -> bool:
    """A ref without rental dates matches every date range held for that item."""
    if not _matches(line, ref.item_id, ItemType(ref.item_type).value):
        return False
    if ref.rental_start_date is None or ref.rental_end_date is None:
        return True
    return _same_dates(line, ref.rental_start_date, ref.rental_end_date)


def remove_lines(db: Database, user_id: ObjectId, refs: Iterable[CartItemRef]) -> List[dict]:
    """Drop the referenced lines from the cart and return what is left."""
    cart = _load(db, user_id)
    refs = list(refs)
    items = [it for it in cart.get("items", []) if not any(ref_matches(it, r) for r in refs)]
    _save_items(db, user_id, items)
    return items


def remove_from_cart(db: Database, user_id: ObjectId, ref: CartItemRef) -> dict:
    items = remove_lines(db, user_id, [ref])
    return {"message": "Item removed from cart successfully", "cart": summarize(items)}


def clear_purchased(db: Database, user_id: ObjectId, req: CartClearRequest) -> dict:
    cart = _load(db, user_id)
    purchased = set(req.purchased_item_ids)
    items = [it for it in cart.get("items", []) if str(it["item_id"]) not in purchased]
    _save_items(db, user_id, items)
    return {"message": "Purchased items removed successfully", "cart": summarize(items)}
