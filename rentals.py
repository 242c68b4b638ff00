"""
Rental items and bookings.

Availability is never stored as a counter. For a window it is the item's
total quantity minus the quantities of CONFIRMED bookings that overlap the
window, which keeps date-scoped availability exact at the cost of scanning
the overlapping bookings on every check.
"""

import logging
from datetime import date, datetime
from typing import Optional, Union

from bson import ObjectId
from pymongo.database import Database

from assets import store_images
from catalog import referenced_by_orders
from config import Settings
from database import as_datetime, create_document, get_documents, maybe_oid, serialize, touch
from errors import BadRequestError, ConflictError, NotFoundError
from schemas import (
    BookingStatus,
    RentalBooking,
    RentalBookingRequest,
    RentalItem,
    RentalItemCreate,
    RentalItemUpdate,
)

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime]


def get_rental_item(db: Database, item_id) -> Optional[dict]:
    _id = maybe_oid(item_id)
    if _id is None:
        return None
    return db["rental_item"].find_one({"_id": _id})


def booked_quantity(db: Database, item_id: ObjectId, start: DateLike, end: DateLike) -> int:
    overlaps = db["rental_booking"].find(
        {
            "item": item_id,
            "status": BookingStatus.CONFIRMED.value,
            "start_date": {"$lte": as_datetime(end)},
            "end_date": {"$gte": as_datetime(start)},
        },
        {"quantity": 1},
    )
    return sum(b.get("quantity", 0) for b in overlaps)


def available_quantity(db: Database, item: dict, start: DateLike, end: DateLike) -> int:
    return max(0, (item.get("total_qty") or 0) - booked_quantity(db, item["_id"], start, end))


def availability(db: Database, item_id: str, start: date, end: date) -> dict:
    item = get_rental_item(db, item_id)
    if not item:
        raise NotFoundError("Item not found")
    if end < start:
        raise BadRequestError("Invalid date range")
    return {"total_qty": item.get("total_qty", 0), "available_qty": available_quantity(db, item, start, end)}


def create_booking(
    db: Database,
    item: dict,
    renter_id: ObjectId,
    quantity: int,
    start: DateLike,
    end: DateLike,
    notes: str = "",
    order_id: Optional[ObjectId] = None,
) -> dict:
    doc = RentalBooking(
        item=item["_id"],
        renter=renter_id,
        quantity=quantity,
        start_date=as_datetime(start),
        end_date=as_datetime(end),
        notes=notes,
        order_id=order_id,
    ).model_dump()
    create_document(db, "rental_booking", doc)
    return doc


def book(db: Database, item_id: str, renter_id: ObjectId, req: RentalBookingRequest) -> dict:
    item = get_rental_item(db, item_id)
    if not item:
        raise NotFoundError("Item not found")
    available = available_quantity(db, item, req.start_date, req.end_date)
    if req.quantity > available:
        raise BadRequestError(f"Only {available} available for selected dates")
    booking = create_booking(
        db, item, renter_id, req.quantity, req.start_date, req.end_date, notes=req.notes
    )
    logger.info("Booked %s x %s for %s", req.quantity, item["product_name"], renter_id)
    return serialize(booking)


def cancel_order_bookings(db: Database, order_id: ObjectId) -> int:
    result = db["rental_booking"].update_many(
        {"order_id": order_id, "status": BookingStatus.CONFIRMED.value},
        {"$set": {"status": BookingStatus.CANCELLED.value}},
    )
    return result.modified_count


# ---------- Admin catalog ----------

def list_items(db: Database) -> list:
    return serialize(get_documents(db, "rental_item"))


def create_item(db: Database, settings: Settings, req: RentalItemCreate) -> dict:
    doc = RentalItem(
        product_name=req.product_name.strip(),
        description=req.description.strip(),
        rental_per_day=req.rental_per_day,
        total_qty=req.total_qty,
        images=store_images(settings, req.images),
    ).model_dump()
    create_document(db, "rental_item", doc)
    return serialize(doc)


def update_item(db: Database, settings: Settings, item_id: str, req: RentalItemUpdate) -> dict:
    item = get_rental_item(db, item_id)
    if not item:
        raise NotFoundError("Not found")
    update = req.model_dump(exclude_none=True, exclude={"images"})
    if req.images is not None:
        update["images"] = store_images(settings, req.images)
    if update:
        touch(db, "rental_item", item["_id"], update)
    return serialize(db["rental_item"].find_one({"_id": item["_id"]}))


def delete_item(db: Database, item_id: str) -> None:
    item = get_rental_item(db, item_id)
    if not item:
        raise NotFoundError("Not found")
    if referenced_by_orders(db, item["_id"]):
        raise ConflictError("Item is referenced by existing orders", code="ITEM_IN_USE")
    db["rental_booking"].delete_many({"item": item["_id"]})
    db["rental_item"].delete_one({"_id": item["_id"]})
