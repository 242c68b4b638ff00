"""
Order placement, reads and status transitions.

Placing an order validates every line against the live catalog, freezes
prices into the order, persists it and then runs the side effects (rental
bookings, stock debit, delivery record, confirmation mail, buyer activity).
The persisted order is the source of truth: a failing side effect is logged
and never undoes it. Cancellation mirrors this with a stock credit.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from activity import log_buyer_order_cancelled, log_buyer_order_placed
from cart import ref_matches, remove_lines
from catalog import get_inventory_item, get_listing
from config import Settings
from database import as_datetime, create_document, ensure_utc, get_documents, maybe_oid, serialize, utc_now
from deliveries import cancel_for_order, create_for_order
from errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from notifications import Notifier
from pricing import delivery_fee_for, final_price_with_commission, rental_line_total, round_half_up_2
from rentals import available_quantity, cancel_order_bookings, create_booking, get_rental_item
from schemas import (
    CartCheckoutRequest,
    CheckoutDetails,
    CreateOrderRequest,
    DeliveryType,
    InventoryStatus,
    ItemType,
    ListingStatus,
    Order,
    OrderItem,
    OrderStatus,
    Role,
)
from stock import Direction, reconcile_stock

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 5


def next_order_number(db: Database, offset: int = 0) -> str:
    return f"ORD-{db['order'].count_documents({}) + 1 + offset:06d}"


def _rental_range(line: dict):
    start, end = line.get("rental_start_date"), line.get("rental_end_date")
    if start is None or end is None:
        return None
    return as_datetime(start), as_datetime(end)


def _competes(line: dict, other: dict) -> bool:
    if other["item_type"] != line["item_type"] or str(other["item_id"]) != str(line["item_id"]):
        return False
    if line["item_type"] != ItemType.RENTAL.value:
        return True
    a, b = _rental_range(line), _rental_range(other)
    if a is None or b is None:
        return True
    return a[0] <= b[1] and b[0] <= a[1]


def order_demand(lines: List[dict]) -> List[int]:
    """
    Quantity each line needs available once the rest of the order is counted.

    Lines for the same inventory item or listing add up. Rental lines add up
    with the lines for the same item whose date ranges overlap theirs.
    """
    return [sum(other["quantity"] for other in lines if _competes(line, other)) for line in lines]


def price_line(db: Database, settings: Settings, line: dict, demand: Optional[int] = None) -> dict:
    """Validate one requested line against the catalog and return its frozen OrderItem."""
    item_type = line["item_type"]
    item_id = line["item_id"]
    quantity = line["quantity"]
    needed = demand or quantity

    if item_type == ItemType.INVENTORY.value:
        item = get_inventory_item(db, item_id)
        if not item:
            raise BadRequestError(f"Inventory item {item_id} not found")
        if item.get("status") == InventoryStatus.OUT_OF_STOCK.value:
            raise BadRequestError(f"{item['name']} is out of stock")
        if item.get("stock_quantity", 0) < needed:
            raise BadRequestError(f"Not enough stock for {item['name']}")
        return OrderItem(
            item_id=item["_id"],
            item_type=item_type,
            quantity=quantity,
            price=item["price"],
            title=item["name"],
            image=(item.get("images") or [""])[0],
            line_total=round_half_up_2(item["price"] * quantity),
        ).model_dump()

    if item_type == ItemType.LISTING.value:
        listing = get_listing(db, item_id)
        if not listing:
            raise BadRequestError(f"Listing {item_id} not found")
        if listing.get("status") != ListingStatus.AVAILABLE.value:
            raise BadRequestError(f"Listing {listing['crop_name']} is not available")
        if listing.get("capacity_kg", 0) < needed:
            raise BadRequestError(f"Not enough stock for {listing['crop_name']}")
        price = final_price_with_commission(listing["price_per_kg"], settings.commission_rate)
        return OrderItem(
            item_id=listing["_id"],
            item_type=item_type,
            quantity=quantity,
            price=price,
            title=listing["crop_name"],
            image=(listing.get("images") or [""])[0],
            line_total=round_half_up_2(price * quantity),
        ).model_dump()

    if item_type == ItemType.RENTAL.value:
        rental = get_rental_item(db, item_id)
        if not rental:
            raise BadRequestError(f"Rental item {item_id} not found")
        start, end = line.get("rental_start_date"), line.get("rental_end_date")
        if start is None or end is None or as_datetime(end) < as_datetime(start):
            raise BadRequestError("Invalid rental date range")
        start, end = as_datetime(start), as_datetime(end)
        available = available_quantity(db, rental, start, end)
        if needed > available:
            raise BadRequestError(f"Only {available} available for selected dates")
        return OrderItem(
            item_id=rental["_id"],
            item_type=item_type,
            quantity=quantity,
            price=rental["rental_per_day"],
            title=rental["product_name"],
            image=(rental.get("images") or [""])[0],
            line_total=rental_line_total(rental["rental_per_day"], start, end, quantity),
            rental_start_date=start,
            rental_end_date=end,
            rental_per_day=rental["rental_per_day"],
        ).model_dump()

    raise BadRequestError("Invalid item type")


def _insert_order(db: Database, doc: dict) -> dict:
    for attempt in range(ORDER_NUMBER_ATTEMPTS):
        doc.pop("_id", None)
        doc["order_number"] = next_order_number(db, attempt)
        try:
            create_document(db, "order", doc)
            return doc
        except DuplicateKeyError:
            logger.warning("Order number %s taken, retrying", doc["order_number"])
    raise ConflictError("Could not allocate an order number", code="ORDER_NUMBER_CONFLICT")


def _after_placement(db: Database, settings: Settings, notifier: Notifier, order: dict, user: dict) -> None:
    try:
        for item in order["items"]:
            if item["item_type"] != ItemType.RENTAL.value:
                continue
            rental = get_rental_item(db, item["item_id"])
            if rental:
                create_booking(
                    db, rental, user["_id"], item["quantity"],
                    item["rental_start_date"], item["rental_end_date"],
                    notes=f"Order {order['order_number']}", order_id=order["_id"],
                )
    except Exception:
        logger.exception("Failed to create rental bookings for order %s", order["order_number"])

    reconcile_stock(db, settings, order["items"], Direction.DEBIT, order=order)

    if order["delivery_type"] == DeliveryType.DELIVERY.value:
        try:
            delivery = create_for_order(db, order, user)
            order["delivery"] = delivery["_id"]
        except Exception:
            logger.exception("Failed to create delivery for order %s", order["order_number"])

    try:
        notifier.order_placed(order, user)
    except Exception:
        logger.exception("Failed to queue confirmation mail for order %s", order["order_number"])

    log_buyer_order_placed(db, order, user["_id"])


def place_order(
    db: Database,
    settings: Settings,
    notifier: Notifier,
    user: dict,
    details: CheckoutDetails,
    lines: List[dict],
) -> dict:
    demand = order_demand(lines)
    items = [price_line(db, settings, line, need) for line, need in zip(lines, demand)]

    subtotal = round_half_up_2(sum(it["line_total"] for it in items))
    delivery_type = details.delivery_type.value
    fee = delivery_fee_for(delivery_type, settings.delivery_fee)
    doc = Order(
        order_number="",
        customer=user["_id"],
        customer_role=user["role"],
        items=items,
        subtotal=subtotal,
        delivery_fee=fee,
        total=round_half_up_2(subtotal + fee),
        delivery_type=delivery_type,
        delivery_address=details.delivery_address if delivery_type == DeliveryType.DELIVERY.value else None,
        contact_name=details.contact_name,
        contact_phone=details.contact_phone,
        contact_email=details.contact_email,
        notes=details.notes,
        payment_method=details.payment_method,
    ).model_dump()

    order = _insert_order(db, doc)
    logger.info("Order %s placed by %s (total %s)", order["order_number"], user["_id"], order["total"])
    _after_placement(db, settings, notifier, order, user)
    return serialize(order)


def create_order(db: Database, settings: Settings, notifier: Notifier, user: dict, req: CreateOrderRequest) -> dict:
    return place_order(db, settings, notifier, user, req, [line.model_dump() for line in req.items])


def create_order_from_cart(
    db: Database, settings: Settings, notifier: Notifier, user: dict, req: CartCheckoutRequest
) -> dict:
    cart = db["cart"].find_one({"user": user["_id"]})
    if not cart:
        raise NotFoundError("Cart not found")

    selected = []
    for ref in req.selected_items:
        matched = [it for it in cart.get("items", []) if ref_matches(it, ref)]
        if not matched:
            raise BadRequestError(f"Item {ref.item_id} not found in cart")
        selected.extend(it for it in matched if not any(it is s for s in selected))

    lines = [
        {
            "item_type": line["item_type"],
            "item_id": line["item_id"],
            "quantity": line["quantity"],
            "rental_start_date": line.get("rental_start_date"),
            "rental_end_date": line.get("rental_end_date"),
        }
        for line in selected
    ]

    order = place_order(db, settings, notifier, user, req, lines)
    try:
        remove_lines(db, user["_id"], req.selected_items)
    except Exception:
        logger.exception("Failed to remove ordered items from cart of %s", user["_id"])
    return order


# ---------- Reads ----------

def _with_delivery(db: Database, order: dict, history: bool = False) -> dict:
    out = serialize(order)
    if order.get("delivery"):
        fields = {"status": 1, "driver": 1}
        if history:
            fields["status_history"] = 1
        delivery = db["delivery"].find_one({"_id": order["delivery"]}, fields)
        out["delivery"] = serialize(delivery) if delivery else str(order["delivery"])
    return out


def my_orders(db: Database, user_id: ObjectId) -> list:
    return [_with_delivery(db, o) for o in get_documents(db, "order", {"customer": user_id})]


def _load(db: Database, order_id: str) -> dict:
    _id = maybe_oid(order_id)
    order = db["order"].find_one({"_id": _id}) if _id else None
    if not order:
        raise NotFoundError("Order not found")
    return order


def _check_access(order: dict, user: dict) -> None:
    if order["customer"] != user["_id"] and user["role"] != Role.ADMIN.value:
        raise ForbiddenError("Access denied")


def get_order(db: Database, user: dict, order_id: str) -> dict:
    order = _load(db, order_id)
    _check_access(order, user)
    out = _with_delivery(db, order, history=True)
    customer = db["user"].find_one({"_id": order["customer"]}, {"full_name": 1, "email": 1, "phone": 1})
    if customer:
        out["customer"] = serialize(customer)
    return out


def list_orders(db: Database, status: Optional[str] = None, delivery_type: Optional[str] = None) -> list:
    query = {}
    if status:
        query["status"] = status
    if delivery_type:
        query["delivery_type"] = delivery_type
    out = []
    for order in get_documents(db, "order", query):
        item = _with_delivery(db, order)
        customer = db["user"].find_one(
            {"_id": order["customer"]}, {"full_name": 1, "email": 1, "phone": 1, "role": 1}
        )
        if customer:
            item["customer"] = serialize(customer)
        out.append(item)
    return out


# ---------- Status transitions ----------

def _mark_cancelled(db: Database, order: dict) -> bool:
    """Flip the order to CANCELLED once; False when someone else already did."""
    now = utc_now()
    result = db["order"].update_one(
        {"_id": order["_id"], "status": {"$ne": OrderStatus.CANCELLED.value}},
        {"$set": {"status": OrderStatus.CANCELLED.value, "updated_at": now}},
    )
    if result.modified_count:
        order["status"] = OrderStatus.CANCELLED.value
        order["updated_at"] = now
        return True
    return False


def _after_cancellation(db: Database, settings: Settings, notifier: Notifier, order: dict, actor: dict) -> None:
    reconcile_stock(db, settings, order["items"], Direction.CREDIT)

    try:
        cancel_order_bookings(db, order["_id"])
    except Exception:
        logger.exception("Failed to release rental bookings of order %s", order["order_number"])

    try:
        cancel_for_order(db, order, actor["_id"])
    except Exception:
        logger.exception("Failed to cancel delivery of order %s", order["order_number"])

    try:
        customer = db["user"].find_one({"_id": order["customer"]}) or {}
        notifier.order_cancelled(order, customer)
    except Exception:
        logger.exception("Failed to queue cancellation mail for order %s", order["order_number"])

    log_buyer_order_cancelled(db, order, order["customer"])


def cancel_order(db: Database, settings: Settings, notifier: Notifier, user: dict, order_id: str) -> dict:
    order = _load(db, order_id)
    _check_access(order, user)
    if order["status"] == OrderStatus.CANCELLED.value or not _mark_cancelled(db, order):
        raise BadRequestError("Cannot cancel this order")
    logger.info("Order %s cancelled by %s", order["order_number"], user["_id"])
    _after_cancellation(db, settings, notifier, order, user)
    return {"message": "Order cancelled successfully", "order": serialize(order)}


def update_status(
    db: Database, settings: Settings, notifier: Notifier, admin: dict, order_id: str, status: OrderStatus
) -> dict:
    order = _load(db, order_id)
    status = OrderStatus(status).value
    previous = order["status"]

    if previous == OrderStatus.CANCELLED.value:
        if status == OrderStatus.CANCELLED.value:
            return serialize(order)
        raise BadRequestError("Cancelled orders cannot be reopened")

    if status == OrderStatus.CANCELLED.value:
        if _mark_cancelled(db, order):
            _after_cancellation(db, settings, notifier, order, admin)
        return serialize(db["order"].find_one({"_id": order["_id"]}))

    now = utc_now()
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"status": status, "updated_at": now}})
    order.update(status=status, updated_at=now)
    return serialize(order)


# ---------- Farmer dashboard ----------

def farmer_stats(db: Database, farmer_id: ObjectId, days: int = 30) -> dict:
    now = utc_now()
    since = now - timedelta(days=days)
    listing_ids = {l["_id"] for l in db["listing"].find({"farmer": farmer_id}, {"_id": 1})}
    available = db["listing"].count_documents(
        {"farmer": farmer_id, "status": ListingStatus.AVAILABLE.value}
    )

    revenue = 0.0
    sales = 0
    if listing_ids:
        orders = db["order"].find({
            "status": {"$ne": OrderStatus.CANCELLED.value},
            "items.item_id": {"$in": list(listing_ids)},
        })
        for order in orders:
            created = ensure_utc(order.get("created_at"))
            if created is None or created < since:
                continue
            lines = [
                it for it in order["items"]
                if it["item_type"] == ItemType.LISTING.value and it["item_id"] in listing_ids
            ]
            if not lines:
                continue
            sales += 1
            revenue += sum(it["price"] * it["quantity"] for it in lines)

    return {
        "available_listings": available,
        "month_revenue": round_half_up_2(revenue),
        "total_sales_count": sales,
        "date_range": {"from": since.isoformat(), "to": now.isoformat()},
    }
