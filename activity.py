"""
Activity feeds for the farmer and buyer dashboards.

Logging an activity is a side channel: failures are logged and swallowed so
they never break the request that triggered them.
"""

import logging
from typing import Optional

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, get_documents, serialize
from schemas import Activity, ActivityType, BuyerActivity, BuyerActivityType

logger = logging.getLogger(__name__)


def log_activity(
    db: Database,
    farmer_id: ObjectId,
    type: ActivityType,
    title: str,
    description: str,
    listing_id: Optional[ObjectId] = None,
    order_id: Optional[ObjectId] = None,
    metadata: Optional[dict] = None,
) -> Optional[str]:
    try:
        doc = Activity(
            farmer=farmer_id,
            type=type,
            title=title,
            description=description,
            listing_id=listing_id,
            order_id=order_id,
            metadata=metadata or {},
        )
        return create_document(db, "activity", doc)
    except Exception:
        logger.exception("Failed to log %s activity for farmer %s", type, farmer_id)
        return None


def log_listing_added(db: Database, listing: dict):
    description = (
        f'Added "{listing["crop_name"]}" - {listing["capacity_kg"]}kg '
        f'at LKR {listing["price_per_kg"]}/kg'
    )
    return log_activity(
        db, listing["farmer"], ActivityType.LISTING_ADDED, "New Listing Added", description,
        listing_id=listing["_id"],
        metadata={
            "crop_name": listing["crop_name"],
            "capacity_kg": listing["capacity_kg"],
            "price_per_kg": listing["price_per_kg"],
            "harvested_at": listing.get("harvested_at"),
        },
    )


def log_listing_updated(db: Database, listing: dict, changes: dict):
    description = f'Updated "{listing["crop_name"]}" - {", ".join(changes)}'
    return log_activity(
        db, listing["farmer"], ActivityType.LISTING_UPDATED, "Listing Updated", description,
        listing_id=listing["_id"],
        metadata={"crop_name": listing["crop_name"], "changes": sorted(changes)},
    )


def log_listing_removed(db: Database, listing: dict):
    description = f'Removed "{listing["crop_name"]}"'
    return log_activity(
        db, listing["farmer"], ActivityType.LISTING_REMOVED, "Listing Removed", description,
        listing_id=listing["_id"],
        metadata={"crop_name": listing["crop_name"], "capacity_kg": listing.get("capacity_kg")},
    )


def log_item_sold(db: Database, order: dict, listing: dict, quantity_sold: int):
    amount = listing["price_per_kg"] * quantity_sold
    description = f'{quantity_sold}kg of "{listing["crop_name"]}" sold for LKR {amount}'
    return log_activity(
        db, listing["farmer"], ActivityType.ITEM_SOLD, "Item Sold", description,
        listing_id=listing["_id"],
        order_id=order["_id"],
        metadata={
            "crop_name": listing["crop_name"],
            "quantity_sold": quantity_sold,
            "price_per_kg": listing["price_per_kg"],
            "total_amount": amount,
            "order_number": order.get("order_number"),
        },
    )


def log_item_expired(db: Database, listing: dict):
    description = (
        f'"{listing["crop_name"]}" expired and was removed '
        f'({listing["capacity_kg"]}kg remaining)'
    )
    return log_activity(
        db, listing["farmer"], ActivityType.ITEM_EXPIRED, "Item Expired", description,
        listing_id=listing["_id"],
        metadata={
            "crop_name": listing["crop_name"],
            "remaining_capacity": listing["capacity_kg"],
            "harvested_at": listing.get("harvested_at"),
            "expire_after_days": listing.get("expire_after_days"),
        },
    )


def _log_buyer(db: Database, buyer_id: ObjectId, type: BuyerActivityType, title: str,
               description: str, order: dict, metadata: dict) -> Optional[str]:
    try:
        doc = BuyerActivity(
            buyer=buyer_id,
            type=type,
            title=title,
            description=description,
            order_id=order["_id"],
            metadata=metadata,
        )
        return create_document(db, "buyer_activity", doc)
    except Exception:
        logger.exception("Failed to log %s for buyer %s", type, buyer_id)
        return None


def log_buyer_order_placed(db: Database, order: dict, buyer_id: ObjectId):
    return _log_buyer(
        db, buyer_id, BuyerActivityType.ORDER_PLACED, "Order Placed",
        f"You placed an order totaling LKR {order['total']}",
        order,
        {
            "subtotal": order["subtotal"],
            "delivery_fee": order["delivery_fee"],
            "total": order["total"],
            "items_count": len(order.get("items", [])),
            "order_number": order.get("order_number"),
        },
    )


def log_buyer_order_cancelled(db: Database, order: dict, buyer_id: ObjectId):
    return _log_buyer(
        db, buyer_id, BuyerActivityType.ORDER_CANCELLED, "Order Cancelled",
        f"Your order {order.get('order_number', '')} was cancelled",
        order,
        {"order_number": order.get("order_number"), "status": order.get("status")},
    )


def farmer_activities(db: Database, farmer_id: ObjectId, limit: int = 20) -> list:
    docs = get_documents(
        db, "activity", {"farmer": farmer_id}, limit=limit, sort=[("created_at", DESCENDING)]
    )
    return serialize(docs)


def buyer_activities(db: Database, buyer_id: ObjectId, limit: int = 20) -> list:
    docs = get_documents(
        db, "buyer_activity", {"buyer": buyer_id}, limit=limit, sort=[("created_at", DESCENDING)]
    )
    return serialize(docs)
