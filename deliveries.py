"""
Delivery lifecycle, the delivery manager message thread and delivery reviews.

Status moves along PENDING -> (ASSIGNMENT_PENDING ->) ASSIGNED -> PREPARING ->
COLLECTED -> IN_TRANSIT -> COMPLETED, with CANCELLED reachable from any
non-terminal state. Every change goes through `add_status`, which appends to
status_history; the history is never rewritten.
"""

import logging
from typing import Optional

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents, maybe_oid, oid, serialize, touch, utc_now
from errors import BadRequestError, ForbiddenError, NotFoundError
from schemas import (
    Assignment,
    AssignmentState,
    Delivery,
    DeliveryMessage,
    DeliveryRequest,
    DeliveryReview,
    DeliveryStatus,
    MessageBody,
    MessageType,
    ReplyBody,
    ReviewCreate,
    ReviewUpdate,
    Role,
    SenderType,
    StatusEntry,
)

logger = logging.getLogger(__name__)

TERMINAL = (DeliveryStatus.COMPLETED.value, DeliveryStatus.CANCELLED.value)
FLOW = [
    DeliveryStatus.PENDING.value,
    DeliveryStatus.ASSIGNMENT_PENDING.value,
    DeliveryStatus.ASSIGNED.value,
    DeliveryStatus.PREPARING.value,
    DeliveryStatus.COLLECTED.value,
    DeliveryStatus.IN_TRANSIT.value,
    DeliveryStatus.COMPLETED.value,
]
DRIVER_STATUSES = FLOW[3:] + [DeliveryStatus.CANCELLED.value]


def add_status(
    db: Database,
    delivery_id: ObjectId,
    status: str,
    actor_id: Optional[ObjectId],
    extra: Optional[dict] = None,
) -> None:
    now = utc_now()
    fields = {"status": status, "updated_at": now}
    fields.update(extra or {})
    entry = StatusEntry(status=status, updated_at=now, updated_by=actor_id).model_dump()
    db["delivery"].update_one(
        {"_id": delivery_id}, {"$set": fields, "$push": {"status_history": entry}}
    )


def _get(db: Database, delivery_id) -> dict:
    _id = maybe_oid(delivery_id)
    delivery = db["delivery"].find_one({"_id": _id}) if _id else None
    if not delivery:
        raise NotFoundError("Delivery not found")
    return delivery


def _reload(db: Database, delivery_id: ObjectId) -> dict:
    return serialize(db["delivery"].find_one({"_id": delivery_id}))


def _user_summary(db: Database, user_id) -> Optional[dict]:
    if user_id is None:
        return None
    user = db["user"].find_one({"_id": user_id}, {"full_name": 1, "email": 1, "phone": 1, "role": 1})
    return serialize(user) if user else str(user_id)


def _expand(db: Database, delivery: dict) -> dict:
    out = serialize(delivery)
    order = db["order"].find_one(
        {"_id": delivery["order"]}, {"order_number": 1, "items": 1, "total": 1, "status": 1}
    )
    out["order"] = serialize(order) if order else str(delivery["order"])
    out["requester"] = _user_summary(db, delivery.get("requester"))
    out["driver"] = _user_summary(db, delivery.get("driver"))
    return out


def _create(db: Database, order: dict, requester: dict, contact_name: str, phone: str,
            address, notes: str) -> dict:
    doc = Delivery(
        order=order["_id"],
        requester=requester["_id"],
        requester_role=requester["role"],
        contact_name=contact_name,
        phone=phone,
        address=address,
        notes=notes or "",
    ).model_dump()
    create_document(db, "delivery", doc)
    add_status(db, doc["_id"], DeliveryStatus.PENDING.value, requester["_id"])
    touch(db, "order", order["_id"], {"delivery": doc["_id"]})
    logger.info("Delivery %s opened for order %s", doc["_id"], order.get("order_number"))
    return db["delivery"].find_one({"_id": doc["_id"]})


def create_for_order(db: Database, order: dict, requester: dict) -> dict:
    return _create(
        db, order, requester,
        order["contact_name"], order["contact_phone"], order["delivery_address"], order.get("notes", ""),
    )


def request_delivery(db: Database, user: dict, req: DeliveryRequest) -> dict:
    order_id = maybe_oid(req.order_id)
    order = db["order"].find_one({"_id": order_id}) if order_id else None
    if not order or order["customer"] != user["_id"]:
        raise NotFoundError("Order not found")
    delivery = _create(
        db, order, user, req.full_name, req.phone, req.address.model_dump(), req.notes
    )
    return serialize(delivery)


def cancel_for_order(db: Database, order: dict, actor_id: ObjectId) -> bool:
    """Cancel the delivery linked to an order unless it already finished."""
    if not order.get("delivery"):
        return False
    delivery = db["delivery"].find_one({"_id": order["delivery"]})
    if not delivery or delivery["status"] in TERMINAL:
        return False
    add_status(db, delivery["_id"], DeliveryStatus.CANCELLED.value, actor_id)
    return True


# ---------- Reads ----------

def my_deliveries(db: Database, user_id: ObjectId) -> list:
    return [_expand(db, d) for d in get_documents(db, "delivery", {"requester": user_id})]


def delivery_for_order(db: Database, user_id: ObjectId, order_id: str) -> dict:
    delivery = db["delivery"].find_one({"order": oid(order_id), "requester": user_id})
    if not delivery:
        raise NotFoundError("Delivery not found for this order")
    return _expand(db, delivery)


def list_deliveries(db: Database, status: Optional[str] = None) -> list:
    query = {"status": status} if status else {}
    return [_expand(db, d) for d in get_documents(db, "delivery", query)]


def driver_deliveries(db: Database, driver_id: ObjectId) -> list:
    return [_expand(db, d) for d in get_documents(db, "delivery", {"driver": driver_id})]


def driver_pending(db: Database, driver_id: ObjectId) -> list:
    query = {
        "driver": driver_id,
        "status": DeliveryStatus.ASSIGNMENT_PENDING.value,
        "assignment_status.status": AssignmentState.PENDING.value,
    }
    return [_expand(db, d) for d in get_documents(db, "delivery", query)]


# ---------- Assignment ----------

def _open_delivery(db: Database, delivery_id) -> dict:
    delivery = _get(db, delivery_id)
    if delivery["status"] in TERMINAL:
        raise BadRequestError(f"Delivery is already {delivery['status']}")
    return delivery


def _driver(db: Database, driver_id: str) -> dict:
    _id = maybe_oid(driver_id)
    driver = db["user"].find_one({"_id": _id}) if _id else None
    if not driver or driver.get("role") != Role.DRIVER.value:
        raise BadRequestError("Driver not found")
    return driver


def assign_driver(db: Database, admin_id: ObjectId, delivery_id: str, driver_id: str) -> dict:
    """Direct assignment: no confirmation step for the driver."""
    delivery = _open_delivery(db, delivery_id)
    driver = _driver(db, driver_id)
    now = utc_now()
    assignment = Assignment(
        status=AssignmentState.ACCEPTED, assigned_at=now, responded_at=now,
        response=AssignmentState.ACCEPTED,
    ).model_dump()
    add_status(db, delivery["_id"], DeliveryStatus.ASSIGNED.value, admin_id,
               {"driver": driver["_id"], "assignment_status": assignment})
    return _reload(db, delivery["_id"])


def offer_delivery(db: Database, admin_id: ObjectId, delivery_id: str, driver_id: str) -> dict:
    delivery = _open_delivery(db, delivery_id)
    driver = _driver(db, driver_id)
    assignment = Assignment(status=AssignmentState.PENDING, assigned_at=utc_now()).model_dump()
    add_status(db, delivery["_id"], DeliveryStatus.ASSIGNMENT_PENDING.value, admin_id,
               {"driver": driver["_id"], "assignment_status": assignment})
    return _reload(db, delivery["_id"])


def _pending_offer(db: Database, driver_id: ObjectId, delivery_id: str) -> dict:
    _id = maybe_oid(delivery_id)
    delivery = db["delivery"].find_one({
        "_id": _id,
        "driver": driver_id,
        "status": DeliveryStatus.ASSIGNMENT_PENDING.value,
        "assignment_status.status": AssignmentState.PENDING.value,
    }) if _id else None
    if not delivery:
        raise NotFoundError("Assignment not found or already responded")
    return delivery


def respond_to_offer(db: Database, driver_id: ObjectId, delivery_id: str, accept: bool) -> dict:
    delivery = _pending_offer(db, driver_id, delivery_id)
    response = AssignmentState.ACCEPTED if accept else AssignmentState.DECLINED
    assignment = Assignment(
        status=response,
        assigned_at=(delivery.get("assignment_status") or {}).get("assigned_at"),
        responded_at=utc_now(),
        response=response,
    ).model_dump()
    if accept:
        add_status(db, delivery["_id"], DeliveryStatus.ASSIGNED.value, driver_id,
                   {"assignment_status": assignment})
    else:
        add_status(db, delivery["_id"], DeliveryStatus.PENDING.value, driver_id,
                   {"assignment_status": assignment, "driver": None})
    return _reload(db, delivery["_id"])


def driver_update_status(db: Database, driver_id: ObjectId, delivery_id: str, status: str) -> dict:
    if status not in DRIVER_STATUSES:
        raise BadRequestError("Invalid status")
    _id = maybe_oid(delivery_id)
    delivery = db["delivery"].find_one({"_id": _id, "driver": driver_id}) if _id else None
    if not delivery:
        raise NotFoundError("Delivery not found or not assigned")
    current = delivery["status"]
    if current in TERMINAL:
        raise BadRequestError(f"Delivery is already {current}")
    if current in (DeliveryStatus.PENDING.value, DeliveryStatus.ASSIGNMENT_PENDING.value):
        raise BadRequestError("Delivery has not been accepted yet")
    if status != DeliveryStatus.CANCELLED.value and FLOW.index(status) <= FLOW.index(current):
        raise BadRequestError(f"Cannot move delivery from {current} to {status}")
    add_status(db, delivery["_id"], status, driver_id)
    return _reload(db, delivery["_id"])


# ---------- Admin ----------

def admin_cancel(db: Database, admin_id: ObjectId, delivery_id: str) -> dict:
    delivery = _get(db, delivery_id)
    if delivery["status"] == DeliveryStatus.COMPLETED.value:
        raise BadRequestError("Cannot cancel a completed delivery")
    if delivery["status"] == DeliveryStatus.CANCELLED.value:
        return serialize(delivery)

    add_status(db, delivery["_id"], DeliveryStatus.CANCELLED.value, admin_id)
    try:
        order = db["order"].find_one({"_id": delivery["order"]}, {"order_number": 1})
        number = (order or {}).get("order_number") or str(delivery["_id"])
        message = DeliveryMessage(
            delivery=delivery["_id"],
            order=delivery["order"],
            message=(
                f"Order {number} has been cancelled. The customer has been notified and the "
                "order has been removed from the active delivery queue."
            ),
            message_type=MessageType.CANCELLATION_REPLY,
            sender_type=SenderType.SYSTEM,
            created_by=admin_id,
        )
        create_document(db, "delivery_message", message)
    except Exception:
        logger.exception("Failed to record cancellation message for delivery %s", delivery["_id"])
    return _reload(db, delivery["_id"])


def admin_delete(db: Database, delivery_id: str) -> None:
    delivery = _get(db, delivery_id)
    if delivery["status"] not in TERMINAL:
        raise BadRequestError("Only completed or cancelled deliveries can be deleted")

    try:
        db["order"].update_one(
            {"_id": delivery["order"], "delivery": delivery["_id"]},
            {"$set": {"delivery": None, "updated_at": utc_now()}},
        )
    except Exception:
        logger.exception("Failed to unlink order from delivery %s", delivery["_id"])
    try:
        db["delivery_message"].delete_many({"delivery": delivery["_id"]})
    except Exception:
        logger.exception("Failed to delete messages of delivery %s", delivery["_id"])
    try:
        db["delivery_review"].delete_many({"delivery": delivery["_id"]})
    except Exception:
        logger.exception("Failed to delete review of delivery %s", delivery["_id"])

    db["delivery"].delete_one({"_id": delivery["_id"]})


# ---------- Messages ----------

def _own_delivery(db: Database, user_id: ObjectId, delivery_id: str, action: str) -> dict:
    delivery = _get(db, delivery_id)
    if delivery["requester"] != user_id:
        raise ForbiddenError(f"You can only {action} for your own deliveries")
    return delivery


def send_customer_message(db: Database, user_id: ObjectId, delivery_id: str, body: MessageBody) -> dict:
    delivery = _own_delivery(db, user_id, delivery_id, "send messages")
    if delivery["status"] != DeliveryStatus.CANCELLED.value:
        raise BadRequestError("You can only send messages for cancelled deliveries")
    already = db["delivery_message"].count_documents({
        "delivery": delivery["_id"],
        "created_by": user_id,
        "sender_type": SenderType.CUSTOMER.value,
    })
    if already:
        raise BadRequestError("You can only send one message per delivery")
    doc = DeliveryMessage(
        delivery=delivery["_id"],
        order=delivery["order"],
        message=body.message,
        message_type=MessageType.CUSTOMER_MESSAGE,
        sender_type=SenderType.CUSTOMER,
        created_by=user_id,
    ).model_dump()
    create_document(db, "delivery_message", doc)
    return serialize(doc)


def my_messages(db: Database, user_id: ObjectId, delivery_id: str) -> list:
    delivery = _own_delivery(db, user_id, delivery_id, "view messages")
    return serialize(get_documents(
        db, "delivery_message", {"delivery": delivery["_id"]}, sort=[("created_at", 1)]
    ))


def list_messages(
    db: Database,
    message_type: Optional[str] = None,
    sender_type: Optional[str] = None,
    delivery_id: Optional[str] = None,
    limit: int = 50,
) -> list:
    query = {}
    if message_type in [m.value for m in MessageType]:
        query["message_type"] = message_type
    if sender_type in [s.value for s in SenderType]:
        query["sender_type"] = sender_type
    if delivery_id:
        query["delivery"] = oid(delivery_id)
    messages = get_documents(db, "delivery_message", query, limit=limit)
    out = []
    for message in messages:
        item = serialize(message)
        item["created_by"] = _user_summary(db, message.get("created_by"))
        out.append(item)
    return out


def unread_count(db: Database) -> int:
    return db["delivery_message"].count_documents({"is_read": False})


def _message(db: Database, message_id: str) -> dict:
    _id = maybe_oid(message_id)
    message = db["delivery_message"].find_one({"_id": _id}) if _id else None
    if not message:
        raise NotFoundError("Message not found")
    return message


def mark_read(db: Database, message_id: str) -> None:
    message = _message(db, message_id)
    touch(db, "delivery_message", message["_id"], {"is_read": True, "read_at": utc_now()})


def mark_all_read(db: Database) -> int:
    now = utc_now()
    result = db["delivery_message"].update_many(
        {"is_read": False}, {"$set": {"is_read": True, "read_at": now, "updated_at": now}}
    )
    return result.modified_count


def reply_to_message(db: Database, admin_id: ObjectId, message_id: str, body: ReplyBody) -> dict:
    original = _message(db, message_id)
    if original.get("sender_type") != SenderType.CUSTOMER.value:
        raise BadRequestError("Can only reply to customer messages")
    doc = DeliveryMessage(
        delivery=original["delivery"],
        order=original["order"],
        message=body.reply,
        message_type=MessageType.MANAGER_REPLY,
        sender_type=SenderType.MANAGER,
        created_by=admin_id,
    ).model_dump()
    create_document(db, "delivery_message", doc)
    touch(db, "delivery_message", original["_id"], {"is_read": True, "read_at": utc_now()})
    return serialize(doc)


def _manager_message(db: Database, message_id: str, action: str) -> dict:
    message = _message(db, message_id)
    if message.get("sender_type") != SenderType.MANAGER.value:
        raise ForbiddenError(f"Only manager messages can be {action}")
    return message


def update_manager_message(db: Database, message_id: str, body: MessageBody) -> dict:
    message = _manager_message(db, message_id, "updated")
    touch(db, "delivery_message", message["_id"], {"message": body.message})
    return serialize(db["delivery_message"].find_one({"_id": message["_id"]}))


def delete_manager_message(db: Database, message_id: str) -> None:
    message = _manager_message(db, message_id, "deleted")
    db["delivery_message"].delete_one({"_id": message["_id"]})


# ---------- Reviews ----------

def create_review(db: Database, user: dict, req: ReviewCreate) -> dict:
    delivery = _get(db, req.delivery_id)
    if delivery["requester"] != user["_id"]:
        raise ForbiddenError("You can only review your own deliveries")
    if delivery["status"] != DeliveryStatus.COMPLETED.value:
        raise BadRequestError("Can only review completed deliveries")
    if db["delivery_review"].count_documents({"delivery": delivery["_id"], "reviewer": user["_id"]}):
        raise BadRequestError("You have already reviewed this delivery")

    doc = DeliveryReview(
        delivery=delivery["_id"],
        reviewer=user["_id"],
        reviewer_role=user["role"],
        rating=req.rating,
        comment=req.comment.strip(),
    ).model_dump()
    try:
        create_document(db, "delivery_review", doc)
    except DuplicateKeyError:
        raise BadRequestError("You have already reviewed this delivery")
    touch(db, "delivery", delivery["_id"], {"review": doc["_id"]})
    return serialize(doc)


def my_reviews(db: Database, user_id: ObjectId) -> list:
    out = []
    for review in get_documents(db, "delivery_review", {"reviewer": user_id}):
        item = serialize(review)
        delivery = db["delivery"].find_one({"_id": review["delivery"]}, {"status": 1, "order": 1})
        item["delivery"] = serialize(delivery) if delivery else str(review["delivery"])
        out.append(item)
    return out


def _review(db: Database, review_id: str) -> dict:
    _id = maybe_oid(review_id)
    review = db["delivery_review"].find_one({"_id": _id}) if _id else None
    if not review:
        raise NotFoundError("Review not found")
    return review


def update_review(db: Database, user_id: ObjectId, review_id: str, req: ReviewUpdate) -> dict:
    review = _review(db, review_id)
    if review["reviewer"] != user_id:
        raise ForbiddenError("You can only edit your own reviews")
    changes = req.model_dump(exclude_none=True)
    if "comment" in changes:
        changes["comment"] = changes["comment"].strip()
    if changes:
        touch(db, "delivery_review", review["_id"], changes)
    return serialize(db["delivery_review"].find_one({"_id": review["_id"]}))


def delete_review(db: Database, user_id: ObjectId, review_id: str) -> None:
    review = _review(db, review_id)
    if review["reviewer"] != user_id:
        raise ForbiddenError("You can only delete your own reviews")
    db["delivery_review"].delete_one({"_id": review["_id"]})
    db["delivery"].update_one({"_id": review["delivery"]}, {"$set": {"review": None}})


def list_reviews(db: Database, rating: Optional[int] = None, visible: Optional[bool] = None) -> list:
    query = {}
    if rating:
        query["rating"] = rating
    if visible is not None:
        query["is_visible"] = visible
    out = []
    for review in get_documents(db, "delivery_review", query):
        item = serialize(review)
        item["reviewer"] = _user_summary(db, review["reviewer"])
        out.append(item)
    return out


def reply_to_review(db: Database, admin_id: ObjectId, review_id: str, body: ReplyBody) -> dict:
    review = _review(db, review_id)
    touch(db, "delivery_review", review["_id"], {
        "admin_reply": {
            "reply": body.reply,
            "replied_by": admin_id,
            "replied_at": utc_now(),
            "is_visible": True,
        }
    })
    return serialize(db["delivery_review"].find_one({"_id": review["_id"]}))


def toggle_review_visibility(db: Database, review_id: str) -> dict:
    review = _review(db, review_id)
    touch(db, "delivery_review", review["_id"], {"is_visible": not review.get("is_visible", True)})
    return serialize(db["delivery_review"].find_one({"_id": review["_id"]}))
