import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import cart
import catalog
import deliveries
import orders
import rentals
from activity import buyer_activities, farmer_activities
from config import Settings, get_settings
from database import db, ensure_indexes, get_db
from errors import MarketplaceError
from notifications import Notifier
from schemas import (
    AssignDriverRequest,
    CartAddRequest,
    CartCheckoutRequest,
    CartClearRequest,
    CartItemRef,
    CartUpdateRequest,
    CreateOrderRequest,
    DeliveryRequest,
    DeliveryStatusUpdate,
    InventoryCreate,
    InventoryUpdate,
    ListingCreate,
    ListingUpdate,
    MessageBody,
    OrderStatusUpdate,
    RentalBookingRequest,
    RentalItemCreate,
    RentalItemUpdate,
    ReplyBody,
    ReviewCreate,
    ReviewUpdate,
    Role,
    RoleUpdate,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    else:
        logger.warning("DATABASE_URL is not set; requests needing the database will fail")
    yield


app = FastAPI(title="AgroLink Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Errors
@app.exception_handler(MarketplaceError)
def handle_marketplace_error(request, exc: MarketplaceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message}},
    )


HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    503: "SERVICE_UNAVAILABLE",
}


@app.exception_handler(StarletteHTTPException)
def handle_http_error(request, exc: StarletteHTTPException):
    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": code, "message": str(exc.detail)}},
        headers=exc.headers,
    )


def _describe(err: dict) -> str:
    loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
    msg = err.get("msg", "Invalid value").removeprefix("Value error, ")
    return f"{loc}: {msg}" if loc else msg


@app.exception_handler(RequestValidationError)
def handle_request_validation(request, exc: RequestValidationError):
    message = "; ".join(_describe(e) for e in exc.errors()) or "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"error": {"code": "VALIDATION_ERROR", "message": message}},
    )


@app.exception_handler(Exception)
def handle_unexpected(request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "SERVER_ERROR", "message": "Something went wrong"}},
    )


# Dependencies
def get_notifier(background_tasks: BackgroundTasks, settings: Settings = Depends(get_settings)) -> Notifier:
    return Notifier(settings, background_tasks)


customer = auth.require_role(Role.FARMER, Role.BUYER)
farmer = auth.require_role(Role.FARMER)
admin = auth.require_role(Role.ADMIN)
driver = auth.require_role(Role.DRIVER)


@app.get("/")
def read_root():
    return {"message": "AgroLink API running"}


@app.get("/api/health")
def health():
    response = {
        "backend": "running",
        "database": "not configured",
        "database_name": None,
        "collections": [],
    }
    if db is not None:
        response["database_name"] = db.name
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "connected"
        except Exception as e:
            logger.warning("Health check could not reach the database: %s", e)
            response["database"] = "unreachable"
    return response


# Auth models
class SignupRequest(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Role = Role.BUYER
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class AuthResponse(BaseModel):
    user: dict
    token: str


# Auth endpoints
@app.post("/api/auth/signup", response_model=AuthResponse, status_code=201)
def signup(payload: SignupRequest, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    return auth.signup(
        db, settings, payload.full_name, payload.email, payload.password,
        role=payload.role.value, phone=payload.phone,
    )


@app.post("/api/auth/login", response_model=AuthResponse)
def login(payload: LoginRequest, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    return auth.login(db, settings, payload.email, payload.password)


@app.post("/api/auth/logout")
def logout(token: str = Depends(auth.bearer_token), db: Database = Depends(get_db)):
    auth.logout(db, token)
    return {"message": "Logged out"}


@app.get("/api/auth/me")
def me(user: dict = Depends(auth.require_auth)):
    return auth.public_user(user)


@app.delete("/api/auth/me")
def delete_me(user: dict = Depends(auth.require_auth), db: Database = Depends(get_db)):
    auth.delete_account(db, user)
    return {"message": "Account deleted"}


@app.get("/api/auth/users")
def list_users(role: Optional[str] = None, _: dict = Depends(admin), db: Database = Depends(get_db)):
    return auth.list_users(db, role)


@app.patch("/api/auth/users/{user_id}/role")
def update_user_role(user_id: str, payload: RoleUpdate, _: dict = Depends(admin), db: Database = Depends(get_db)):
    return auth.update_role(db, user_id, payload.role)


# Listings
@app.get("/api/listings")
def public_listings(db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    return catalog.available_listings(db, settings)


@app.get("/api/listings/all")
def all_listings(_: dict = Depends(admin), db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    return catalog.all_listings(db, settings)


@app.get("/api/listings/mine")
def my_listings(user: dict = Depends(farmer), db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    return catalog.my_listings(db, settings, user["_id"])


@app.post("/api/listings", status_code=201)
def create_listing(
    payload: ListingCreate,
    user: dict = Depends(farmer),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return catalog.create_listing(db, settings, user["_id"], payload)


@app.put("/api/listings/{listing_id}")
def update_listing(
    listing_id: str,
    payload: ListingUpdate,
    user: dict = Depends(farmer),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return catalog.update_listing(db, settings, user["_id"], listing_id, payload)


@app.delete("/api/listings/{listing_id}")
def delete_listing(listing_id: str, user: dict = Depends(farmer), db: Database = Depends(get_db)):
    catalog.delete_listing(db, user["_id"], listing_id)
    return {"message": "Listing deleted"}


@app.delete("/api/listings/{listing_id}/admin")
def admin_delete_listing(listing_id: str, _: dict = Depends(admin), db: Database = Depends(get_db)):
    catalog.delete_listing(db, None, listing_id)
    return {"message": "Listing deleted"}


# Inventory
@app.get("/api/inventory")
def list_inventory(_: dict = Depends(auth.require_auth), db: Database = Depends(get_db)):
    return catalog.list_inventory(db)


@app.post("/api/inventory", status_code=201)
def create_inventory(
    payload: InventoryCreate,
    _: dict = Depends(admin),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return catalog.create_inventory(db, settings, payload)


@app.put("/api/inventory/{item_id}")
def update_inventory(
    item_id: str,
    payload: InventoryUpdate,
    _: dict = Depends(admin),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return catalog.update_inventory(db, settings, item_id, payload)


@app.delete("/api/inventory/{item_id}")
def delete_inventory(item_id: str, _: dict = Depends(admin), db: Database = Depends(get_db)):
    catalog.delete_inventory(db, item_id)
    return {"message": "Deleted"}


# Rentals
@app.get("/api/rentals")
def list_rentals(db: Database = Depends(get_db)):
    return rentals.list_items(db)


@app.get("/api/rentals/{item_id}/availability")
def rental_availability(
    item_id: str, start: date, end: date, _: dict = Depends(farmer), db: Database = Depends(get_db)
):
    return rentals.availability(db, item_id, start, end)


@app.post("/api/rentals/{item_id}/book", status_code=201)
def book_rental(
    item_id: str, payload: RentalBookingRequest, user: dict = Depends(farmer), db: Database = Depends(get_db)
):
    return rentals.book(db, item_id, user["_id"], payload)


@app.post("/api/rentals", status_code=201)
def create_rental(
    payload: RentalItemCreate,
    _: dict = Depends(admin),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return rentals.create_item(db, settings, payload)


@app.put("/api/rentals/{item_id}")
def update_rental(
    item_id: str,
    payload: RentalItemUpdate,
    _: dict = Depends(admin),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return rentals.update_item(db, settings, item_id, payload)


@app.delete("/api/rentals/{item_id}")
def delete_rental(item_id: str, _: dict = Depends(admin), db: Database = Depends(get_db)):
    rentals.delete_item(db, item_id)
    return {"message": "Deleted"}


# Cart
@app.get("/api/cart")
def get_cart(user: dict = Depends(customer), db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    return cart.get_cart(db, settings, user["_id"])


@app.get("/api/cart/count")
def cart_count(user: dict = Depends(customer), db: Database = Depends(get_db)):
    return {"count": cart.cart_count(db, user["_id"])}


@app.post("/api/cart/add")
def add_to_cart(
    payload: CartAddRequest,
    user: dict = Depends(customer),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return cart.add_to_cart(db, settings, user["_id"], payload)


@app.put("/api/cart/update")
def update_cart_item(
    payload: CartUpdateRequest,
    user: dict = Depends(customer),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return cart.update_cart_item(db, settings, user["_id"], payload)


@app.delete("/api/cart/remove")
def remove_from_cart(payload: CartItemRef, user: dict = Depends(customer), db: Database = Depends(get_db)):
    return cart.remove_from_cart(db, user["_id"], payload)


@app.post("/api/cart/clear")
def clear_cart(payload: CartClearRequest, user: dict = Depends(customer), db: Database = Depends(get_db)):
    return cart.clear_purchased(db, user["_id"], payload)


# Orders
@app.post("/api/orders", status_code=201)
def create_order(
    payload: CreateOrderRequest,
    user: dict = Depends(customer),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
):
    return orders.create_order(db, settings, notifier, user, payload)


@app.post("/api/orders/from-cart", status_code=201)
def create_order_from_cart(
    payload: CartCheckoutRequest,
    user: dict = Depends(customer),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
):
    return orders.create_order_from_cart(db, settings, notifier, user, payload)


@app.get("/api/orders/me")
def my_orders(user: dict = Depends(customer), db: Database = Depends(get_db)):
    return orders.my_orders(db, user["_id"])


@app.get("/api/orders/stats/farmer")
def farmer_stats(user: dict = Depends(farmer), db: Database = Depends(get_db)):
    return orders.farmer_stats(db, user["_id"])


@app.get("/api/orders/activities/farmer")
def farmer_activity_feed(limit: int = 20, user: dict = Depends(farmer), db: Database = Depends(get_db)):
    return farmer_activities(db, user["_id"], limit=limit if limit > 0 else 20)


@app.get("/api/orders/activities/buyer")
def buyer_activity_feed(limit: int = 20, user: dict = Depends(customer), db: Database = Depends(get_db)):
    return buyer_activities(db, user["_id"], limit=limit if limit > 0 else 20)


@app.get("/api/orders")
def list_orders(
    status: Optional[str] = None,
    delivery_type: Optional[str] = None,
    _: dict = Depends(admin),
    db: Database = Depends(get_db),
):
    return orders.list_orders(db, status, delivery_type)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(auth.require_auth), db: Database = Depends(get_db)):
    return orders.get_order(db, user, order_id)


@app.patch("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    user: dict = Depends(admin),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
):
    return orders.update_status(db, settings, notifier, user, order_id, payload.status)


@app.patch("/api/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    user: dict = Depends(auth.require_auth),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
):
    return orders.cancel_order(db, settings, notifier, user, order_id)


# Deliveries
@app.post("/api/deliveries", status_code=201)
def request_delivery(payload: DeliveryRequest, user: dict = Depends(customer), db: Database = Depends(get_db)):
    return deliveries.request_delivery(db, user, payload)


@app.get("/api/deliveries/me")
def my_deliveries(user: dict = Depends(customer), db: Database = Depends(get_db)):
    return deliveries.my_deliveries(db, user["_id"])


@app.get("/api/deliveries/order/{order_id}")
def delivery_for_order(order_id: str, user: dict = Depends(customer), db: Database = Depends(get_db)):
    return deliveries.delivery_for_order(db, user["_id"], order_id)


@app.get("/api/deliveries/driver/me")
def driver_deliveries(user: dict = Depends(driver), db: Database = Depends(get_db)):
    return deliveries.driver_deliveries(db, user["_id"])


@app.get("/api/deliveries/driver/pending")
def driver_pending(user: dict = Depends(driver), db: Database = Depends(get_db)):
    return deliveries.driver_pending(db, user["_id"])


@app.get("/api/deliveries")
def list_deliveries(status: Optional[str] = None, _: dict = Depends(admin), db: Database = Depends(get_db)):
    return deliveries.list_deliveries(db, status)


@app.post("/api/deliveries/{delivery_id}/assign")
def assign_driver(
    delivery_id: str, payload: AssignDriverRequest, user: dict = Depends(admin), db: Database = Depends(get_db)
):
    return deliveries.assign_driver(db, user["_id"], delivery_id, payload.driver_id)


@app.post("/api/deliveries/{delivery_id}/offer")
def offer_delivery(
    delivery_id: str, payload: AssignDriverRequest, user: dict = Depends(admin), db: Database = Depends(get_db)
):
    return deliveries.offer_delivery(db, user["_id"], delivery_id, payload.driver_id)


@app.post("/api/deliveries/{delivery_id}/accept")
def accept_delivery(delivery_id: str, user: dict = Depends(driver), db: Database = Depends(get_db)):
    return deliveries.respond_to_offer(db, user["_id"], delivery_id, accept=True)


@app.post("/api/deliveries/{delivery_id}/decline")
def decline_delivery(delivery_id: str, user: dict = Depends(driver), db: Database = Depends(get_db)):
    return deliveries.respond_to_offer(db, user["_id"], delivery_id, accept=False)


@app.post("/api/deliveries/{delivery_id}/status")
def driver_update_status(
    delivery_id: str, payload: DeliveryStatusUpdate, user: dict = Depends(driver), db: Database = Depends(get_db)
):
    return deliveries.driver_update_status(db, user["_id"], delivery_id, payload.status.value)


@app.patch("/api/deliveries/{delivery_id}/cancel")
def admin_cancel_delivery(delivery_id: str, user: dict = Depends(admin), db: Database = Depends(get_db)):
    return deliveries.admin_cancel(db, user["_id"], delivery_id)


@app.delete("/api/deliveries/{delivery_id}")
def admin_delete_delivery(delivery_id: str, _: dict = Depends(admin), db: Database = Depends(get_db)):
    deliveries.admin_delete(db, delivery_id)
    return {"message": "Delivery deleted successfully"}


# Delivery messages
@app.post("/api/deliveries/{delivery_id}/messages", status_code=201)
def send_delivery_message(
    delivery_id: str, payload: MessageBody, user: dict = Depends(customer), db: Database = Depends(get_db)
):
    return deliveries.send_customer_message(db, user["_id"], delivery_id, payload)


@app.get("/api/deliveries/{delivery_id}/messages")
def delivery_messages(delivery_id: str, user: dict = Depends(customer), db: Database = Depends(get_db)):
    return deliveries.my_messages(db, user["_id"], delivery_id)


@app.get("/api/delivery-messages")
def list_delivery_messages(
    message_type: Optional[str] = None,
    sender_type: Optional[str] = None,
    delivery: Optional[str] = None,
    limit: int = 50,
    _: dict = Depends(admin),
    db: Database = Depends(get_db),
):
    return deliveries.list_messages(db, message_type, sender_type, delivery, limit=limit)


@app.get("/api/delivery-messages/unread-count")
def unread_messages(_: dict = Depends(admin), db: Database = Depends(get_db)):
    return {"count": deliveries.unread_count(db)}


@app.patch("/api/delivery-messages/read-all")
def mark_all_messages_read(_: dict = Depends(admin), db: Database = Depends(get_db)):
    deliveries.mark_all_read(db)
    return {"message": "All messages marked as read"}


@app.patch("/api/delivery-messages/{message_id}/read")
def mark_message_read(message_id: str, _: dict = Depends(admin), db: Database = Depends(get_db)):
    deliveries.mark_read(db, message_id)
    return {"message": "Message marked as read"}


@app.post("/api/delivery-messages/{message_id}/reply", status_code=201)
def reply_to_message(message_id: str, payload: ReplyBody, user: dict = Depends(admin), db: Database = Depends(get_db)):
    return deliveries.reply_to_message(db, user["_id"], message_id, payload)


@app.put("/api/delivery-messages/{message_id}")
def update_manager_message(
    message_id: str, payload: MessageBody, _: dict = Depends(admin), db: Database = Depends(get_db)
):
    return deliveries.update_manager_message(db, message_id, payload)


@app.delete("/api/delivery-messages/{message_id}")
def delete_manager_message(message_id: str, _: dict = Depends(admin), db: Database = Depends(get_db)):
    deliveries.delete_manager_message(db, message_id)
    return {"message": "Message deleted successfully"}


# Delivery reviews
@app.post("/api/delivery-reviews", status_code=201)
def create_review(payload: ReviewCreate, user: dict = Depends(customer), db: Database = Depends(get_db)):
    return deliveries.create_review(db, user, payload)


@app.get("/api/delivery-reviews/me")
def my_reviews(user: dict = Depends(customer), db: Database = Depends(get_db)):
    return deliveries.my_reviews(db, user["_id"])


@app.get("/api/delivery-reviews")
def list_reviews(
    rating: Optional[int] = None,
    visible: Optional[bool] = None,
    _: dict = Depends(admin),
    db: Database = Depends(get_db),
):
    return deliveries.list_reviews(db, rating, visible)


@app.put("/api/delivery-reviews/{review_id}")
def update_review(review_id: str, payload: ReviewUpdate, user: dict = Depends(customer), db: Database = Depends(get_db)):
    return deliveries.update_review(db, user["_id"], review_id, payload)


@app.delete("/api/delivery-reviews/{review_id}")
def delete_review(review_id: str, user: dict = Depends(customer), db: Database = Depends(get_db)):
    deliveries.delete_review(db, user["_id"], review_id)
    return {"message": "Review deleted successfully"}


@app.post("/api/delivery-reviews/{review_id}/reply")
def reply_to_review(review_id: str, payload: ReplyBody, user: dict = Depends(admin), db: Database = Depends(get_db)):
    return deliveries.reply_to_review(db, user["_id"], review_id, payload)


@app.patch("/api/delivery-reviews/{review_id}/visibility")
def toggle_review_visibility(review_id: str, _: dict = Depends(admin), db: Database = Depends(get_db)):
    return deliveries.toggle_review_visibility(db, review_id)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
