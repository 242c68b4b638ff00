"""
Database Schemas for the AgroLink marketplace

Each Pydantic model represents a collection in MongoDB. The collection name is the
snake_case of the class name (e.g., InventoryProduct -> "inventory_product").
References between collections are stored as ObjectIds.

Request bodies shared by more than one service live at the bottom of this module.
"""

import re
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


class Role(str, Enum):
    FARMER = "FARMER"
    BUYER = "BUYER"
    ADMIN = "ADMIN"
    DRIVER = "DRIVER"
    AGRONOMIST = "AGRONOMIST"


CUSTOMER_ROLES = (Role.FARMER.value, Role.BUYER.value)


class ListingStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    SOLD = "SOLD"
    REMOVED = "REMOVED"


class InventoryStatus(str, Enum):
    AVAILABLE = "Available"
    LOW_STOCK = "Low stock"
    OUT_OF_STOCK = "Out of stock"


class InventoryCategory(str, Enum):
    SEEDS = "seeds"
    FERTILIZERS = "fertilizers"
    PESTICIDES = "pesticides"
    CHEMICALS = "chemicals"
    EQUIPMENT = "equipment"
    IRRIGATION = "irrigation"


class ItemType(str, Enum):
    INVENTORY = "inventory"
    LISTING = "listing"
    RENTAL = "rental"


class OrderStatus(str, Enum):
    NOT_READY = "NOT READY"
    READY = "READY"
    CANCELLED = "CANCELLED"


class DeliveryType(str, Enum):
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNMENT_PENDING = "ASSIGNMENT_PENDING"
    ASSIGNED = "ASSIGNED"
    PREPARING = "PREPARING"
    COLLECTED = "COLLECTED"
    IN_TRANSIT = "IN_TRANSIT"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class AssignmentState(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


class BookingStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class MessageType(str, Enum):
    CANCELLATION_REPLY = "CANCELLATION_REPLY"
    ASSIGNMENT_REPLY = "ASSIGNMENT_REPLY"
    STATUS_UPDATE = "STATUS_UPDATE"
    CUSTOMER_MESSAGE = "CUSTOMER_MESSAGE"
    MANAGER_REPLY = "MANAGER_REPLY"


class SenderType(str, Enum):
    SYSTEM = "SYSTEM"
    CUSTOMER = "CUSTOMER"
    MANAGER = "MANAGER"


class ActivityType(str, Enum):
    LISTING_ADDED = "LISTING_ADDED"
    ITEM_SOLD = "ITEM_SOLD"
    ITEM_EXPIRED = "ITEM_EXPIRED"
    LISTING_UPDATED = "LISTING_UPDATED"
    LISTING_REMOVED = "LISTING_REMOVED"


class BuyerActivityType(str, Enum):
    ORDER_PLACED = "ORDER_PLACED"
    ORDER_CANCELLED = "ORDER_CANCELLED"


class Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, use_enum_values=True)


# ---------- Users ----------

class User(Document):
    """
    Users collection schema
    Collection name: "user"
    """
    full_name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Hashed password")
    role: Role = Role.BUYER
    phone: Optional[str] = None
    is_active: bool = Field(True, description="Whether user is active")


class Session(Document):
    """
    Bearer tokens handed out at login
    Collection name: "session"
    """
    token: str
    user_id: ObjectId
    expires_at: datetime


# ---------- Catalog ----------

class Listing(Document):
    """
    Farmer produce listings, priced per kg
    Collection name: "listing"
    """
    farmer: ObjectId
    crop_name: str
    price_per_kg: float = Field(..., ge=0)
    capacity_kg: int = Field(..., ge=0, description="How much is offered to sell")
    details: str = ""
    images: List[str] = Field(default_factory=list, max_length=4)
    harvested_at: datetime
    expire_after_days: Optional[int] = Field(None, ge=1)
    status: ListingStatus = ListingStatus.AVAILABLE


class InventoryProduct(Document):
    """
    Farm supplies sold by the platform
    Collection name: "inventory_product"
    """
    name: str = Field(..., max_length=200)
    category: InventoryCategory
    description: str = Field("", max_length=2000)
    images: List[str] = Field(default_factory=list, max_length=4)
    stock_quantity: int = Field(0, ge=0)
    price: float = Field(..., ge=0)
    status: InventoryStatus = InventoryStatus.AVAILABLE


class RentalItem(Document):
    """
    Equipment available for rent by the day
    Collection name: "rental_item"
    """
    product_name: str = Field(..., max_length=200)
    description: str = Field("", max_length=2000)
    rental_per_day: float = Field(..., ge=0)
    images: List[str] = Field(default_factory=list, max_length=4)
    total_qty: int = Field(..., ge=0)


class RentalBooking(Document):
    """
    Reserved quantity of a rental item over an inclusive date range
    Collection name: "rental_booking"
    """
    item: ObjectId
    renter: ObjectId
    quantity: int = Field(..., ge=1)
    start_date: datetime
    end_date: datetime
    status: BookingStatus = BookingStatus.CONFIRMED
    notes: str = Field("", max_length=1000)
    order_id: Optional[ObjectId] = None


# ---------- Cart ----------

class CartItem(Document):
    item_id: ObjectId
    item_type: ItemType
    title: str
    price: float = Field(..., ge=0)
    image: str = ""
    category: str = ""
    quantity: int = Field(..., ge=1)
    max_quantity: int = Field(..., ge=0)
    unit: str = "units"
    rental_start_date: Optional[datetime] = None
    rental_end_date: Optional[datetime] = None
    rental_per_day: Optional[float] = None


class Cart(Document):
    """
    Shopping cart collection schema
    Collection name: "cart"
    """
    user: ObjectId
    items: List[CartItem] = Field(default_factory=list)


# ---------- Orders ----------

class Address(BaseModel):
    line1: str = Field(..., min_length=1)
    line2: str = ""
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)

    @field_validator("line1", "line2", "city", "state", "postal_code")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class OrderItem(Document):
    item_id: ObjectId
    item_type: ItemType
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price; per-day rate for rentals")
    title: str
    image: str = ""
    line_total: float = Field(..., ge=0)
    rental_start_date: Optional[datetime] = None
    rental_end_date: Optional[datetime] = None
    rental_per_day: Optional[float] = None


class Order(Document):
    """
    Orders collection schema
    Collection name: "order"
    """
    order_number: str
    customer: ObjectId
    customer_role: Role
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    delivery_fee: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    status: OrderStatus = OrderStatus.NOT_READY
    delivery_type: DeliveryType
    delivery_address: Optional[Address] = None
    contact_name: str
    contact_phone: str
    contact_email: str
    notes: str = Field("", max_length=1000)
    delivery: Optional[ObjectId] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_status: PaymentStatus = PaymentStatus.PENDING


# ---------- Deliveries ----------

class StatusEntry(Document):
    status: DeliveryStatus
    updated_at: datetime
    updated_by: Optional[ObjectId] = None


class Assignment(Document):
    status: AssignmentState = AssignmentState.PENDING
    assigned_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    response: Optional[AssignmentState] = None


class Delivery(Document):
    """
    Logistics record for a DELIVERY order
    Collection name: "delivery"
    """
    order: ObjectId
    requester: ObjectId
    requester_role: Role
    contact_name: str
    phone: str
    address: Address
    notes: str = Field("", max_length=1000)
    status: DeliveryStatus = DeliveryStatus.PENDING
    driver: Optional[ObjectId] = None
    status_history: List[StatusEntry] = Field(default_factory=list)
    review: Optional[ObjectId] = None
    assignment_status: Assignment = Field(default_factory=Assignment)


class DeliveryMessage(Document):
    """
    Delivery manager message thread
    Collection name: "delivery_message"
    """
    delivery: ObjectId
    order: ObjectId
    message: str = Field(..., max_length=1000)
    message_type: MessageType = MessageType.CANCELLATION_REPLY
    sender_type: SenderType = SenderType.SYSTEM
    is_read: bool = False
    read_at: Optional[datetime] = None
    created_by: ObjectId


class AdminReply(Document):
    reply: str = ""
    replied_by: Optional[ObjectId] = None
    replied_at: Optional[datetime] = None
    is_visible: bool = True


class DeliveryReview(Document):
    """
    Collection name: "delivery_review"
    """
    delivery: ObjectId
    reviewer: ObjectId
    reviewer_role: Role
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., max_length=1000)
    admin_reply: AdminReply = Field(default_factory=AdminReply)
    is_visible: bool = True


# ---------- Activity feeds ----------

class Activity(Document):
    """
    Farmer dashboard feed
    Collection name: "activity"
    """
    farmer: ObjectId
    type: ActivityType
    title: str
    description: str
    listing_id: Optional[ObjectId] = None
    order_id: Optional[ObjectId] = None
    metadata: dict = Field(default_factory=dict)


class BuyerActivity(Document):
    """
    Collection name: "buyer_activity"
    """
    buyer: ObjectId
    type: BuyerActivityType
    title: str
    description: str
    order_id: Optional[ObjectId] = None
    metadata: dict = Field(default_factory=dict)


# ---------- Request bodies ----------

CROP_NAME_RE = re.compile(r"^[A-Za-z0-9 ]+$")


class ListingCreate(BaseModel):
    crop_name: str
    price_per_kg: float = Field(..., ge=0)
    capacity_kg: int = Field(..., ge=0)
    details: str = ""
    harvested_at: datetime
    expire_after_days: Optional[int] = Field(None, ge=1)
    images: List[str] = Field(default_factory=list)

    @field_validator("crop_name")
    @classmethod
    def _crop_name(cls, value: str) -> str:
        value = value.strip()
        if not CROP_NAME_RE.match(value):
            raise ValueError("Crop name must contain letters and numbers only")
        return value


class ListingUpdate(BaseModel):
    crop_name: Optional[str] = None
    price_per_kg: Optional[float] = Field(None, ge=0)
    capacity_kg: Optional[int] = Field(None, ge=0)
    details: Optional[str] = None
    harvested_at: Optional[datetime] = None
    expire_after_days: Optional[int] = Field(None, ge=1)
    status: Optional[ListingStatus] = None
    images: Optional[List[str]] = None

    @field_validator("crop_name")
    @classmethod
    def _crop_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not CROP_NAME_RE.match(value):
            raise ValueError("Crop name must contain letters and numbers only")
        return value

    @field_validator("status", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class InventoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    category: InventoryCategory
    description: str = Field("", max_length=2000)
    images: List[str] = Field(default_factory=list)
    stock_quantity: int = Field(0, ge=0)
    price: float = Field(..., ge=0)

    @field_validator("category", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class InventoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    category: Optional[InventoryCategory] = None
    description: Optional[str] = Field(None, max_length=2000)
    images: Optional[List[str]] = None
    stock_quantity: Optional[int] = Field(None, ge=0)
    price: Optional[float] = Field(None, ge=0)

    @field_validator("category", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class RentalItemCreate(BaseModel):
    product_name: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=2000)
    rental_per_day: float = Field(..., ge=0)
    total_qty: int = Field(..., ge=0)
    images: List[str] = Field(default_factory=list)


class RentalItemUpdate(BaseModel):
    product_name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    rental_per_day: Optional[float] = Field(None, ge=0)
    total_qty: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None


class DateRange(BaseModel):
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def _ordered(self):
        if self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class RentalBookingRequest(DateRange):
    quantity: int = Field(..., ge=1)
    notes: str = Field("", max_length=1000)


class CartAddRequest(BaseModel):
    item_id: str
    item_type: str
    quantity: int = 1
    rental_start_date: Optional[date] = None
    rental_end_date: Optional[date] = None


class CartUpdateRequest(BaseModel):
    item_id: str
    item_type: ItemType
    quantity: int


class CartItemRef(BaseModel):
    item_id: str
    item_type: ItemType
    rental_start_date: Optional[date] = Field(None, description="Picks one date range of a rental line")
    rental_end_date: Optional[date] = None


class CartClearRequest(BaseModel):
    purchased_item_ids: List[str]


class InventoryLine(BaseModel):
    item_type: Literal["inventory"] = "inventory"
    item_id: str
    quantity: int = Field(..., ge=1)


class ListingLine(BaseModel):
    item_type: Literal["listing"] = "listing"
    item_id: str
    quantity: int = Field(..., ge=1)


class RentalLine(BaseModel):
    item_type: Literal["rental"] = "rental"
    item_id: str
    quantity: int = Field(..., ge=1)
    rental_start_date: date
    rental_end_date: date


OrderLine = Annotated[
    Union[InventoryLine, ListingLine, RentalLine], Field(discriminator="item_type")
]


class CheckoutDetails(BaseModel):
    delivery_type: DeliveryType
    delivery_address: Optional[Address] = None
    contact_name: str = Field(..., min_length=1)
    contact_phone: str = Field(..., min_length=1)
    contact_email: EmailStr
    notes: str = Field("", max_length=1000)
    payment_method: PaymentMethod = PaymentMethod.CASH

    @model_validator(mode="after")
    def _address_for_delivery(self):
        if self.delivery_type == DeliveryType.DELIVERY and self.delivery_address is None:
            raise ValueError("Delivery address required for delivery orders")
        return self


class CreateOrderRequest(CheckoutDetails):
    items: List[OrderLine] = Field(..., min_length=1)


class CartCheckoutRequest(CheckoutDetails):
    selected_items: List[CartItemRef] = Field(..., min_length=1)


class DeliveryRequest(BaseModel):
    order_id: str
    full_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: Address
    notes: str = Field("", max_length=1000)


class MessageBody(BaseModel):
    message: str

    @field_validator("message")
    @classmethod
    def _bounded(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message is required")
        if len(value) > 1000:
            raise ValueError("Message is too long (max 1000 characters)")
        return value


class ReviewCreate(BaseModel):
    delivery_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1, max_length=1000)


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, min_length=1, max_length=1000)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class AssignDriverRequest(BaseModel):
    driver_id: str


class DeliveryStatusUpdate(BaseModel):
    status: DeliveryStatus


class ReplyBody(BaseModel):
    reply: str

    @field_validator("reply")
    @classmethod
    def _bounded(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Reply is required")
        if len(value) > 1000:
            raise ValueError("Reply is too long (max 1000 characters)")
        return value


class RoleUpdate(BaseModel):
    role: Role
