"""
Database Schemas for the Campus Merchandise Store

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercased class name (e.g., GroupOrder -> "grouporder"). Embedded sub-documents
are plain models used inside those collections.
"""
from datetime import datetime
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr

ProductCategory = Literal["apparel", "accessories", "stationery", "electronics", "sports", "books", "gifts", "other"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded"]
PaymentMethod = Literal["razorpay", "paytm", "upi", "cod"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded"]
GroupStatus = Literal["active", "closed", "completed", "cancelled"]
DistributionStatus = Literal["pending", "assigned", "ready", "in_transit", "delivered", "cancelled"]
ItemStatus = Literal["pending", "packed", "shipped", "delivered"]
ReviewStatus = Literal["pending", "approved", "rejected"]

# Users

class User(BaseModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None
    department: Optional[str] = None
    role: Literal["student", "department_head", "admin"] = "student"
    is_active: bool = True

# Catalog

class ProductImage(BaseModel):
    url: str
    alt: Optional[str] = None
    is_primary: bool = False

class VariantOption(BaseModel):
    value: str
    price_modifier: float = 0
    stock: int = 0

class Variant(BaseModel):
    name: str
    type: Literal["size", "color", "material", "other"]
    options: List[VariantOption] = []

class Rating(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = 0

class Sales(BaseModel):
    total_sold: int = 0
    revenue: float = 0

class Product(BaseModel):
    name: str = Field(..., max_length=200)
    description: str = Field(..., max_length=2000)
    category: ProductCategory
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100, description="Percent off the list price")
    stock: int = Field(0, ge=0)
    sku: Optional[str] = None
    images: List[ProductImage] = []
    variants: List[Variant] = []
    tags: List[str] = []
    is_featured: bool = False
    is_active: bool = True
    rating: Rating = Field(default_factory=Rating)
    sales: Sales = Field(default_factory=Sales)
    created_by: Optional[str] = None

# Orders

class Address(BaseModel):
    type: Literal["home", "work", "other"] = "home"
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    country: str = "India"
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None

class VariantSnapshot(BaseModel):
    name: Optional[str] = None
    value: Optional[str] = None
    price_modifier: float = 0

class OrderItem(BaseModel):
    product_id: str
    name: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price snapshot after product discount")
    variant: VariantSnapshot = Field(default_factory=VariantSnapshot)
    total_price: float = Field(..., ge=0)

class Pricing(BaseModel):
    subtotal: float = 0
    discount: float = 0
    tax: float = 0
    shipping: float = 0
    total: float = 0

class PaymentInfo(BaseModel):
    method: PaymentMethod
    status: PaymentStatus = "pending"
    transaction_id: Optional[str] = None
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[float] = None
    refund_reason: Optional[str] = None

class OrderDistribution(BaseModel):
    assigned_to: Optional[str] = None
    location: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    actual_date: Optional[datetime] = None
    notes: Optional[str] = None
    status: Literal["pending", "assigned", "ready", "picked_up", "delivered"] = "pending"

class OrderNotes(BaseModel):
    customer: str = ""
    admin: str = ""

class TimelineEntry(BaseModel):
    status: str
    timestamp: datetime
    note: Optional[str] = None
    updated_by: Optional[str] = None

class Order(BaseModel):
    order_number: str
    user_id: str
    items: List[OrderItem]
    order_type: Literal["individual", "group"] = "individual"
    group_order_id: Optional[str] = None
    shipping_address: Address
    billing_address: Address
    pricing: Pricing
    status: OrderStatus = "pending"
    payment: PaymentInfo
    distribution: OrderDistribution = Field(default_factory=OrderDistribution)
    notes: OrderNotes = Field(default_factory=OrderNotes)
    timeline: List[TimelineEntry] = []
    is_active: bool = True

# Group orders

class GroupMember(BaseModel):
    user_id: str
    role: Literal["member", "admin"] = "member"
    joined_at: datetime

class GroupSettings(BaseModel):
    allow_member_orders: bool = True
    require_approval: bool = False
    max_order_value: Optional[float] = Field(None, ge=0)
    deadline: datetime
    distribution_date: Optional[datetime] = None
    distribution_location: Optional[str] = None

class GroupPayment(BaseModel):
    status: Literal["pending", "partial", "completed", "failed"] = "pending"
    collected_amount: float = 0
    pending_amount: float = 0
    method: Optional[Literal["razorpay", "paytm", "upi", "cod", "mixed"]] = None

class GroupOrder(BaseModel):
    name: str = Field(..., max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    department: str
    organizer_id: str
    members: List[GroupMember] = []
    order_ids: List[str] = []
    status: GroupStatus = "active"
    settings: GroupSettings
    pricing: Pricing = Field(default_factory=Pricing)
    payment: GroupPayment = Field(default_factory=GroupPayment)
    is_active: bool = True

# Distribution

class ContactPerson(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None

class LocationAddress(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None

class DistributionLocation(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    address: LocationAddress = Field(default_factory=LocationAddress)
    contact_person: ContactPerson = Field(default_factory=ContactPerson)

class Tracking(BaseModel):
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    notes: Optional[str] = None

class DistributionItem(BaseModel):
    item_id: str
    product_id: str
    quantity: int = Field(..., ge=1)
    status: ItemStatus = "pending"
    notes: Optional[str] = None

class Receiver(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    phone: str
    signature: Optional[str] = None

class DeliveryProof(BaseModel):
    signature: str = ""
    image: str = ""
    delivered_by: Optional[str] = None
    received_by: Receiver

class Distribution(BaseModel):
    order_id: str
    group_order_id: Optional[str] = None
    assigned_to: str
    location: DistributionLocation
    scheduled_date: datetime
    actual_date: Optional[datetime] = None
    status: DistributionStatus = "pending"
    tracking: Tracking = Field(default_factory=Tracking)
    items: List[DistributionItem] = []
    delivery_proof: Optional[DeliveryProof] = None
    timeline: List[TimelineEntry] = []
    is_active: bool = True

# Reviews

class ReviewImage(BaseModel):
    url: str
    alt: Optional[str] = None

class HelpfulVotes(BaseModel):
    count: int = 0
    users: List[str] = []

class AdminResponse(BaseModel):
    message: str
    responded_by: Optional[str] = None
    responded_at: datetime

class Review(BaseModel):
    user_id: str
    product_id: str
    order_id: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: str = Field(..., max_length=1000)
    images: List[ReviewImage] = []
    visibility: Literal["public", "private"] = "public"
    status: ReviewStatus = "pending"
    helpful: HelpfulVotes = Field(default_factory=HelpfulVotes)
    verified: bool = False
    admin_response: Optional[AdminResponse] = None
    is_active: bool = True

# Notifications

class Notification(BaseModel):
    user_id: str
    title: str
    message: str
    type: Literal["order", "distribution", "payment", "review", "system"] = "order"
    read: bool = False
