"""
Database Schemas for the Waste Recycling Marketplace

Each Pydantic model below maps to a MongoDB collection (snake_case class name).
Documents are validated here and persisted through database.create_document.
References to other documents are stored as string ids.
"""

from pydantic import BaseModel, ConfigDict, Field, EmailStr
from pydantic.alias_generators import to_camel
from typing import Optional, List, Literal, Dict, Any
from datetime import datetime

WasteType = Literal["E-waste", "Plastic", "Polythene", "Glass", "Paper", "Metal", "Organic"]
GoalWasteType = Literal["E-waste", "Plastic", "Polythene", "Glass", "Paper", "Metal", "Organic", "Any"]


class CamelModel(BaseModel):
    """Accepts camelCase keys from clients as well as the snake_case field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Address(CamelModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None


class Quantity(BaseModel):
    value: float = Field(..., gt=0)
    unit: str = "kg"


# ------------------ Accounts ------------------

class Account(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    phone: Optional[str] = None
    address: Optional[Address] = None
    is_active: bool = True
    is_verified: bool = False


class User(Account):
    role: Literal["user"] = "user"
    points: int = 0
    total_waste_disposed: float = 0
    cash_earned: float = 0
    badges: List[str] = Field(default_factory=list)
    qr_code: Optional[str] = None
    location: Optional[GeoPoint] = None


class Collector(Account):
    role: Literal["collector"] = "collector"
    location: Optional[GeoPoint] = None
    operating_hours: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    accepted_waste_types: List[WasteType] = Field(..., min_length=1)
    description: Optional[str] = None
    total_waste_collected: float = 0
    total_transactions: int = 0
    inventory: Dict[str, float] = Field(default_factory=dict)
    total_sales: float = 0
    verified_by: Optional[str] = None


class Vendor(Account):
    role: Literal["vendor"] = "vendor"
    business_type: Literal["Physical Store", "Online", "Both"] = "Both"
    description: Optional[str] = None
    website: Optional[str] = None
    logo: Optional[str] = None
    location: Optional[GeoPoint] = None
    total_rewards: int = 0
    total_redemptions: int = 0
    unique_users: int = 0
    verified_by: Optional[str] = None


class Admin(Account):
    role: Literal["admin", "superadmin"] = "admin"
    permissions: List[str] = Field(default_factory=list)


# ------------------ Postings ------------------

class WasteOffer(BaseModel):
    collector_id: str
    waste_type: WasteType
    quantity: Quantity
    min_price_per_kg: float = Field(..., ge=0)
    description: Optional[str] = Field(default=None, max_length=500)
    status: Literal["available", "reserved", "sold", "cancelled"] = "available"
    expires_at: datetime
    location: Optional[GeoPoint] = None


class OfferLocation(BaseModel):
    address: Optional[str] = None
    city: Optional[str] = None
    coordinates: Optional[List[float]] = None  # [lng, lat]


class UserWasteOffer(BaseModel):
    user_id: str
    waste_type: WasteType
    quantity: Quantity
    description: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    expected_price: float = Field(default=0, ge=0)
    location: OfferLocation = Field(default_factory=OfferLocation)
    status: Literal["available", "pending", "sold", "cancelled"] = "available"
    available_from: datetime
    available_until: Optional[datetime] = None
    pickup_preference: Literal["anytime", "morning", "afternoon", "evening", "weekend"] = "anytime"


# ------------------ Requests ------------------

class Response(BaseModel):
    status: Literal["accepted", "rejected", "counter-offered"]
    message: Optional[str] = None
    counter_price: Optional[float] = None
    responded_at: datetime


class CollectorPurchaseRequest(BaseModel):
    offer_id: str
    buyer_id: str   # collector
    poster_id: str  # user
    offered_price: float = Field(..., gt=0)
    proposed_price: Optional[float] = None
    final_payment: Optional[float] = None
    message: Optional[str] = None
    proposed_pickup_time: datetime
    status: Literal["pending", "accepted", "rejected", "completed", "cancelled"] = "pending"
    response: Optional[Response] = None
    responded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WastePurchase(BaseModel):
    buyer_id: str   # vendor
    poster_id: str  # collector
    offer_id: Optional[str] = None
    waste_type: WasteType
    quantity: Quantity
    price_per_unit: float = Field(..., ge=0)
    total_amount: float = Field(..., ge=0)
    final_payment: Optional[float] = None
    status: Literal["pending", "accepted", "rejected", "completed", "cancelled"] = "pending"
    response: Optional[Response] = None
    pickup_date: Optional[datetime] = None
    actual_pickup_date: Optional[datetime] = None
    notes: Optional[str] = None
    responded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ------------------ Drop-offs ------------------

class WasteTransaction(BaseModel):
    user_id: str
    collector_id: str
    waste_type: WasteType
    quantity: Quantity
    points_earned: int = 0
    reward_type: Literal["points", "cash"] = "points"
    cash_amount: float = 0
    status: Literal["pending", "verified", "rejected"] = "pending"
    qr_code_scanned: bool = False
    notes: Optional[str] = None
    verified_at: Optional[datetime] = None
    location: Optional[GeoPoint] = None


# ------------------ Rewards ------------------

class Reward(BaseModel):
    vendor_id: str
    title: str
    description: str
    image: Optional[str] = None
    type: Literal["Discount", "Free Item", "Coupon", "Voucher", "Eco-Product"]
    points_required: int = Field(..., ge=0)
    discount_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    discount_amount: Optional[float] = Field(default=None, ge=0)
    stock_available: Optional[int] = Field(default=None, ge=0)  # None means unlimited
    redeemed: int = 0
    valid_from: datetime
    valid_until: datetime
    terms_and_conditions: Optional[str] = None
    is_active: bool = True
    category: Literal["Food & Beverage", "Shopping", "Services", "Eco-Products", "Other"] = "Other"


class RewardRedemption(BaseModel):
    user_id: str
    reward_id: str
    vendor_id: str
    points_used: int
    redemption_code: str
    qr_code: str
    status: Literal["active", "used", "expired"] = "active"
    used_at: Optional[datetime] = None
    expires_at: datetime


# ------------------ Gamification ------------------

class BadgeCriteria(CamelModel):
    type: Literal["waste_quantity", "transactions_count", "consecutive_days", "challenge_completion", "special"]
    threshold: float
    waste_type: GoalWasteType = "Any"


class Badge(BaseModel):
    name: str
    description: str
    icon: str
    level: Literal["Bronze", "Silver", "Gold", "Platinum", "Diamond"]
    criteria: BadgeCriteria
    points: int = 0
    rarity: Literal["Common", "Uncommon", "Rare", "Epic", "Legendary"] = "Common"
    earned_by: List[str] = Field(default_factory=list)
    is_active: bool = True


class ChallengeGoal(CamelModel):
    waste_type: GoalWasteType = "Any"
    target_quantity: float = Field(..., gt=0)
    unit: Literal["kg", "items", "transactions"] = "kg"


class ChallengeReward(CamelModel):
    points: int = Field(..., ge=0)
    badge_id: Optional[str] = None


class Participant(BaseModel):
    user_id: str
    progress: float = 0
    completed: bool = False
    completed_at: Optional[datetime] = None


class Challenge(BaseModel):
    title: str
    description: str
    icon: Optional[str] = None
    type: Literal["Daily", "Weekly", "Monthly", "Special"]
    goal: ChallengeGoal
    reward: ChallengeReward
    start_date: datetime
    end_date: datetime
    participants: List[Participant] = Field(default_factory=list)
    is_active: bool = True


# ------------------ Vendor pricing ------------------

class PriceEntry(CamelModel):
    waste_type: WasteType
    price_per_kg: float = Field(..., ge=0)
    min_quantity: float = 0
    max_quantity: Optional[float] = None
    is_active: bool = True


class VendorPricing(BaseModel):
    vendor_id: str
    pricing: List[PriceEntry] = Field(default_factory=list)
    currency: str = "LKR"
    last_updated: datetime


# ------------------ Ledger ------------------

class LedgerEntry(BaseModel):
    account_type: Literal["user", "collector", "vendor"]
    account_id: str
    field: str
    delta: float
    source: str
    source_id: str
    reason: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
