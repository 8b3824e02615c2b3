from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import Field, ValidationError as PydanticValidationError
from pymongo import ReturnDocument

import analytics
import rewards
from auth import require_role, update_account
from database import get_db
from errors import ValidationError
from helpers import now, ok, to_object_id
from negotiation import VENDOR_PURCHASE_FLOW, Negotiation, create_vendor_purchase
from schemas import Address, CamelModel, GeoPoint, PriceEntry, VendorPricing

router = APIRouter(prefix="/api/vendors", tags=["vendors"])

current_vendor = require_role("vendor")


@router.get("/dashboard")
def dashboard(vendor=Depends(current_vendor), db=Depends(get_db)):
    return ok(analytics.vendor_dashboard(db, vendor))


# ------------------ Rewards ------------------

class RewardPayload(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    type: Optional[str] = None
    points_required: Optional[int] = None
    discount_percentage: Optional[float] = None
    discount_amount: Optional[float] = None
    stock_available: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    terms_and_conditions: Optional[str] = None
    is_active: Optional[bool] = None
    category: Optional[str] = None


@router.post("/rewards", status_code=201)
def create_reward(payload: RewardPayload, vendor=Depends(current_vendor), db=Depends(get_db)):
    reward = rewards.create_reward(db, vendor, payload.model_dump())
    return ok(reward, message="Reward created successfully")


@router.get("/rewards")
def my_rewards(status: str = "all", vendor=Depends(current_vendor), db=Depends(get_db)):
    items = rewards.list_vendor_rewards(db, vendor, status)
    return ok(items, count=len(items))


@router.put("/rewards/{reward_id}")
def update_reward(reward_id: str, payload: RewardPayload, vendor=Depends(current_vendor), db=Depends(get_db)):
    reward = rewards.update_reward(db, vendor, reward_id, payload.model_dump())
    return ok(reward, message="Reward updated successfully")


@router.delete("/rewards/{reward_id}")
def delete_reward(reward_id: str, vendor=Depends(current_vendor), db=Depends(get_db)):
    rewards.deactivate_reward(db, vendor, reward_id)
    return ok(message="Reward deactivated successfully")


@router.get("/redemptions")
def redemptions(status: Optional[str] = None, reward_id: Optional[str] = None,
                start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                vendor=Depends(current_vendor), db=Depends(get_db)):
    items = rewards.list_vendor_redemptions(db, vendor, status, reward_id, start_date, end_date)
    return ok(items, count=len(items))


@router.post("/redemptions/{code}/verify")
def verify_redemption(code: str, vendor=Depends(current_vendor), db=Depends(get_db)):
    redemption = rewards.verify_redemption(db, vendor, code)
    return ok(redemption, message="Redemption verified successfully")


@router.get("/analytics")
def vendor_analytics(period: str = "month", vendor=Depends(current_vendor), db=Depends(get_db)):
    return ok(analytics.vendor_analytics(db, vendor, period))


class VendorProfile(CamelModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    location: Optional[GeoPoint] = None
    business_type: Optional[Literal["Physical Store", "Online", "Both"]] = None
    description: Optional[str] = None
    website: Optional[str] = None
    logo: Optional[str] = None


@router.put("/profile")
def update_profile(payload: VendorProfile, vendor=Depends(current_vendor), db=Depends(get_db)):
    return ok(update_account(db, vendor, payload.model_dump(exclude_none=True)), message="Profile updated successfully")


# ------------------ Buying from collectors ------------------

class PurchaseCreate(CamelModel):
    collector_id: Optional[str] = None
    offer_id: Optional[str] = None
    waste_type: Optional[str] = None
    quantity: Optional[float] = Field(default=None, gt=0)
    price_per_unit: float = Field(..., ge=0)
    pickup_date: Optional[datetime] = None
    notes: Optional[str] = None


@router.get("/offers")
def browse_offers(waste_type: Optional[str] = None, min_quantity: Optional[float] = None,
                  max_quantity: Optional[float] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, lat: Optional[float] = None, lng: Optional[float] = None,
                  radius_km: Optional[float] = None, vendor=Depends(current_vendor), db=Depends(get_db)):
    offers = Negotiation(db, VENDOR_PURCHASE_FLOW).browse(
        waste_type, None, min_quantity, max_quantity, min_price, max_price, lat, lng, radius_km
    )
    for o in offers:
        o["collector"] = db["collector"].find_one({"_id": to_object_id(o["collector_id"])},
                                                  {"name": 1, "phone": 1, "address": 1, "location": 1})
    return ok(offers, count=len(offers))


@router.post("/purchase", status_code=201)
def purchase(payload: PurchaseCreate, vendor=Depends(current_vendor), db=Depends(get_db)):
    request = create_vendor_purchase(db, vendor, **payload.model_dump())
    return ok(request, message="Purchase request sent successfully")


@router.get("/purchases")
def purchases(status: Optional[str] = None, vendor=Depends(current_vendor), db=Depends(get_db)):
    items = Negotiation(db, VENDOR_PURCHASE_FLOW).list_requests("buyer", vendor, status)
    return ok(items, count=len(items))


@router.put("/purchases/{purchase_id}/cancel")
def cancel_purchase(purchase_id: str, vendor=Depends(current_vendor), db=Depends(get_db)):
    request = Negotiation(db, VENDOR_PURCHASE_FLOW).cancel_request(vendor, purchase_id)
    return ok(request, message="Purchase request cancelled")


@router.get("/inventory")
def inventory(vendor=Depends(current_vendor), db=Depends(get_db)):
    return ok(analytics.vendor_inventory(db, vendor))


# ------------------ Pricing ------------------

class PricingUpdate(CamelModel):
    pricing: List[PriceEntry]
    currency: str = "LKR"


@router.get("/pricing")
def get_pricing(vendor=Depends(current_vendor), db=Depends(get_db)):
    pricing = db["vendor_pricing"].find_one({"vendor_id": str(vendor["_id"])})
    if not pricing:
        pricing = {"vendor_id": str(vendor["_id"]), "pricing": [], "currency": "LKR", "last_updated": None}
    return ok(pricing)


@router.put("/pricing")
def update_pricing(payload: PricingUpdate, vendor=Depends(current_vendor), db=Depends(get_db)):
    waste_types = [p.waste_type for p in payload.pricing]
    if len(waste_types) != len(set(waste_types)):
        raise ValidationError("Each waste type can only be priced once")
    for entry in payload.pricing:
        if entry.max_quantity is not None and entry.max_quantity < entry.min_quantity:
            raise ValidationError(f"{entry.waste_type}: max_quantity must be at least min_quantity")
    stamp = now()
    try:
        doc = VendorPricing(vendor_id=str(vendor["_id"]), pricing=payload.pricing,
                            currency=payload.currency, last_updated=stamp).model_dump()
    except PydanticValidationError as e:
        raise ValidationError(e.errors()[0]["msg"])
    doc["updated_at"] = stamp
    pricing = db["vendor_pricing"].find_one_and_update(
        {"vendor_id": doc["vendor_id"]},
        {"$set": doc, "$setOnInsert": {"created_at": stamp}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return ok(pricing, message="Pricing updated successfully")
