from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import Field

import analytics
import dropoffs
import rewards
from auth import require_role
from database import get_db
from helpers import ok, to_object_id, within_radius
from negotiation import USER_OFFER_FLOW, Negotiation, create_user_offer
from schemas import CamelModel, OfferLocation, WasteType

router = APIRouter(prefix="/api/users", tags=["users"])

current_user = require_role("user")


@router.get("/dashboard")
def dashboard(user=Depends(current_user), db=Depends(get_db)):
    return ok(analytics.user_dashboard(db, user))


@router.get("/collection-points")
def collection_points(lat: float, lng: float, radius_km: float = 10, waste_type: Optional[str] = None,
                      user=Depends(current_user), db=Depends(get_db)):
    query = {"is_active": True, "is_verified": True}
    if waste_type:
        query["accepted_waste_types"] = waste_type
    collectors = [c for c in db["collector"].find(query) if within_radius(c.get("location"), lat, lng, radius_km)]
    return ok(collectors, count=len(collectors))


@router.get("/transactions")
def transactions(user=Depends(current_user), db=Depends(get_db)):
    items = list(db["waste_transaction"].find({"user_id": str(user["_id"])}).sort("created_at", -1))
    for t in items:
        t["collector"] = db["collector"].find_one({"_id": to_object_id(t["collector_id"])}, {"name": 1, "address": 1, "phone": 1})
    return ok(items, count=len(items))


# ------------------ Rewards ------------------

@router.get("/rewards")
def available_rewards(user=Depends(current_user), db=Depends(get_db)):
    return ok(rewards.available_rewards(db, user))


@router.post("/rewards/{reward_id}/redeem")
def redeem(reward_id: str, user=Depends(current_user), db=Depends(get_db)):
    result = rewards.redeem_reward(db, user, reward_id)
    return ok(result["redemption"], message="Reward redeemed successfully", remaining_points=result["remaining_points"])


@router.get("/redemptions")
def redemptions(user=Depends(current_user), db=Depends(get_db)):
    items = rewards.user_redemptions(db, user)
    return ok(items, count=len(items))


# ------------------ Gamification ------------------

@router.get("/challenges")
def challenges(user=Depends(current_user), db=Depends(get_db)):
    items = dropoffs.active_challenges_for(db, user)
    return ok(items, count=len(items))


@router.post("/challenges/{challenge_id}/join")
def join_challenge(challenge_id: str, user=Depends(current_user), db=Depends(get_db)):
    challenge = dropoffs.join_challenge(db, user, challenge_id)
    return ok(challenge, message="Successfully joined challenge")


@router.get("/leaderboard")
def leaderboard(period: str = "all", limit: int = 50, user=Depends(current_user), db=Depends(get_db)):
    rows = analytics.leaderboard(db, period, limit)
    return ok(rows, count=len(rows))


@router.get("/badges")
def badges(user=Depends(current_user), db=Depends(get_db)):
    held = set(user.get("badges") or [])
    items = list(db["badge"].find({"is_active": True}, {"earned_by": 0}))
    for b in items:
        b["earned"] = str(b["_id"]) in held
    return ok(items, count=len(items))


# ------------------ Offers ------------------

class OfferCreate(CamelModel):
    waste_type: WasteType
    quantity: float = Field(..., gt=0)
    unit: str = "kg"
    expected_price: float = Field(default=0, ge=0)
    description: Optional[str] = None
    location: Optional[OfferLocation] = None
    available_from: Optional[datetime] = None
    available_until: Optional[datetime] = None
    pickup_preference: str = "anytime"
    images: List[str] = []


class OfferUpdate(CamelModel):
    description: Optional[str] = None
    expected_price: Optional[float] = Field(default=None, ge=0)
    location: Optional[OfferLocation] = None
    available_until: Optional[datetime] = None
    pickup_preference: Optional[str] = None
    images: Optional[List[str]] = None


@router.post("/offers", status_code=201)
def create_offer(payload: OfferCreate, user=Depends(current_user), db=Depends(get_db)):
    data = payload.model_dump()
    offer = create_user_offer(db, user, **data)
    return ok(offer, message="Waste offer created successfully")


@router.get("/offers")
def my_offers(status: Optional[str] = None, user=Depends(current_user), db=Depends(get_db)):
    offers = Negotiation(db, USER_OFFER_FLOW).list_postings(user, status)
    for o in offers:
        o["request_count"] = db["collector_purchase_request"].count_documents({"offer_id": str(o["_id"])})
    return ok(offers, count=len(offers))


@router.put("/offers/{offer_id}")
def update_offer(offer_id: str, payload: OfferUpdate, user=Depends(current_user), db=Depends(get_db)):
    offer = Negotiation(db, USER_OFFER_FLOW).update_posting(user, offer_id, payload.model_dump(exclude_none=True))
    return ok(offer, message="Offer updated successfully")


@router.delete("/offers/{offer_id}")
def cancel_offer(offer_id: str, user=Depends(current_user), db=Depends(get_db)):
    Negotiation(db, USER_OFFER_FLOW).cancel_posting(user, offer_id)
    return ok(message="Offer cancelled successfully")


# ------------------ Purchase requests from collectors ------------------

class RequestResponse(CamelModel):
    response: str
    message: Optional[str] = None
    counter_price: Optional[float] = None


@router.get("/purchase-requests")
def purchase_requests(status: Optional[str] = None, user=Depends(current_user), db=Depends(get_db)):
    items = Negotiation(db, USER_OFFER_FLOW).list_requests("poster", user, status)
    return ok(items, count=len(items))


@router.put("/purchase-requests/{request_id}")
def respond_to_request(request_id: str, payload: RequestResponse, user=Depends(current_user), db=Depends(get_db)):
    request = Negotiation(db, USER_OFFER_FLOW).respond(
        user, request_id, payload.response, payload.message, payload.counter_price
    )
    messages = {"accept": "Request accepted", "reject": "Request rejected", "counter": "Counter offer sent"}
    return ok(request, message=messages[payload.response])
