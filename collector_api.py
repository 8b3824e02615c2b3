from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import Field

import analytics
import dropoffs
from auth import update_account, require_role
from database import get_db
from helpers import ok, to_object_id
from negotiation import (
    USER_OFFER_FLOW,
    VENDOR_PURCHASE_FLOW,
    Negotiation,
    create_waste_offer,
    request_user_offer,
)
from schemas import Address, CamelModel, GeoPoint, WasteType

router = APIRouter(prefix="/api/collectors", tags=["collectors"])

current_collector = require_role("collector")


@router.get("/dashboard")
def dashboard(collector=Depends(current_collector), db=Depends(get_db)):
    return ok(analytics.collector_dashboard(db, collector))


# ------------------ Drop-offs ------------------

class QRScan(CamelModel):
    qr_code: str


class DropoffVerification(CamelModel):
    user_id: str
    waste_type: str
    quantity: float
    unit: str = "kg"
    qr_code_scanned: bool = False
    notes: Optional[str] = None
    reward_type: str = "points"
    cash_amount: Optional[float] = None


@router.post("/verify-qr")
def verify_qr(payload: QRScan, collector=Depends(current_collector), db=Depends(get_db)):
    return ok(dropoffs.lookup_user_by_qr(db, collector, payload.qr_code))


@router.post("/verify-dropoff", status_code=201)
def verify_dropoff(payload: DropoffVerification, collector=Depends(current_collector), db=Depends(get_db)):
    result = dropoffs.verify_dropoff(db, collector, **payload.model_dump())
    return ok(
        result["transaction"],
        message=result["message"],
        new_badges=result["new_badges"],
        completed_challenges=result["completed_challenges"],
    )


@router.get("/transactions")
def transactions(status: Optional[str] = None, waste_type: Optional[str] = None,
                 start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                 collector=Depends(current_collector), db=Depends(get_db)):
    items = analytics.collector_transactions(db, collector, status, waste_type, start_date, end_date)
    return ok(items, count=len(items))


@router.get("/reports")
def reports(period: str = "month", year: Optional[int] = None, month: Optional[int] = None,
            collector=Depends(current_collector), db=Depends(get_db)):
    return ok(analytics.collector_report(db, collector, period, year, month))


@router.get("/inventory")
def inventory(collector=Depends(current_collector), db=Depends(get_db)):
    items = analytics.collector_inventory(db, collector)
    return ok(items, count=len(items), stored=collector.get("inventory", {}))


@router.get("/vendors")
def vendors(collector=Depends(current_collector), db=Depends(get_db)):
    items = list(db["vendor"].find({"is_active": True}, {"name": 1, "email": 1, "phone": 1, "address": 1,
                                                         "business_type": 1, "description": 1, "logo": 1}))
    for v in items:
        v["pricing"] = db["vendor_pricing"].find_one({"vendor_id": str(v["_id"])}, {"pricing": 1, "currency": 1})
    return ok(items, count=len(items))


class CollectorProfile(CamelModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    location: Optional[GeoPoint] = None
    operating_hours: Optional[Dict[str, Dict[str, str]]] = None
    accepted_waste_types: Optional[List[WasteType]] = Field(default=None, min_length=1)
    description: Optional[str] = None


@router.put("/profile")
def update_profile(payload: CollectorProfile, collector=Depends(current_collector), db=Depends(get_db)):
    return ok(update_account(db, collector, payload.model_dump(exclude_none=True)), message="Profile updated successfully")


# ------------------ Offers to vendors ------------------

class WasteOfferCreate(CamelModel):
    waste_type: WasteType
    quantity: float = Field(..., gt=0)
    min_price_per_kg: float = Field(..., ge=0)
    description: Optional[str] = None
    expires_at: Optional[datetime] = None


class WasteOfferUpdate(CamelModel):
    min_price_per_kg: Optional[float] = Field(default=None, ge=0)
    description: Optional[str] = None
    expires_at: Optional[datetime] = None


@router.post("/offers", status_code=201)
def create_offer(payload: WasteOfferCreate, collector=Depends(current_collector), db=Depends(get_db)):
    offer = create_waste_offer(db, collector, **payload.model_dump())
    return ok(offer, message="Offer created successfully")


@router.get("/offers")
def my_offers(status: Optional[str] = None, collector=Depends(current_collector), db=Depends(get_db)):
    offers = Negotiation(db, VENDOR_PURCHASE_FLOW).list_postings(collector, status)
    return ok(offers, count=len(offers))


@router.put("/offers/{offer_id}")
def update_offer(offer_id: str, payload: WasteOfferUpdate, collector=Depends(current_collector), db=Depends(get_db)):
    offer = Negotiation(db, VENDOR_PURCHASE_FLOW).update_posting(collector, offer_id, payload.model_dump(exclude_none=True))
    return ok(offer, message="Offer updated successfully")


@router.delete("/offers/{offer_id}")
def cancel_offer(offer_id: str, collector=Depends(current_collector), db=Depends(get_db)):
    Negotiation(db, VENDOR_PURCHASE_FLOW).cancel_posting(collector, offer_id)
    return ok(message="Offer cancelled successfully")


# ------------------ Purchase requests from vendors ------------------

class PurchaseResponse(CamelModel):
    message: Optional[str] = None
    pickup_date: Optional[datetime] = None
    counter_price: Optional[float] = None


@router.get("/purchase-requests")
def purchase_requests(status: Optional[str] = None, collector=Depends(current_collector), db=Depends(get_db)):
    items = Negotiation(db, VENDOR_PURCHASE_FLOW).list_requests("poster", collector, status)
    return ok(items, count=len(items))


@router.put("/purchase-requests/{request_id}/accept")
def accept_purchase(request_id: str, payload: Optional[PurchaseResponse] = None, collector=Depends(current_collector), db=Depends(get_db)):
    payload = payload or PurchaseResponse()
    extra = {"pickup_date": payload.pickup_date} if payload.pickup_date else None
    request = Negotiation(db, VENDOR_PURCHASE_FLOW).respond(collector, request_id, "accept", payload.message, extra=extra)
    return ok(request, message="Purchase request accepted")


@router.put("/purchase-requests/{request_id}/reject")
def reject_purchase(request_id: str, payload: Optional[PurchaseResponse] = None, collector=Depends(current_collector), db=Depends(get_db)):
    payload = payload or PurchaseResponse()
    request = Negotiation(db, VENDOR_PURCHASE_FLOW).respond(collector, request_id, "reject", payload.message)
    return ok(request, message="Purchase request rejected")


@router.put("/purchase-requests/{request_id}/counter")
def counter_purchase(request_id: str, payload: Optional[PurchaseResponse] = None, collector=Depends(current_collector), db=Depends(get_db)):
    payload = payload or PurchaseResponse()
    request = Negotiation(db, VENDOR_PURCHASE_FLOW).respond(
        collector, request_id, "counter", payload.message, payload.counter_price
    )
    return ok(request, message="Counter offer sent")


@router.put("/purchase-requests/{request_id}/complete")
def complete_purchase(request_id: str, collector=Depends(current_collector), db=Depends(get_db)):
    result = Negotiation(db, VENDOR_PURCHASE_FLOW).complete(collector, request_id)
    return ok(result["request"], message="Purchase completed")


# ------------------ User offers ------------------

class UserOfferRequest(CamelModel):
    offered_price: float
    proposed_pickup_time: datetime
    message: Optional[str] = None


class CompletePayment(CamelModel):
    payment_amount: Optional[float] = None


@router.get("/user-offers")
def browse_user_offers(waste_type: Optional[str] = None, city: Optional[str] = None,
                       min_quantity: Optional[float] = None, max_quantity: Optional[float] = None,
                       min_price: Optional[float] = None, max_price: Optional[float] = None,
                       lat: Optional[float] = None, lng: Optional[float] = None, radius_km: Optional[float] = None,
                       collector=Depends(current_collector), db=Depends(get_db)):
    engine = Negotiation(db, USER_OFFER_FLOW)
    offers = engine.browse(waste_type, city, min_quantity, max_quantity, min_price, max_price, lat, lng, radius_km)
    for o in offers:
        o["user"] = db["user"].find_one({"_id": to_object_id(o["user_id"])}, {"name": 1, "phone": 1})
    return ok(offers, count=len(offers))


@router.post("/user-offers/{offer_id}/request", status_code=201)
def request_offer(offer_id: str, payload: UserOfferRequest, collector=Depends(current_collector), db=Depends(get_db)):
    request = request_user_offer(db, collector, offer_id, payload.offered_price, payload.proposed_pickup_time, payload.message)
    return ok(request, message="Purchase request sent successfully")


@router.get("/user-purchase-requests")
def my_user_requests(status: Optional[str] = None, collector=Depends(current_collector), db=Depends(get_db)):
    items = Negotiation(db, USER_OFFER_FLOW).list_requests("buyer", collector, status)
    return ok(items, count=len(items))


@router.put("/user-purchase-requests/{request_id}/complete")
def complete_user_request(request_id: str, payload: Optional[CompletePayment] = None, collector=Depends(current_collector), db=Depends(get_db)):
    payload = payload or CompletePayment()
    result = Negotiation(db, USER_OFFER_FLOW).complete(collector, request_id, payload.payment_amount)
    return ok(
        result["request"],
        message=f"Purchase completed. User received LKR {result['payment']:.2f} and {result['points_earned']} points",
        points_earned=result["points_earned"],
    )


@router.delete("/user-purchase-requests/{request_id}")
def cancel_user_request(request_id: str, collector=Depends(current_collector), db=Depends(get_db)):
    Negotiation(db, USER_OFFER_FLOW).cancel_request(collector, request_id)
    return ok(message="Purchase request cancelled")
