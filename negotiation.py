"""
Offer/request lifecycle shared by every buyer/seller pair in the marketplace.

A *posting* advertises waste (a user's UserWasteOffer, or a collector's
WasteOffer) and a *request* is a buyer's bid on it. Both flows run through the
same `Negotiation` engine, configured by a `Flow`:

    posting:  available -> pending|reserved -> sold        (or -> cancelled)
    request:  pending -> accepted -> completed
              pending -> rejected | cancelled

Every status change is a compare-and-swap (`find_one_and_update` filtered on
the expected current status), so two callers racing on the same document
cannot both win. Balance side effects of a completion go through the ledger
only after the request has been claimed as completed, which makes completion
idempotent.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument

import config
import ledger
from database import create_document
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from helpers import (
    SALE_POINTS_PER_KG,
    naive_utc,
    normalize_waste_type,
    now,
    to_object_id,
    within_radius,
)
from schemas import (
    CollectorPurchaseRequest,
    Quantity,
    UserWasteOffer,
    WasteOffer,
    WastePurchase,
)

logger = logging.getLogger(__name__)


class PostingStatus(str, Enum):
    AVAILABLE = "available"
    PENDING = "pending"
    RESERVED = "reserved"
    SOLD = "sold"
    CANCELLED = "cancelled"


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Action(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    COUNTER = "counter"


TRANSITIONS = {
    RequestStatus.PENDING: {RequestStatus.ACCEPTED, RequestStatus.REJECTED, RequestStatus.CANCELLED},
    RequestStatus.ACCEPTED: {RequestStatus.COMPLETED},
    RequestStatus.REJECTED: set(),
    RequestStatus.COMPLETED: set(),
    RequestStatus.CANCELLED: set(),
}

OPEN_REQUEST_STATUSES = [RequestStatus.PENDING.value, RequestStatus.ACCEPTED.value]


def sources_for(target: RequestStatus) -> List[str]:
    return [s.value for s, targets in TRANSITIONS.items() if target in targets]


@dataclass(frozen=True)
class Flow:
    name: str
    posting_collection: str
    request_collection: str
    poster_role: str
    buyer_role: str
    poster_field: str
    negotiating_status: PostingStatus
    price_field: str
    # fields consulted, in order, when no explicit final payment is given
    payment_fields: tuple
    # "buyer" or "poster"
    completed_by: str
    open_window: Callable[[datetime], Dict[str, Any]]
    in_window: Callable[[Dict[str, Any], datetime], bool]
    settle: Callable[[Any, Dict[str, Any], Dict[str, Any], float], Dict[str, Any]]


def resolve_final_payment(request: Dict[str, Any], override: Optional[float] = None,
                          fields=("proposed_price", "offered_price")) -> float:
    if override is not None:
        return float(override)
    for field in fields:
        if request.get(field) is not None:
            return float(request[field])
    raise ValidationError("No price available for this request")


class Negotiation:
    def __init__(self, db, flow: Flow):
        self.db = db
        self.flow = flow
        self.postings = db[flow.posting_collection]
        self.requests = db[flow.request_collection]

    # ------------------ Postings ------------------

    def get_posting(self, offer_id) -> Dict[str, Any]:
        posting = self.postings.find_one({"_id": to_object_id(offer_id, "Waste offer")})
        if not posting:
            raise NotFoundError("Waste offer not found")
        return posting

    def get_own_posting(self, poster, offer_id) -> Dict[str, Any]:
        posting = self.get_posting(offer_id)
        if posting.get(self.flow.poster_field) != str(poster["_id"]):
            raise NotFoundError("Offer not found")
        return posting

    def is_open(self, posting: Dict[str, Any], at: Optional[datetime] = None) -> bool:
        at = at or now()
        return posting.get("status") == PostingStatus.AVAILABLE.value and self.flow.in_window(posting, at)

    def browse(self, waste_type: Optional[str] = None, city: Optional[str] = None,
               min_quantity: Optional[float] = None, max_quantity: Optional[float] = None,
               min_price: Optional[float] = None, max_price: Optional[float] = None,
               lat: Optional[float] = None, lng: Optional[float] = None,
               radius_km: Optional[float] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"status": PostingStatus.AVAILABLE.value}
        query.update(self.flow.open_window(now()))
        if waste_type:
            query["waste_type"] = waste_type
        if city:
            query["location.city"] = {"$regex": re.escape(city), "$options": "i"}
        if min_quantity is not None or max_quantity is not None:
            query["quantity.value"] = {}
            if min_quantity is not None:
                query["quantity.value"]["$gte"] = min_quantity
            if max_quantity is not None:
                query["quantity.value"]["$lte"] = max_quantity
        if min_price is not None or max_price is not None:
            query[self.flow.price_field] = {}
            if min_price is not None:
                query[self.flow.price_field]["$gte"] = min_price
            if max_price is not None:
                query[self.flow.price_field]["$lte"] = max_price

        cursor = self.postings.find(query).sort("created_at", -1)
        offers = list(cursor)
        if lat is not None and lng is not None and radius_km is not None:
            offers = [o for o in offers if within_radius(o.get("location"), lat, lng, radius_km)]
        if limit:
            offers = offers[:limit]
        return offers

    def list_postings(self, poster, status: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {self.flow.poster_field: str(poster["_id"])}
        if status and status != "all":
            query["status"] = status
        return list(self.postings.find(query).sort("created_at", -1))

    def update_posting(self, poster, offer_id, changes: Dict[str, Any]) -> Dict[str, Any]:
        posting = self.get_own_posting(poster, offer_id)
        changes = {k: v for k, v in changes.items() if v is not None}
        changes["updated_at"] = now()
        updated = self.postings.find_one_and_update(
            {"_id": posting["_id"], "status": PostingStatus.AVAILABLE.value},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise ConflictError("Only available offers can be edited")
        return updated

    def cancel_posting(self, poster, offer_id) -> Dict[str, Any]:
        posting = self.get_own_posting(poster, offer_id)
        stamp = now()
        cancelled = self.postings.find_one_and_update(
            {"_id": posting["_id"], "status": {"$in": [PostingStatus.AVAILABLE.value, self.flow.negotiating_status.value]}},
            {"$set": {"status": PostingStatus.CANCELLED.value, "updated_at": stamp}},
            return_document=ReturnDocument.AFTER,
        )
        if not cancelled:
            raise ConflictError(f"Offer is already {posting['status']}")
        result = self.requests.update_many(
            {"offer_id": str(posting["_id"]), "status": {"$in": OPEN_REQUEST_STATUSES}},
            {"$set": {"status": RequestStatus.CANCELLED.value, "updated_at": stamp}},
        )
        logger.info("%s offer %s cancelled (%d open requests cancelled)", self.flow.name, posting["_id"], result.modified_count)
        return cancelled

    def _reserve(self, posting: Dict[str, Any]) -> None:
        reserved = self.postings.find_one_and_update(
            {"_id": posting["_id"], "status": PostingStatus.AVAILABLE.value},
            {"$set": {"status": self.flow.negotiating_status.value, "updated_at": now()}},
        )
        if not reserved:
            raise ConflictError("This offer is no longer available")

    def _release(self, offer_id: Optional[str]) -> bool:
        """Put a posting back on the market once nothing is negotiating on it."""
        if not offer_id:
            return False
        if self.requests.count_documents({"offer_id": offer_id, "status": {"$in": OPEN_REQUEST_STATUSES}}):
            return False
        result = self.postings.update_one(
            {"_id": to_object_id(offer_id), "status": self.flow.negotiating_status.value},
            {"$set": {"status": PostingStatus.AVAILABLE.value, "updated_at": now()}},
        )
        if result.modified_count:
            logger.info("%s offer %s back to available", self.flow.name, offer_id)
        return bool(result.modified_count)

    # ------------------ Requests ------------------

    def get_request(self, request_id) -> Dict[str, Any]:
        request = self.requests.find_one({"_id": to_object_id(request_id, "Purchase request")})
        if not request:
            raise NotFoundError("Purchase request not found")
        return request

    def open_request(self, buyer, posting: Optional[Dict[str, Any]], request_doc) -> Dict[str, Any]:
        buyer_id = str(buyer["_id"])
        if posting is not None:
            duplicate = self.requests.find_one({
                "offer_id": str(posting["_id"]),
                "buyer_id": buyer_id,
                "status": RequestStatus.PENDING.value,
            })
            if duplicate:
                raise ConflictError("You already have a pending request for this offer")
            if not self.is_open(posting):
                raise ConflictError("This offer is no longer available")
            self._reserve(posting)

        try:
            request = create_document(self.db, self.flow.request_collection, request_doc)
        except Exception:
            if posting is not None:
                self._release(str(posting["_id"]))
            raise
        logger.info("%s request %s opened by %s %s", self.flow.name, request["_id"], self.flow.buyer_role, buyer_id)
        return request

    def _transition(self, request: Dict[str, Any], target: RequestStatus, changes: Dict[str, Any]) -> Dict[str, Any]:
        current = RequestStatus(request["status"])
        if target not in TRANSITIONS[current]:
            raise ConflictError(f"Cannot move a {current.value} request to {target.value}")
        stamp = now()
        update = {"status": target.value, "updated_at": stamp}
        update.update(changes)
        updated = self.requests.find_one_and_update(
            {"_id": request["_id"], "status": {"$in": sources_for(target)}},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise ConflictError("Purchase request was already processed")
        logger.info("%s request %s: %s -> %s", self.flow.name, request["_id"], current.value, target.value)
        return updated

    def respond(self, poster, request_id, action: str, message: Optional[str] = None,
                counter_price: Optional[float] = None, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        request = self.get_request(request_id)
        if request.get("poster_id") != str(poster["_id"]):
            raise ForbiddenError("Not authorized to respond to this request")
        try:
            action = Action(action)
        except ValueError:
            raise ValidationError("Response must be 'accept', 'reject' or 'counter'")
        if request["status"] != RequestStatus.PENDING.value:
            raise ConflictError("Purchase request not found or already processed")

        stamp = now()
        if action == Action.COUNTER:
            if counter_price is None or counter_price <= 0:
                raise ValidationError("Please provide counter price")
            changes = {
                "response": {"status": "counter-offered", "message": message or f"Counter offer: {counter_price}",
                             "counter_price": counter_price, "responded_at": stamp},
                "responded_at": stamp,
                "updated_at": stamp,
            }
            # vendor purchases are priced once at creation; their counter stays on the response only
            if "proposed_price" in self.flow.payment_fields:
                changes["proposed_price"] = counter_price
            updated = self.requests.find_one_and_update(
                {"_id": request["_id"], "status": RequestStatus.PENDING.value},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
            if not updated:
                raise ConflictError("Purchase request was already processed")
            return updated

        target = RequestStatus.ACCEPTED if action == Action.ACCEPT else RequestStatus.REJECTED
        changes = {
            "response": {"status": target.value, "message": message, "counter_price": None, "responded_at": stamp},
            "responded_at": stamp,
        }
        changes.update(extra or {})
        updated = self._transition(request, target, changes)

        if target == RequestStatus.ACCEPTED:
            self._reject_competitors(updated)
        else:
            self._release(updated.get("offer_id"))
        return updated

    def _reject_competitors(self, accepted: Dict[str, Any]) -> int:
        if not accepted.get("offer_id"):
            return 0
        stamp = now()
        result = self.requests.update_many(
            {"offer_id": accepted["offer_id"], "status": RequestStatus.PENDING.value, "_id": {"$ne": accepted["_id"]}},
            {"$set": {
                "status": RequestStatus.REJECTED.value,
                "response": {"status": "rejected", "message": "Another request was accepted",
                             "counter_price": None, "responded_at": stamp},
                "responded_at": stamp,
                "updated_at": stamp,
            }},
        )
        if result.modified_count:
            logger.info("%s offer %s: %d competing requests rejected", self.flow.name, accepted["offer_id"], result.modified_count)
        return result.modified_count

    def cancel_request(self, buyer, request_id) -> Dict[str, Any]:
        request = self.get_request(request_id)
        if request.get("buyer_id") != str(buyer["_id"]):
            raise NotFoundError("Purchase request not found or cannot be cancelled")
        updated = self._transition(request, RequestStatus.CANCELLED, {})
        self._release(updated.get("offer_id"))
        return updated

    def complete(self, actor, request_id, final_payment: Optional[float] = None) -> Dict[str, Any]:
        request = self.get_request(request_id)
        owner_field = "buyer_id" if self.flow.completed_by == "buyer" else "poster_id"
        if request.get(owner_field) != str(actor["_id"]):
            raise NotFoundError("Purchase request not found")
        if request["status"] != RequestStatus.ACCEPTED.value:
            raise ConflictError("Purchase request is not in accepted status")
        if final_payment is not None and final_payment < 0:
            raise ValidationError("Payment amount cannot be negative")

        payment = resolve_final_payment(request, final_payment, self.flow.payment_fields)
        stamp = now()
        completed = self._transition(request, RequestStatus.COMPLETED, {
            "completed_at": stamp,
            "final_payment": payment,
        })

        posting = None
        if completed.get("offer_id"):
            posting = self.postings.find_one_and_update(
                {"_id": to_object_id(completed["offer_id"])},
                {"$set": {"status": PostingStatus.SOLD.value, "updated_at": stamp}},
                return_document=ReturnDocument.AFTER,
            )
        try:
            effects = self.flow.settle(self.db, completed, posting, payment)
        except ConflictError:
            self._reopen(completed, posting)
            raise
        logger.info("%s request %s completed, payment %s", self.flow.name, completed["_id"], payment)
        return {"request": completed, "offer": posting, "payment": payment, **effects}

    def _reopen(self, completed: Dict[str, Any], posting: Optional[Dict[str, Any]]) -> None:
        """Undo a completion whose settlement was refused."""
        stamp = now()
        self.requests.update_one(
            {"_id": completed["_id"], "status": RequestStatus.COMPLETED.value},
            {"$set": {"status": RequestStatus.ACCEPTED.value, "completed_at": None, "final_payment": None,
                      "updated_at": stamp}},
        )
        if posting is not None:
            self.postings.update_one(
                {"_id": posting["_id"], "status": PostingStatus.SOLD.value},
                {"$set": {"status": self.flow.negotiating_status.value, "updated_at": stamp}},
            )
        logger.warning("%s request %s settlement refused, back to accepted", self.flow.name, completed["_id"])

    def list_requests(self, party: str, account, status: Optional[str] = None) -> List[Dict[str, Any]]:
        field = "buyer_id" if party == "buyer" else "poster_id"
        query: Dict[str, Any] = {field: str(account["_id"])}
        if status and status != "all":
            query["status"] = status
        return self.populate(list(self.requests.find(query).sort("created_at", -1)))

    def populate(self, requests: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        projection = {"name": 1, "email": 1, "phone": 1, "address": 1}
        for req in requests:
            if req.get("offer_id"):
                req["offer"] = self.postings.find_one({"_id": to_object_id(req["offer_id"])})
            req["buyer"] = self.db[self.flow.buyer_role].find_one({"_id": to_object_id(req["buyer_id"])}, projection)
            req["poster"] = self.db[self.flow.poster_role].find_one({"_id": to_object_id(req["poster_id"])}, projection)
        return requests


# ------------------ Settlement ------------------

def _settle_user_sale(db, request, posting, payment) -> Dict[str, Any]:
    """Collector bought a user's offer: pay the user, stock the collector."""
    quantity = posting["quantity"]["value"]
    points = int(math.floor(quantity * SALE_POINTS_PER_KG))
    key = normalize_waste_type(posting["waste_type"])
    ledger.apply(db, "user", request["poster_id"], {
        "cash_earned": payment,
        "total_waste_disposed": quantity,
        "points": points,
    }, USER_OFFER_FLOW.request_collection, request["_id"], "user offer sold")
    ledger.apply(db, "collector", request["buyer_id"], {
        f"inventory.{key}": quantity,
        "total_waste_collected": quantity,
        "total_transactions": 1,
    }, USER_OFFER_FLOW.request_collection, request["_id"], "user offer bought")
    return {"points_earned": points, "inventory_key": key}


def _settle_vendor_purchase(db, request, posting, payment) -> Dict[str, Any]:
    """Vendor bought from a collector: the collector's stock goes down, never below zero."""
    quantity = request["quantity"]["value"]
    key = normalize_waste_type(request["waste_type"])
    sold = ledger.apply(db, "collector", request["poster_id"], {
        f"inventory.{key}": -quantity,
        "total_sales": payment,
    }, VENDOR_PURCHASE_FLOW.request_collection, request["_id"], "waste sold to vendor",
        guard={f"inventory.{key}": {"$gte": quantity}})
    if not sold:
        raise ConflictError(f"Not enough {request['waste_type']} in stock to complete this sale")
    return {"inventory_key": key}


def _user_offer_window(at: datetime) -> Dict[str, Any]:
    return {
        "available_from": {"$lte": at},
        "$or": [{"available_until": {"$gte": at}}, {"available_until": None}],
    }


def _waste_offer_window(at: datetime) -> Dict[str, Any]:
    return {"expires_at": {"$gte": at}}


def _user_offer_in_window(posting: Dict[str, Any], at: datetime) -> bool:
    start, until = posting.get("available_from"), posting.get("available_until")
    return (start is None or start <= at) and (until is None or until >= at)


def _waste_offer_in_window(posting: Dict[str, Any], at: datetime) -> bool:
    return posting.get("expires_at") is None or posting["expires_at"] >= at


USER_OFFER_FLOW = Flow(
    name="user-offer",
    posting_collection="user_waste_offer",
    request_collection="collector_purchase_request",
    poster_role="user",
    buyer_role="collector",
    poster_field="user_id",
    negotiating_status=PostingStatus.PENDING,
    price_field="expected_price",
    payment_fields=("proposed_price", "offered_price"),
    completed_by="buyer",
    open_window=_user_offer_window,
    in_window=_user_offer_in_window,
    settle=_settle_user_sale,
)

VENDOR_PURCHASE_FLOW = Flow(
    name="vendor-purchase",
    posting_collection="waste_offer",
    request_collection="waste_purchase",
    poster_role="collector",
    buyer_role="vendor",
    poster_field="collector_id",
    negotiating_status=PostingStatus.RESERVED,
    price_field="min_price_per_kg",
    payment_fields=("total_amount",),
    completed_by="poster",
    open_window=_waste_offer_window,
    in_window=_waste_offer_in_window,
    settle=_settle_vendor_purchase,
)


def _schema_error(e: PydanticValidationError) -> ValidationError:
    first = e.errors()[0]
    return ValidationError(f"{'.'.join(str(p) for p in first['loc'])}: {first['msg']}")


# ------------------ User offers (user -> collector) ------------------

def create_user_offer(db, user, waste_type: str, quantity: float, unit: str = "kg",
                      expected_price: float = 0, description: Optional[str] = None,
                      location: Optional[Dict[str, Any]] = None, available_from: Optional[datetime] = None,
                      available_until: Optional[datetime] = None, pickup_preference: str = "anytime",
                      images: Optional[List[str]] = None) -> Dict[str, Any]:
    available_from = naive_utc(available_from) or now()
    available_until = naive_utc(available_until)
    if available_until is not None and available_until < available_from:
        raise ValidationError("availableUntil must be after availableFrom")
    if unit not in ("kg", "pieces", "items", "bags"):
        raise ValidationError("Invalid quantity unit")
    try:
        doc = UserWasteOffer(
            user_id=str(user["_id"]),
            waste_type=waste_type,
            quantity=Quantity(value=quantity, unit=unit),
            expected_price=expected_price,
            description=description,
            location=location or {},
            available_from=available_from,
            available_until=available_until,
            pickup_preference=pickup_preference,
            images=images or [],
        )
    except PydanticValidationError as e:
        raise _schema_error(e)
    offer = create_document(db, USER_OFFER_FLOW.posting_collection, doc)
    logger.info("User %s posted offer %s (%s %s)", user["_id"], offer["_id"], quantity, waste_type)
    return offer


def request_user_offer(db, collector, offer_id, offered_price: float, proposed_pickup_time: datetime,
                       message: Optional[str] = None) -> Dict[str, Any]:
    if not offered_price or offered_price <= 0 or proposed_pickup_time is None:
        raise ValidationError("Please provide offered price and proposed pickup time")
    engine = Negotiation(db, USER_OFFER_FLOW)
    posting = engine.get_posting(offer_id)
    doc = CollectorPurchaseRequest(
        offer_id=str(posting["_id"]),
        buyer_id=str(collector["_id"]),
        poster_id=posting["user_id"],
        offered_price=offered_price,
        proposed_price=offered_price,
        message=message,
        proposed_pickup_time=naive_utc(proposed_pickup_time),
    )
    return engine.open_request(collector, posting, doc)


# ------------------ Collector offers (collector -> vendor) ------------------

def create_waste_offer(db, collector, waste_type: str, quantity: float, min_price_per_kg: float,
                       description: Optional[str] = None, expires_at: Optional[datetime] = None) -> Dict[str, Any]:
    try:
        doc = WasteOffer(
            collector_id=str(collector["_id"]),
            waste_type=waste_type,
            quantity=Quantity(value=quantity, unit="kg"),
            min_price_per_kg=min_price_per_kg,
            description=description,
            expires_at=naive_utc(expires_at) or now() + timedelta(days=config.OFFER_EXPIRY_DAYS),
            location=collector.get("location"),
        )
    except PydanticValidationError as e:
        raise _schema_error(e)
    offer = create_document(db, VENDOR_PURCHASE_FLOW.posting_collection, doc)
    logger.info("Collector %s posted offer %s (%s %s)", collector["_id"], offer["_id"], quantity, waste_type)
    return offer


def create_vendor_purchase(db, vendor, collector_id: Optional[str], waste_type: Optional[str],
                           quantity: Optional[float], price_per_unit: float, offer_id: Optional[str] = None,
                           pickup_date: Optional[datetime] = None, notes: Optional[str] = None) -> Dict[str, Any]:
    engine = Negotiation(db, VENDOR_PURCHASE_FLOW)
    posting = None
    if offer_id:
        posting = engine.get_posting(offer_id)
        if collector_id and collector_id != posting["collector_id"]:
            raise ValidationError("Offer does not belong to this collector")
        collector_id = posting["collector_id"]
        waste_type = posting["waste_type"]
        if quantity is None:
            quantity = posting["quantity"]["value"]
    if not collector_id or not waste_type or quantity is None or price_per_unit is None:
        raise ValidationError("Please provide collectorId, wasteType, quantity and pricePerUnit")

    collector = db["collector"].find_one({"_id": to_object_id(collector_id, "Collector"), "is_active": True})
    if not collector:
        raise NotFoundError("Collector not found")

    try:
        doc = WastePurchase(
            buyer_id=str(vendor["_id"]),
            poster_id=str(collector["_id"]),
            offer_id=str(posting["_id"]) if posting else None,
            waste_type=waste_type,
            quantity=Quantity(value=quantity, unit="kg"),
            price_per_unit=price_per_unit,
            total_amount=round(quantity * price_per_unit, 2),
            pickup_date=naive_utc(pickup_date),
            notes=notes,
        )
    except PydanticValidationError as e:
        raise _schema_error(e)
    return engine.open_request(vendor, posting, doc)
