import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import Field, ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import analytics
import dropoffs
from auth import AccountRole, RegisterRequest, register_account, require_role
from database import create_document, get_db, get_documents
from errors import ConflictError, NotFoundError, ValidationError
from helpers import naive_utc, now, ok, to_object_id
from schemas import Address, Badge, BadgeCriteria, CamelModel, Challenge, ChallengeGoal, ChallengeReward, GeoPoint, WasteType

router = APIRouter(prefix="/api/admin", tags=["admin"])

current_admin = require_role("admin", "superadmin")


def _account_query(search: Optional[str], status: Optional[str], verified: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"email": pattern}]
    if status:
        query["is_active"] = status == "active"
    if verified:
        query["is_verified"] = verified == "true"
    return query


def _set_account(db, collection: str, account_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    changes["updated_at"] = now()
    account = db[collection].find_one_and_update(
        {"_id": to_object_id(account_id, collection.capitalize())},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not account:
        raise NotFoundError(f"{collection.capitalize()} not found")
    return account


@router.get("/dashboard")
def dashboard(admin=Depends(current_admin), db=Depends(get_db)):
    return ok(analytics.admin_dashboard(db))


@router.get("/analytics")
def admin_analytics(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                    admin=Depends(current_admin), db=Depends(get_db)):
    return ok(analytics.admin_analytics(db, start_date, end_date))


# ------------------ Users ------------------

class StatusUpdate(CamelModel):
    is_active: bool


@router.get("/users")
def users(search: Optional[str] = None, status: Optional[str] = None, admin=Depends(current_admin), db=Depends(get_db)):
    items = list(db["user"].find(_account_query(search, status)).sort("created_at", -1))
    return ok(items, count=len(items))


@router.put("/users/{user_id}/status")
def update_user_status(user_id: str, payload: StatusUpdate, admin=Depends(current_admin), db=Depends(get_db)):
    user = _set_account(db, "user", user_id, {"is_active": payload.is_active})
    state = "activated" if payload.is_active else "deactivated"
    return ok(user, message=f"User {state} successfully")


# ------------------ Collectors & vendors ------------------

class AccountUpdate(CamelModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    location: Optional[GeoPoint] = None
    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None
    description: Optional[str] = None
    # collector
    accepted_waste_types: Optional[List[WasteType]] = Field(default=None, min_length=1)
    operating_hours: Optional[Dict[str, Dict[str, str]]] = None
    # vendor
    business_type: Optional[str] = None
    website: Optional[str] = None
    logo: Optional[str] = None


def _create_partner(db, admin, payload: RegisterRequest, role: AccountRole) -> Dict[str, Any]:
    payload.role = role.value
    return register_account(db, payload, is_verified=True, verified_by=str(admin["_id"]))


@router.post("/collectors", status_code=201)
def create_collector(payload: RegisterRequest, admin=Depends(current_admin), db=Depends(get_db)):
    collector = _create_partner(db, admin, payload, AccountRole.COLLECTOR)
    return ok(collector, message="Collector created successfully")


@router.get("/collectors")
def collectors(search: Optional[str] = None, status: Optional[str] = None, verified: Optional[str] = None,
               admin=Depends(current_admin), db=Depends(get_db)):
    items = list(db["collector"].find(_account_query(search, status, verified)).sort("created_at", -1))
    return ok(items, count=len(items))


@router.put("/collectors/{collector_id}")
def update_collector(collector_id: str, payload: AccountUpdate, admin=Depends(current_admin), db=Depends(get_db)):
    changes = payload.model_dump(exclude_none=True, exclude={"business_type", "website", "logo"})
    return ok(_set_account(db, "collector", collector_id, changes), message="Collector updated successfully")


@router.delete("/collectors/{collector_id}")
def delete_collector(collector_id: str, admin=Depends(current_admin), db=Depends(get_db)):
    _set_account(db, "collector", collector_id, {"is_active": False})
    return ok(message="Collector deactivated successfully")


@router.post("/vendors", status_code=201)
def create_vendor(payload: RegisterRequest, admin=Depends(current_admin), db=Depends(get_db)):
    vendor = _create_partner(db, admin, payload, AccountRole.VENDOR)
    return ok(vendor, message="Vendor created successfully")


@router.get("/vendors")
def vendors(search: Optional[str] = None, status: Optional[str] = None, verified: Optional[str] = None,
            admin=Depends(current_admin), db=Depends(get_db)):
    items = list(db["vendor"].find(_account_query(search, status, verified)).sort("created_at", -1))
    return ok(items, count=len(items))


@router.put("/vendors/{vendor_id}")
def update_vendor(vendor_id: str, payload: AccountUpdate, admin=Depends(current_admin), db=Depends(get_db)):
    changes = payload.model_dump(exclude_none=True, exclude={"accepted_waste_types", "operating_hours"})
    if "business_type" in changes and changes["business_type"] not in ("Physical Store", "Online", "Both"):
        raise ValidationError("Invalid business type")
    return ok(_set_account(db, "vendor", vendor_id, changes), message="Vendor updated successfully")


@router.delete("/vendors/{vendor_id}")
def delete_vendor(vendor_id: str, admin=Depends(current_admin), db=Depends(get_db)):
    _set_account(db, "vendor", vendor_id, {"is_active": False})
    return ok(message="Vendor deactivated successfully")


# ------------------ Challenges ------------------

class ChallengeCreate(CamelModel):
    title: str
    description: str
    icon: Optional[str] = None
    type: str
    goal: ChallengeGoal
    reward: ChallengeReward
    start_date: datetime
    end_date: datetime
    is_active: bool = True


class ChallengeUpdate(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    icon: Optional[str] = None
    goal: Optional[ChallengeGoal] = None
    reward: Optional[ChallengeReward] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None


@router.post("/challenges", status_code=201)
def create_challenge(payload: ChallengeCreate, admin=Depends(current_admin), db=Depends(get_db)):
    data = payload.model_dump()
    data["start_date"] = naive_utc(data["start_date"])
    data["end_date"] = naive_utc(data["end_date"])
    return ok(dropoffs.create_challenge(db, data), message="Challenge created successfully")


@router.get("/challenges")
def challenges(status: Optional[str] = None, admin=Depends(current_admin), db=Depends(get_db)):
    at = now()
    query: Dict[str, Any] = {}
    if status == "active":
        query = {"is_active": True, "start_date": {"$lte": at}, "end_date": {"$gte": at}}
    elif status == "upcoming":
        query = {"start_date": {"$gt": at}}
    elif status == "ended":
        query = {"end_date": {"$lt": at}}
    items = list(db["challenge"].find(query).sort("created_at", -1))
    for c in items:
        c["participant_count"] = len(c.get("participants", []))
        c["completed_count"] = sum(1 for p in c.get("participants", []) if p.get("completed"))
    return ok(items, count=len(items))


@router.put("/challenges/{challenge_id}")
def update_challenge(challenge_id: str, payload: ChallengeUpdate, admin=Depends(current_admin), db=Depends(get_db)):
    challenge = db["challenge"].find_one({"_id": to_object_id(challenge_id, "Challenge")})
    if not challenge:
        raise NotFoundError("Challenge not found")
    changes = payload.model_dump(exclude_none=True)
    for field in ("start_date", "end_date"):
        if field in changes:
            changes[field] = naive_utc(changes[field])
    merged = {k: v for k, v in {**challenge, **changes}.items() if k in Challenge.model_fields}
    try:
        Challenge(**merged)
    except PydanticValidationError as e:
        raise ValidationError(e.errors()[0]["msg"])
    if merged["end_date"] <= merged["start_date"]:
        raise ValidationError("end_date must be after start_date")
    changes["updated_at"] = now()
    updated = db["challenge"].find_one_and_update(
        {"_id": challenge["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    return ok(updated, message="Challenge updated successfully")


# ------------------ Badges ------------------

class BadgeCreate(CamelModel):
    name: str
    description: str
    icon: str
    level: str
    criteria: BadgeCriteria
    points: int = 0
    rarity: str = "Common"


@router.post("/badges", status_code=201)
def create_badge(payload: BadgeCreate, admin=Depends(current_admin), db=Depends(get_db)):
    try:
        doc = Badge(**payload.model_dump())
    except PydanticValidationError as e:
        first = e.errors()[0]
        raise ValidationError(f"{'.'.join(str(p) for p in first['loc'])}: {first['msg']}")
    if db["badge"].find_one({"name": doc.name}):
        raise ConflictError("A badge with this name already exists")
    try:
        badge = create_document(db, "badge", doc)
    except DuplicateKeyError:
        raise ConflictError("A badge with this name already exists")
    return ok(badge, message="Badge created successfully")


@router.get("/badges")
def badges(admin=Depends(current_admin), db=Depends(get_db)):
    items = get_documents(db, "badge", sort=[("created_at", -1)])
    for b in items:
        b["earned_count"] = len(b.get("earned_by", []))
    return ok(items, count=len(items))
