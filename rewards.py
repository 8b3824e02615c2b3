"""
Vendor rewards and their redemption by users.

A redemption moves active -> used (vendor scans the code) or -> expired (the
reward's validity ran out; marked lazily when the code is checked).
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import ledger
from database import create_document
from errors import ConflictError, ForbiddenError, InsufficientPointsError, NotFoundError, ValidationError
from helpers import generate_redemption_code, naive_utc, now, redemption_qr_payload, to_object_id
from schemas import Reward, RewardRedemption

logger = logging.getLogger(__name__)

CODE_ATTEMPTS = 5

EDITABLE_FIELDS = {
    "title", "description", "image", "type", "points_required", "discount_percentage", "discount_amount",
    "stock_available", "valid_from", "valid_until", "terms_and_conditions", "is_active", "category",
}


# ------------------ Vendor side ------------------

def create_reward(db, vendor, payload: Dict[str, Any]) -> Dict[str, Any]:
    data = {k: v for k, v in payload.items() if k in EDITABLE_FIELDS and v is not None}
    data["valid_from"] = naive_utc(data.get("valid_from")) or now()
    data["valid_until"] = naive_utc(data.get("valid_until"))
    try:
        doc = Reward(vendor_id=str(vendor["_id"]), **data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        raise ValidationError(f"{'.'.join(str(p) for p in first['loc'])}: {first['msg']}")
    if doc.valid_until <= doc.valid_from:
        raise ValidationError("valid_until must be after valid_from")
    reward = create_document(db, "reward", doc)
    ledger.apply(db, "vendor", vendor["_id"], {"total_rewards": 1}, "reward", reward["_id"], "reward created")
    return reward


def _own_reward(db, vendor, reward_id, verb: str) -> Dict[str, Any]:
    reward = db["reward"].find_one({"_id": to_object_id(reward_id, "Reward")})
    if not reward:
        raise NotFoundError("Reward not found")
    if reward["vendor_id"] != str(vendor["_id"]):
        raise ForbiddenError(f"Not authorized to {verb} this reward")
    return reward


def update_reward(db, vendor, reward_id, changes: Dict[str, Any]) -> Dict[str, Any]:
    reward = _own_reward(db, vendor, reward_id, "update")
    changes = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS and v is not None}
    for field in ("valid_from", "valid_until"):
        if field in changes:
            changes[field] = naive_utc(changes[field])
    try:
        Reward(**{**reward, **changes})
    except PydanticValidationError as e:
        first = e.errors()[0]
        raise ValidationError(f"{'.'.join(str(p) for p in first['loc'])}: {first['msg']}")
    changes["updated_at"] = now()
    return db["reward"].find_one_and_update(
        {"_id": reward["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )


def deactivate_reward(db, vendor, reward_id) -> None:
    reward = _own_reward(db, vendor, reward_id, "delete")
    db["reward"].update_one({"_id": reward["_id"]}, {"$set": {"is_active": False, "updated_at": now()}})


def list_vendor_rewards(db, vendor, status: str = "all") -> List[Dict[str, Any]]:
    at = now()
    query: Dict[str, Any] = {"vendor_id": str(vendor["_id"])}
    if status == "active":
        query.update({"is_active": True, "valid_from": {"$lte": at}, "valid_until": {"$gte": at}})
    elif status == "expired":
        query["valid_until"] = {"$lt": at}
    elif status == "upcoming":
        query["valid_from"] = {"$gt": at}
    elif status == "inactive":
        query["is_active"] = False
    return list(db["reward"].find(query).sort("created_at", -1))


def list_vendor_redemptions(db, vendor, status: Optional[str] = None, reward_id: Optional[str] = None,
                            start_date=None, end_date=None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"vendor_id": str(vendor["_id"])}
    if status:
        query["status"] = status
    if reward_id:
        query["reward_id"] = reward_id
    if start_date or end_date:
        query["created_at"] = {}
        if start_date:
            query["created_at"]["$gte"] = naive_utc(start_date)
        if end_date:
            query["created_at"]["$lte"] = naive_utc(end_date)
    redemptions = list(db["reward_redemption"].find(query).sort("created_at", -1))
    for r in redemptions:
        r["user"] = db["user"].find_one({"_id": to_object_id(r["user_id"])}, {"name": 1, "email": 1, "phone": 1})
        r["reward"] = db["reward"].find_one({"_id": to_object_id(r["reward_id"])}, {"title": 1, "type": 1, "points_required": 1})
    return redemptions


def verify_redemption(db, vendor, code: str) -> Dict[str, Any]:
    redemption = db["reward_redemption"].find_one({"redemption_code": (code or "").upper(), "vendor_id": str(vendor["_id"])})
    if not redemption:
        raise NotFoundError("Redemption code not found")
    if redemption["status"] == "used":
        raise ConflictError("This code has already been used")
    if redemption["status"] == "expired":
        raise ConflictError("This code has expired")

    at = now()
    if at > redemption["expires_at"]:
        db["reward_redemption"].update_one(
            {"_id": redemption["_id"], "status": "active"},
            {"$set": {"status": "expired", "updated_at": at}},
        )
        raise ConflictError("This code has expired")

    used = db["reward_redemption"].find_one_and_update(
        {"_id": redemption["_id"], "status": "active"},
        {"$set": {"status": "used", "used_at": at, "updated_at": at}},
        return_document=ReturnDocument.AFTER,
    )
    if not used:
        raise ConflictError("This code has already been used")
    logger.info("Redemption %s used at vendor %s", used["redemption_code"], vendor["_id"])
    used["user"] = db["user"].find_one({"_id": to_object_id(used["user_id"])}, {"name": 1, "email": 1, "phone": 1})
    used["reward"] = db["reward"].find_one({"_id": to_object_id(used["reward_id"])}, {"title": 1, "description": 1, "type": 1})
    return used


# ------------------ User side ------------------

def available_rewards(db, user) -> Dict[str, Any]:
    at = now()
    rewards = list(db["reward"].find({
        "is_active": True,
        "valid_from": {"$lte": at},
        "valid_until": {"$gte": at},
        "$or": [{"stock_available": None}, {"stock_available": {"$gt": 0}}],
    }))
    for r in rewards:
        r["vendor"] = db["vendor"].find_one({"_id": to_object_id(r["vendor_id"])}, {"name": 1, "logo": 1})
    points = user.get("points", 0)
    return {
        "affordable": [r for r in rewards if r["points_required"] <= points],
        "coming_soon": [r for r in rewards if r["points_required"] > points],
        "user_points": points,
    }


def _insert_redemption(db, user, reward) -> Dict[str, Any]:
    for _ in range(CODE_ATTEMPTS):
        code = generate_redemption_code()
        doc = RewardRedemption(
            user_id=str(user["_id"]),
            reward_id=str(reward["_id"]),
            vendor_id=reward["vendor_id"],
            points_used=reward["points_required"],
            redemption_code=code,
            qr_code=redemption_qr_payload(code, user["_id"], reward["_id"], reward["vendor_id"]),
            expires_at=reward["valid_until"],
        )
        try:
            return create_document(db, "reward_redemption", doc)
        except DuplicateKeyError:
            logger.warning("Redemption code collision on %s, retrying", code)
    raise ConflictError("Could not generate a unique redemption code")


def _restock(db, reward) -> None:
    if reward.get("stock_available") is not None:
        db["reward"].update_one({"_id": reward["_id"]}, {"$inc": {"stock_available": 1}})


def redeem_reward(db, user, reward_id) -> Dict[str, Any]:
    reward = db["reward"].find_one({"_id": to_object_id(reward_id, "Reward")})
    if not reward:
        raise NotFoundError("Reward not found")
    at = now()
    if not reward.get("is_active") or reward["valid_until"] < at or reward["valid_from"] > at:
        raise ConflictError("Reward is not available")
    if reward.get("stock_available") is not None and reward["stock_available"] <= 0:
        raise ConflictError("Reward is out of stock")

    required = reward["points_required"]
    user = db["user"].find_one({"_id": user["_id"]})
    if user.get("points", 0) < required:
        raise InsufficientPointsError("Insufficient points")

    # Claim stock first, then points; each is a guarded update so nothing goes negative.
    if reward.get("stock_available") is not None:
        claimed = db["reward"].update_one(
            {"_id": reward["_id"], "stock_available": {"$gt": 0}},
            {"$inc": {"stock_available": -1}},
        )
        if not claimed.modified_count:
            raise ConflictError("Reward is out of stock")
    paid = ledger.apply(db, "user", user["_id"], {"points": -required}, "reward", reward["_id"],
                        "reward redeemed", guard={"points": {"$gte": required}})
    if not paid:
        _restock(db, reward)
        raise InsufficientPointsError("Insufficient points")

    try:
        redemption = _insert_redemption(db, user, reward)
    except ConflictError:
        ledger.apply(db, "user", user["_id"], {"points": required}, "reward", reward["_id"], "redemption refunded")
        _restock(db, reward)
        raise
    db["reward"].update_one({"_id": reward["_id"]}, {"$inc": {"redeemed": 1}, "$set": {"updated_at": now()}})

    vendor_changes = {"total_redemptions": 1}
    if not db["reward_redemption"].count_documents({"vendor_id": reward["vendor_id"], "user_id": str(user["_id"]),
                                                     "_id": {"$ne": redemption["_id"]}}):
        vendor_changes["unique_users"] = 1
    ledger.apply(db, "vendor", reward["vendor_id"], vendor_changes, "reward_redemption", redemption["_id"], "reward redeemed")

    remaining = db["user"].find_one({"_id": user["_id"]}, {"points": 1})["points"]
    logger.info("User %s redeemed reward %s (%s)", user["_id"], reward["_id"], redemption["redemption_code"])
    return {"redemption": redemption, "remaining_points": remaining}


def user_redemptions(db, user) -> List[Dict[str, Any]]:
    redemptions = list(db["reward_redemption"].find({"user_id": str(user["_id"])}).sort("created_at", -1))
    for r in redemptions:
        r["reward"] = db["reward"].find_one({"_id": to_object_id(r["reward_id"])}, {"title": 1, "description": 1, "image": 1})
        r["vendor"] = db["vendor"].find_one({"_id": to_object_id(r["vendor_id"])}, {"name": 1, "logo": 1})
    return redemptions
