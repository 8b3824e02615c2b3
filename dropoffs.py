"""Drop-off verification at collection points, plus the badges and challenges it feeds."""

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument

import ledger
from database import create_document
from errors import ConflictError, NotFoundError, ValidationError
from helpers import calculate_points, normalize_waste_type, now, to_object_id
from schemas import Challenge, Quantity, WasteTransaction

logger = logging.getLogger(__name__)

REWARD_TYPES = ("points", "cash")


# ------------------ Badges ------------------

def check_badge_eligibility(user: Dict[str, Any], badges: List[Dict[str, Any]], transactions_count: int = 0) -> List[str]:
    """Ids of badges the user qualifies for and does not hold yet."""
    held = set(user.get("badges") or [])
    earned = []
    for badge in badges:
        badge_id = str(badge["_id"])
        if badge_id in held:
            continue
        criteria = badge.get("criteria") or {}
        threshold = criteria.get("threshold", 0)
        kind = criteria.get("type")
        if kind == "waste_quantity":
            eligible = user.get("total_waste_disposed", 0) >= threshold
        elif kind == "transactions_count":
            eligible = transactions_count >= threshold
        else:
            eligible = False
        if eligible:
            earned.append(badge_id)
    return earned


def award_badges(db, user_id: str) -> List[Dict[str, Any]]:
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    badges = list(db["badge"].find({"is_active": True}))
    count = db["waste_transaction"].count_documents({"user_id": str(user_id), "status": "verified"})
    awarded = []
    for badge_id in check_badge_eligibility(user, badges, count):
        # $addToSet guard: a concurrent drop-off cannot award the same badge twice
        result = db["user"].update_one(
            {"_id": user["_id"], "badges": {"$ne": badge_id}},
            {"$addToSet": {"badges": badge_id}},
        )
        if not result.modified_count:
            continue
        badge = next(b for b in badges if str(b["_id"]) == badge_id)
        db["badge"].update_one({"_id": badge["_id"]}, {"$addToSet": {"earned_by": str(user_id)}})
        if badge.get("points"):
            ledger.apply(db, "user", user_id, {"points": badge["points"]}, "badge", badge_id, "badge bonus")
        logger.info("User %s earned badge %s", user_id, badge.get("name"))
        awarded.append(badge)
    return awarded


# ------------------ Challenges ------------------

def create_challenge(db, payload: Dict[str, Any]) -> Dict[str, Any]:
    try:
        doc = Challenge(**payload)
    except PydanticValidationError as e:
        first = e.errors()[0]
        raise ValidationError(f"{'.'.join(str(p) for p in first['loc'])}: {first['msg']}")
    if doc.end_date <= doc.start_date:
        raise ValidationError("end_date must be after start_date")
    return create_document(db, "challenge", doc)


def active_challenges_for(db, user) -> List[Dict[str, Any]]:
    at = now()
    user_id = str(user["_id"])
    result = []
    for challenge in db["challenge"].find({"is_active": True, "start_date": {"$lte": at}, "end_date": {"$gte": at}}):
        mine = next((p for p in challenge.get("participants", []) if p["user_id"] == user_id), None)
        challenge["user_progress"] = mine["progress"] if mine else 0
        challenge["user_completed"] = mine["completed"] if mine else False
        challenge["is_participating"] = mine is not None
        result.append(challenge)
    return result


def join_challenge(db, user, challenge_id) -> Dict[str, Any]:
    user_id = str(user["_id"])
    challenge = db["challenge"].find_one({"_id": to_object_id(challenge_id, "Challenge")})
    if not challenge:
        raise NotFoundError("Challenge not found")
    if not challenge.get("is_active", True) or challenge["end_date"] < now():
        raise ConflictError("Challenge is not active")
    updated = db["challenge"].find_one_and_update(
        {"_id": challenge["_id"], "participants.user_id": {"$ne": user_id}},
        {"$push": {"participants": {"user_id": user_id, "progress": 0, "completed": False, "completed_at": None}}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise ConflictError("Already participating in this challenge")
    return updated


def advance_challenges(db, user_id: str, waste_type: str, quantity: float, transaction_id) -> List[Dict[str, Any]]:
    """Record drop-off progress on joined challenges. Returns challenges completed by it."""
    at = now()
    completed = []
    query = {
        "is_active": True,
        "start_date": {"$lte": at},
        "end_date": {"$gte": at},
        "participants.user_id": user_id,
    }
    for challenge in db["challenge"].find(query):
        goal = challenge["goal"]
        if goal.get("waste_type", "Any") not in ("Any", waste_type):
            continue
        participants = challenge["participants"]
        idx = next(i for i, p in enumerate(participants) if p["user_id"] == user_id)
        me = participants[idx]
        if me.get("completed"):
            continue
        step = 1 if goal.get("unit") == "transactions" else quantity
        progress = me.get("progress", 0) + step
        changes = {f"participants.{idx}.progress": progress}
        done = progress >= goal["target_quantity"]
        if done:
            changes[f"participants.{idx}.completed"] = True
            changes[f"participants.{idx}.completed_at"] = at
        result = db["challenge"].update_one(
            {"_id": challenge["_id"], f"participants.{idx}.user_id": user_id, f"participants.{idx}.completed": False},
            {"$set": changes},
        )
        if done and result.modified_count:
            reward = challenge.get("reward") or {}
            ledger.apply(db, "user", user_id, {"points": reward.get("points", 0)}, "challenge",
                         challenge["_id"], "challenge completed", {"transaction_id": str(transaction_id)})
            if reward.get("badge_id"):
                db["user"].update_one({"_id": to_object_id(user_id)}, {"$addToSet": {"badges": reward["badge_id"]}})
            logger.info("User %s completed challenge %s", user_id, challenge["_id"])
            completed.append(challenge)
    return completed


# ------------------ Drop-off ------------------

def verify_dropoff(db, collector, user_id, waste_type: str, quantity: float, unit: str = "kg",
                   qr_code_scanned: bool = False, notes: Optional[str] = None,
                   reward_type: str = "points", cash_amount: Optional[float] = None) -> Dict[str, Any]:
    if not user_id or not waste_type or not quantity:
        raise ValidationError("Please provide userId, wasteType, and quantity")
    if quantity <= 0:
        raise ValidationError("Quantity must be greater than zero")
    reward_type = reward_type or "points"
    if reward_type not in REWARD_TYPES:
        raise ValidationError('Invalid reward type. Must be either "points" or "cash"')
    if waste_type not in (collector.get("accepted_waste_types") or []):
        raise ValidationError(f"This collection point does not accept {waste_type}")

    user = db["user"].find_one({"_id": to_object_id(user_id, "User"), "is_active": True})
    if not user:
        raise NotFoundError("User not found")

    points = calculate_points(waste_type, quantity)
    cash = float(cash_amount or 0) if reward_type == "cash" else 0.0
    if cash < 0:
        raise ValidationError("Cash amount cannot be negative")
    stamp = now()
    transaction = create_document(db, "waste_transaction", WasteTransaction(
        user_id=str(user["_id"]),
        collector_id=str(collector["_id"]),
        waste_type=waste_type,
        quantity=Quantity(value=quantity, unit=unit or "kg"),
        points_earned=points if reward_type == "points" else 0,
        reward_type=reward_type,
        cash_amount=cash,
        status="verified",
        qr_code_scanned=bool(qr_code_scanned),
        notes=notes,
        verified_at=stamp,
        location=collector.get("location"),
    ))

    user_changes = {"total_waste_disposed": quantity}
    if reward_type == "points":
        user_changes["points"] = points
    else:
        user_changes["cash_earned"] = cash
    ledger.apply(db, "user", user["_id"], user_changes, "waste_transaction", transaction["_id"], "drop-off verified")
    ledger.apply(db, "collector", collector["_id"], {
        "total_waste_collected": quantity,
        "total_transactions": 1,
        f"inventory.{normalize_waste_type(waste_type)}": quantity,
    }, "waste_transaction", transaction["_id"], "drop-off collected")

    new_badges = award_badges(db, str(user["_id"])) if reward_type == "points" else []
    challenges = advance_challenges(db, str(user["_id"]), waste_type, quantity, transaction["_id"])

    transaction["user"] = {"_id": user["_id"], "name": user["name"], "email": user["email"]}
    if reward_type == "points":
        message = f"Successfully verified drop-off. User earned {points} points!"
    else:
        message = f"Successfully verified drop-off. User earned LKR {cash:.2f} cash!"
    return {
        "transaction": transaction,
        "new_badges": new_badges or None,
        "completed_challenges": challenges or None,
        "message": message,
    }


def lookup_user_by_qr(db, collector, qr_code: str) -> Dict[str, Any]:
    if not qr_code:
        raise ValidationError("Please provide QR code")
    user_id = qr_code
    try:
        data = json.loads(qr_code)
        if isinstance(data, dict):
            user_id = data.get("id") or data.get("userId") or data.get("_id") or qr_code
    except ValueError:
        pass

    projection = {"name": 1, "email": 1, "phone": 1, "points": 1, "total_waste_disposed": 1, "badges": 1, "created_at": 1}
    user = None
    try:
        user = db["user"].find_one({"_id": to_object_id(user_id)}, projection)
    except NotFoundError:
        pass
    if not user:
        user = db["user"].find_one({"qr_code": qr_code}, projection)
    if not user:
        raise NotFoundError("User not found. Please check the QR code.")

    recent = list(
        db["waste_transaction"]
        .find({"user_id": str(user["_id"]), "collector_id": str(collector["_id"])},
              {"waste_type": 1, "quantity": 1, "points_earned": 1, "created_at": 1})
        .sort("created_at", -1)
        .limit(5)
    )
    return {
        "user": user,
        "recent_transactions": recent,
        "last_dropoff": recent[0]["created_at"] if recent else None,
    }
