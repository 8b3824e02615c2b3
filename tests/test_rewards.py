import re
from datetime import timedelta

import pytest
from pymongo.errors import DuplicateKeyError

from errors import ConflictError, ForbiddenError, InsufficientPointsError, NotFoundError, ValidationError
from helpers import now
from rewards import (
    available_rewards,
    create_reward,
    deactivate_reward,
    list_vendor_rewards,
    redeem_reward,
    update_reward,
    verify_redemption,
)


def reward_for(db, vendor, **fields):
    payload = {
        "title": "Free coffee",
        "description": "One free coffee",
        "type": "Free Item",
        "points_required": 50,
        "valid_from": now() - timedelta(days=1),
        "valid_until": now() + timedelta(days=30),
    }
    payload.update(fields)
    return create_reward(db, vendor, payload)


def test_redeem_with_too_few_points_changes_nothing(db, make_user, make_vendor):
    vendor = make_vendor()
    user = make_user(points=40)
    reward = reward_for(db, vendor, stock_available=3)

    with pytest.raises(InsufficientPointsError):
        redeem_reward(db, user, reward["_id"])

    assert db["user"].find_one({"_id": user["_id"]})["points"] == 40
    stored = db["reward"].find_one({"_id": reward["_id"]})
    assert stored["stock_available"] == 3
    assert stored["redeemed"] == 0
    assert db["reward_redemption"].count_documents({}) == 0
    assert db["ledger"].count_documents({"account_type": "user"}) == 0


def test_redeem_moves_points_stock_and_counters(db, make_user, make_vendor):
    vendor = make_vendor()
    user = make_user(points=120)
    reward = reward_for(db, vendor, stock_available=2)

    result = redeem_reward(db, user, reward["_id"])

    redemption = result["redemption"]
    assert result["remaining_points"] == 70
    assert re.fullmatch(r"[0-9A-F]{8}", redemption["redemption_code"])
    assert redemption["status"] == "active"
    assert redemption["points_used"] == 50
    stored = db["reward"].find_one({"_id": reward["_id"]})
    assert redemption["expires_at"] == stored["valid_until"]
    assert stored["stock_available"] == 1
    assert stored["redeemed"] == 1
    stored_vendor = db["vendor"].find_one({"_id": vendor["_id"]})
    assert stored_vendor["total_redemptions"] == 1
    assert stored_vendor["unique_users"] == 1
    assert stored_vendor["total_rewards"] == 1

    redeem_reward(db, user, reward["_id"])
    stored_vendor = db["vendor"].find_one({"_id": vendor["_id"]})
    assert stored_vendor["total_redemptions"] == 2
    assert stored_vendor["unique_users"] == 1
    assert db["user"].find_one({"_id": user["_id"]})["points"] == 20


def test_unavailable_rewards(db, make_user, make_vendor):
    vendor = make_vendor()
    user = make_user(points=500)
    with pytest.raises(ConflictError, match="out of stock"):
        redeem_reward(db, user, reward_for(db, vendor, stock_available=0)["_id"])
    with pytest.raises(ConflictError):
        redeem_reward(db, user, reward_for(db, vendor, valid_from=now() + timedelta(days=1))["_id"])
    inactive = reward_for(db, vendor)
    deactivate_reward(db, vendor, inactive["_id"])
    with pytest.raises(ConflictError):
        redeem_reward(db, user, inactive["_id"])
    with pytest.raises(NotFoundError):
        redeem_reward(db, user, "5f0000000000000000000000")
    assert db["user"].find_one({"_id": user["_id"]})["points"] == 500


def test_duplicate_redemption_code_is_rejected(db):
    doc = {"redemption_code": "ABCD1234", "user_id": "u", "created_at": now()}
    db["reward_redemption"].insert_one(dict(doc))
    with pytest.raises(DuplicateKeyError):
        db["reward_redemption"].insert_one(dict(doc))


def test_verify_redemption_marks_code_used_once(db, make_user, make_vendor):
    vendor, other = make_vendor(), make_vendor()
    user = make_user(points=100)
    code = redeem_reward(db, user, reward_for(db, vendor)["_id"])["redemption"]["redemption_code"]

    with pytest.raises(NotFoundError):
        verify_redemption(db, other, code)
    used = verify_redemption(db, vendor, code.lower())
    assert used["status"] == "used"
    assert used["used_at"] is not None
    with pytest.raises(ConflictError, match="already been used"):
        verify_redemption(db, vendor, code)


def test_expired_code_is_marked_lazily(db, make_user, make_vendor):
    vendor = make_vendor()
    user = make_user(points=100)
    redemption = redeem_reward(db, user, reward_for(db, vendor)["_id"])["redemption"]
    db["reward_redemption"].update_one({"_id": redemption["_id"]}, {"$set": {"expires_at": now() - timedelta(minutes=1)}})

    with pytest.raises(ConflictError, match="expired"):
        verify_redemption(db, vendor, redemption["redemption_code"])
    assert db["reward_redemption"].find_one({"_id": redemption["_id"]})["status"] == "expired"


def test_vendor_reward_management(db, make_vendor):
    vendor, other = make_vendor(), make_vendor()
    live = reward_for(db, vendor)
    reward_for(db, vendor, valid_from=now() + timedelta(days=2), valid_until=now() + timedelta(days=9))

    assert len(list_vendor_rewards(db, vendor)) == 2
    assert [r["_id"] for r in list_vendor_rewards(db, vendor, "active")] == [live["_id"]]
    assert len(list_vendor_rewards(db, vendor, "upcoming")) == 1

    assert update_reward(db, vendor, live["_id"], {"points_required": 80})["points_required"] == 80
    with pytest.raises(ForbiddenError):
        update_reward(db, other, live["_id"], {"points_required": 1})
    with pytest.raises(ValidationError):
        update_reward(db, vendor, live["_id"], {"points_required": -5})
    with pytest.raises(ForbiddenError):
        deactivate_reward(db, other, live["_id"])

    deactivate_reward(db, vendor, live["_id"])
    assert len(list_vendor_rewards(db, vendor, "inactive")) == 1


def test_reward_window_must_be_ordered(db, make_vendor):
    with pytest.raises(ValidationError):
        reward_for(db, make_vendor(), valid_until=now() - timedelta(days=2))


def test_available_rewards_split_by_affordability(db, make_user, make_vendor):
    vendor = make_vendor()
    cheap = reward_for(db, vendor, points_required=20)
    reward_for(db, vendor, points_required=200)
    reward_for(db, vendor, points_required=10, stock_available=0)

    listing = available_rewards(db, make_user(points=50))

    assert [r["_id"] for r in listing["affordable"]] == [cheap["_id"]]
    assert len(listing["coming_soon"]) == 1
    assert listing["user_points"] == 50
    assert listing["affordable"][0]["vendor"]["name"] == vendor["name"]
