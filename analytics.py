"""Dashboards and reports. Read-only sums over transaction documents, computed per request."""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from errors import ValidationError
from helpers import naive_utc, now, start_of_day, start_of_month, to_object_id


def _qty(doc) -> float:
    return doc.get("quantity", {}).get("value", 0)


def waste_breakdown(transactions: Iterable[Dict[str, Any]]) -> Dict[str, float]:
    breakdown: Dict[str, float] = defaultdict(float)
    for t in transactions:
        breakdown[t["waste_type"]] += _qty(t)
    return dict(breakdown)


def by_waste_type(transactions: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, float]]:
    stats: Dict[str, Dict[str, float]] = {}
    for t in transactions:
        entry = stats.setdefault(t["waste_type"], {"quantity": 0, "transactions": 0, "points": 0})
        entry["quantity"] += _qty(t)
        entry["transactions"] += 1
        entry["points"] += t.get("points_earned", 0)
    return stats


def daily_series(transactions: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    days: Dict[str, Dict[str, Any]] = {}
    for t in transactions:
        day = t["created_at"].date().isoformat()
        entry = days.setdefault(day, {"date": day, "quantity": 0, "transactions": 0, "points": 0})
        entry["quantity"] += _qty(t)
        entry["transactions"] += 1
        entry["points"] += t.get("points_earned", 0)
    return [days[d] for d in sorted(days)]


def period_start(period: str, at: Optional[datetime] = None) -> datetime:
    at = at or now()
    if period == "day":
        return start_of_day(at)
    if period == "week":
        return at - timedelta(days=7)
    if period == "month":
        return start_of_month(at)
    if period == "year":
        return at.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    raise ValidationError("period must be one of day, week, month, year")


# ------------------ Users ------------------

def user_dashboard(db, user) -> Dict[str, Any]:
    transactions = list(db["waste_transaction"].find({"user_id": str(user["_id"]), "status": "verified"}))
    month = start_of_month()
    monthly = [t for t in transactions if t["created_at"] >= month]
    badge_ids = [to_object_id(b) for b in user.get("badges", [])]
    return {
        "user": {
            "name": user["name"],
            "email": user["email"],
            "points": user.get("points", 0),
            "total_waste_disposed": user.get("total_waste_disposed", 0),
            "cash_earned": user.get("cash_earned", 0),
            "badges": list(db["badge"].find({"_id": {"$in": badge_ids}})) if badge_ids else [],
        },
        "stats": {
            "total_transactions": len(transactions),
            "monthly_waste": sum(_qty(t) for t in monthly),
            "waste_breakdown": waste_breakdown(transactions),
        },
    }


def leaderboard(db, period: str = "all", limit: int = 50) -> List[Dict[str, Any]]:
    projection = {"name": 1, "points": 1, "total_waste_disposed": 1, "badges": 1}
    if period == "all":
        rows = list(db["user"].find({"is_active": True}, projection).sort("points", -1).limit(limit))
    else:
        if period not in ("week", "month"):
            raise ValidationError("period must be one of all, week, month")
        since = period_start(period)
        totals: Dict[str, Dict[str, float]] = {}
        for t in db["waste_transaction"].find({"status": "verified", "created_at": {"$gte": since}}):
            entry = totals.setdefault(t["user_id"], {"period_points": 0, "period_waste": 0})
            entry["period_points"] += t.get("points_earned", 0)
            entry["period_waste"] += _qty(t)
        ranked = sorted(totals.items(), key=lambda kv: kv[1]["period_points"], reverse=True)[:limit]
        rows = []
        for user_id, stats in ranked:
            user = db["user"].find_one({"_id": to_object_id(user_id)}, projection)
            if user:
                rows.append({**user, **stats})
    return [{"rank": i + 1, **row} for i, row in enumerate(rows)]


# ------------------ Collectors ------------------

def collector_dashboard(db, collector) -> Dict[str, Any]:
    cid = str(collector["_id"])
    today = start_of_day()
    month = start_of_month()
    month_tx = list(db["waste_transaction"].find({"collector_id": cid, "status": "verified", "created_at": {"$gte": month}}))
    today_tx = [t for t in month_tx if t["created_at"] >= today]
    return {
        "collector": {
            "name": collector["name"],
            "total_waste_collected": collector.get("total_waste_collected", 0),
            "total_transactions": collector.get("total_transactions", 0),
            "accepted_waste_types": collector.get("accepted_waste_types", []),
            "inventory": collector.get("inventory", {}),
        },
        "today": {"transactions": len(today_tx), "waste_collected": sum(_qty(t) for t in today_tx)},
        "this_month": {
            "transactions": len(month_tx),
            "waste_collected": sum(_qty(t) for t in month_tx),
            "waste_breakdown": waste_breakdown(month_tx),
        },
    }


def collector_report(db, collector, period: str = "month", year: Optional[int] = None,
                     month: Optional[int] = None) -> Dict[str, Any]:
    at = now()
    if period == "month" and year and month:
        start = datetime(year, month, 1)
        end = datetime(year + (month == 12), month % 12 + 1, 1) - timedelta(microseconds=1)
    elif period == "year" and year:
        start, end = datetime(year, 1, 1), datetime(year + 1, 1, 1) - timedelta(microseconds=1)
    else:
        start, end = period_start(period, at), at
    transactions = list(db["waste_transaction"].find({
        "collector_id": str(collector["_id"]),
        "status": "verified",
        "created_at": {"$gte": start, "$lte": end},
    }))
    return {
        "period": period,
        "start_date": start,
        "end_date": end,
        "summary": {
            "total_transactions": len(transactions),
            "total_waste": sum(_qty(t) for t in transactions),
            "total_points": sum(t.get("points_earned", 0) for t in transactions),
            "unique_users": len({t["user_id"] for t in transactions}),
        },
        "waste_by_type": by_waste_type(transactions),
        "daily_stats": daily_series(transactions),
    }


def collector_transactions(db, collector, status=None, waste_type=None, start_date=None, end_date=None):
    query: Dict[str, Any] = {"collector_id": str(collector["_id"])}
    if status:
        query["status"] = status
    if waste_type:
        query["waste_type"] = waste_type
    if start_date or end_date:
        query["created_at"] = {}
        if start_date:
            query["created_at"]["$gte"] = naive_utc(start_date)
        if end_date:
            query["created_at"]["$lte"] = naive_utc(end_date)
    transactions = list(db["waste_transaction"].find(query).sort("created_at", -1))
    for t in transactions:
        t["user"] = db["user"].find_one({"_id": to_object_id(t["user_id"])}, {"name": 1, "email": 1, "phone": 1})
    return transactions


def collector_inventory(db, collector) -> List[Dict[str, Any]]:
    """Per waste type: what was collected, what is tied up in offers/purchases, what is left."""
    cid = str(collector["_id"])
    transactions = list(db["waste_transaction"].find({"collector_id": cid, "status": "verified"}))
    bought = list(db["collector_purchase_request"].find({"buyer_id": cid, "status": "completed"}))
    offered = waste_breakdown(db["waste_offer"].find({"collector_id": cid, "status": {"$in": ["available", "reserved"]}}))
    pending = waste_breakdown(db["waste_purchase"].find({"poster_id": cid, "status": {"$in": ["pending", "accepted"]}}))
    sold = waste_breakdown(db["waste_purchase"].find({"poster_id": cid, "status": "completed"}))

    inventory: Dict[str, Dict[str, Any]] = {}

    def entry(waste_type: str, unit: str = "kg") -> Dict[str, Any]:
        return inventory.setdefault(waste_type, {
            "waste_type": waste_type,
            "total_quantity": 0,
            "unit": unit,
            "transactions": 0,
            "total_points": 0,
            "status": {"available": 0, "in_offers": 0, "pending": 0, "sold": 0},
        })

    for t in transactions:
        e = entry(t["waste_type"], t.get("quantity", {}).get("unit", "kg"))
        e["total_quantity"] += _qty(t)
        e["transactions"] += 1
        e["total_points"] += t.get("points_earned", 0)
    for req in bought:
        offer = db["user_waste_offer"].find_one({"_id": to_object_id(req["offer_id"])})
        if offer:
            e = entry(offer["waste_type"], offer["quantity"].get("unit", "kg"))
            e["total_quantity"] += _qty(offer)
            e["transactions"] += 1

    for waste_type, e in inventory.items():
        e["status"]["in_offers"] = offered.get(waste_type, 0)
        e["status"]["pending"] = pending.get(waste_type, 0)
        e["status"]["sold"] = sold.get(waste_type, 0)
        e["status"]["available"] = max(
            0, e["total_quantity"] - e["status"]["in_offers"] - e["status"]["pending"] - e["status"]["sold"]
        )
    return list(inventory.values())


# ------------------ Vendors ------------------

def vendor_dashboard(db, vendor) -> Dict[str, Any]:
    vid = str(vendor["_id"])
    at = now()
    active_rewards = db["reward"].count_documents({
        "vendor_id": vid, "is_active": True, "valid_from": {"$lte": at}, "valid_until": {"$gte": at},
    })
    month = list(db["reward_redemption"].find({"vendor_id": vid, "created_at": {"$gte": start_of_month(at)}}))
    return {
        "vendor": {
            "name": vendor["name"],
            "logo": vendor.get("logo"),
            "total_rewards": vendor.get("total_rewards", 0),
            "total_redemptions": vendor.get("total_redemptions", 0),
            "unique_users": vendor.get("unique_users", 0),
        },
        "active_rewards": active_rewards,
        "this_month": {
            "redemptions": len(month),
            "points_distributed": sum(r["points_used"] for r in month),
            "unique_users": len({r["user_id"] for r in month}),
        },
    }


def vendor_analytics(db, vendor, period: str = "month") -> Dict[str, Any]:
    at = now()
    spans = {"week": timedelta(days=7), "month": timedelta(days=30), "year": timedelta(days=365)}
    if period not in spans:
        raise ValidationError("period must be one of week, month, year")
    redemptions = list(db["reward_redemption"].find({"vendor_id": str(vendor["_id"]), "created_at": {"$gte": at - spans[period]}}))

    total_points = sum(r["points_used"] for r in redemptions)
    by_reward: Dict[str, Dict[str, Any]] = {}
    days: Dict[str, Dict[str, Any]] = {}
    for r in redemptions:
        entry = by_reward.setdefault(r["reward_id"], {"reward_id": r["reward_id"], "count": 0, "points_used": 0})
        entry["count"] += 1
        entry["points_used"] += r["points_used"]
        day = r["created_at"].date().isoformat()
        d = days.setdefault(day, {"date": day, "redemptions": 0, "points": 0, "users": set()})
        d["redemptions"] += 1
        d["points"] += r["points_used"]
        d["users"].add(r["user_id"])
    for entry in by_reward.values():
        entry["reward"] = db["reward"].find_one({"_id": to_object_id(entry["reward_id"])}, {"title": 1, "type": 1, "points_required": 1})

    return {
        "period": period,
        "summary": {
            "total_redemptions": len(redemptions),
            "total_points_distributed": total_points,
            "unique_users": len({r["user_id"] for r in redemptions}),
            "average_points_per_redemption": round(total_points / len(redemptions)) if redemptions else 0,
        },
        "by_reward": list(by_reward.values()),
        "daily_stats": [
            {"date": d["date"], "redemptions": d["redemptions"], "points": d["points"], "unique_users": len(d["users"])}
            for _, d in sorted(days.items())
        ],
    }


def vendor_inventory(db, vendor) -> Dict[str, Any]:
    purchases = list(db["waste_purchase"].find({"buyer_id": str(vendor["_id"]), "status": "completed"}).sort("completed_at", -1))
    by_type: Dict[str, Dict[str, Any]] = {}
    for p in purchases:
        entry = by_type.setdefault(p["waste_type"], {"waste_type": p["waste_type"], "quantity": 0, "total_spent": 0, "purchases": 0})
        entry["quantity"] += _qty(p)
        entry["total_spent"] += p.get("final_payment") or p.get("total_amount", 0)
        entry["purchases"] += 1
    return {
        "summary": list(by_type.values()),
        "total_quantity": sum(e["quantity"] for e in by_type.values()),
        "total_spent": sum(e["total_spent"] for e in by_type.values()),
        "purchases": purchases,
    }


# ------------------ Admin ------------------

def admin_dashboard(db) -> Dict[str, Any]:
    month = start_of_month()
    verified = list(db["waste_transaction"].find({"status": "verified"}))
    monthly = [t for t in verified if t["created_at"] >= month]
    return {
        "overview": {
            "total_users": db["user"].count_documents({"is_active": True}),
            "total_collectors": db["collector"].count_documents({"is_active": True}),
            "total_vendors": db["vendor"].count_documents({"is_active": True}),
            "total_transactions": len(verified),
            "total_waste": sum(_qty(t) for t in verified),
        },
        "this_month": {
            "transactions": len(monthly),
            "waste": sum(_qty(t) for t in monthly),
            "points": sum(t.get("points_earned", 0) for t in monthly),
            "new_users": db["user"].count_documents({"created_at": {"$gte": month}}),
        },
        "waste_by_type": waste_breakdown(verified),
    }


def admin_analytics(db, start_date=None, end_date=None) -> Dict[str, Any]:
    query: Dict[str, Any] = {"status": "verified"}
    if start_date or end_date:
        query["created_at"] = {}
        if start_date:
            query["created_at"]["$gte"] = naive_utc(start_date)
        if end_date:
            query["created_at"]["$lte"] = naive_utc(end_date)
    transactions = list(db["waste_transaction"].find(query))

    collectors: Dict[str, Dict[str, Any]] = {}
    users: Dict[str, Dict[str, Any]] = {}
    for t in transactions:
        c = collectors.setdefault(t["collector_id"], {"collector_id": t["collector_id"], "waste": 0, "transactions": 0})
        c["waste"] += _qty(t)
        c["transactions"] += 1
        u = users.setdefault(t["user_id"], {"user_id": t["user_id"], "waste": 0, "points": 0})
        u["waste"] += _qty(t)
        u["points"] += t.get("points_earned", 0)

    top_collectors = sorted(collectors.values(), key=lambda s: s["waste"], reverse=True)[:10]
    for stat in top_collectors:
        stat["collector"] = db["collector"].find_one({"_id": to_object_id(stat["collector_id"])}, {"name": 1, "address": 1})
    top_users = sorted(users.values(), key=lambda s: s["points"], reverse=True)[:10]
    for stat in top_users:
        stat["user"] = db["user"].find_one({"_id": to_object_id(stat["user_id"])}, {"name": 1, "email": 1})

    return {
        "summary": {
            "total_transactions": len(transactions),
            "total_waste": sum(_qty(t) for t in transactions),
            "total_points": sum(t.get("points_earned", 0) for t in transactions),
            "unique_users": len(users),
        },
        "by_waste_type": by_waste_type(transactions),
        "top_collectors": top_collectors,
        "top_users": top_users,
    }
