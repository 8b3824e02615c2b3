import json
import math
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId

from errors import NotFoundError

WASTE_TYPES = ["E-waste", "Plastic", "Polythene", "Glass", "Paper", "Metal", "Organic"]

POINTS_PER_KG = {
    "E-waste": 50,
    "Plastic": 10,
    "Polythene": 10,
    "Glass": 5,
    "Paper": 5,
    "Metal": 20,
    "Organic": 3,
}
DEFAULT_POINTS_PER_KG = 5

# Points a user gets per kg sold directly to a collector
SALE_POINTS_PER_KG = 10

INVENTORY_KEYS = {
    "ewaste": "ewaste",
    "plastic": "plastic",
    "polythene": "polythene",
    "glass": "glass",
    "paper": "paper",
    "metal": "metal",
    "organic": "organic",
}

PRIVATE_FIELDS = ("password_hash",)


# ------------------ Time ------------------

def now() -> datetime:
    # Mongo hands back naive UTC datetimes, so everything stored is naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def start_of_day(ts: Optional[datetime] = None) -> datetime:
    ts = ts or now()
    return ts.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(ts: Optional[datetime] = None) -> datetime:
    return start_of_day(ts).replace(day=1)


# ------------------ Waste ------------------

def calculate_points(waste_type: str, quantity: float) -> int:
    rate = POINTS_PER_KG.get(waste_type, DEFAULT_POINTS_PER_KG)
    return int(math.floor(rate * quantity))


def normalize_waste_type(waste_type: str) -> str:
    """Inventory key for a waste type: "E-Waste " -> "ewaste". Unknown types pass through."""
    key = re.sub(r"[^a-z]", "", (waste_type or "").lower())
    return INVENTORY_KEYS.get(key, key)


# ------------------ Codes & QR payloads ------------------

def generate_redemption_code() -> str:
    return uuid.uuid4().hex[:8].upper()


def user_qr_payload(user_id) -> str:
    return json.dumps({"userId": str(user_id), "type": "user"})


def redemption_qr_payload(code: str, user_id, reward_id, vendor_id) -> str:
    return json.dumps({
        "code": code,
        "userId": str(user_id),
        "rewardId": str(reward_id),
        "vendorId": str(vendor_id),
    })


# ------------------ Geo ------------------

def haversine_km(lat1, lon1, lat2, lon2):
    R = 6371
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return R * c


def point_of(location: Optional[Dict[str, Any]]):
    """(lat, lng) from either a {lat, lng} dict or a {coordinates: [lng, lat]} dict."""
    if not location:
        return None
    if location.get("lat") is not None and location.get("lng") is not None:
        return float(location["lat"]), float(location["lng"])
    coords = location.get("coordinates")
    if coords and len(coords) == 2:
        return float(coords[1]), float(coords[0])
    return None


def within_radius(location, lat: float, lng: float, radius_km: float) -> bool:
    point = point_of(location)
    if point is None:
        return False
    return haversine_km(point[0], point[1], lat, lng) <= radius_km


# ------------------ Documents ------------------

def to_object_id(value, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(f"{label} not found")


def serialize(value):
    """Make a Mongo document JSON friendly: ObjectIds to str, no password hashes."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items() if k not in PRIVATE_FIELDS}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value


def ok(data=None, message: Optional[str] = None, count: Optional[int] = None, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = serialize(data)
    if message:
        body["message"] = message
    if count is not None:
        body["count"] = count
    body.update(serialize(extra))
    return body
