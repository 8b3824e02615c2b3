import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Any, List, Optional

import jwt
from fastapi import APIRouter, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from passlib.context import CryptContext
from pydantic import EmailStr, Field, ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError

import config
from database import get_db, create_document
from errors import AuthError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from helpers import now, ok, to_object_id, user_qr_payload
from schemas import (
    Address,
    CamelModel,
    GeoPoint,
    User as UserSchema,
    Collector as CollectorSchema,
    Vendor as VendorSchema,
    WasteType,
)

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)
security = HTTPBearer(auto_error=False)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class AccountRole(str, Enum):
    USER = "user"
    COLLECTOR = "collector"
    VENDOR = "vendor"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


ACCOUNT_COLLECTIONS = {
    AccountRole.USER: "user",
    AccountRole.COLLECTOR: "collector",
    AccountRole.VENDOR: "vendor",
    AccountRole.ADMIN: "admin",
    AccountRole.SUPERADMIN: "admin",
}

# Fields returned at login in addition to the common ones
LOGIN_FIELDS = {
    "user": ["points", "qr_code", "total_waste_disposed"],
    "collector": ["total_waste_collected", "accepted_waste_types", "is_verified"],
    "vendor": ["total_rewards", "total_redemptions", "is_verified"],
    "admin": ["permissions"],
}


# ------------------ Utils ------------------

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash or "")


def parse_role(role: str) -> AccountRole:
    try:
        return AccountRole(role)
    except ValueError:
        raise ValidationError("Invalid role")


def collection_for(role: str) -> str:
    return ACCOUNT_COLLECTIONS[parse_role(role)]


def create_token(account: Dict[str, Any]) -> str:
    payload = {
        "sub": str(account.get("_id")),
        "role": account["role"],
        "exp": datetime.now(timezone.utc) + timedelta(minutes=config.TOKEN_EXPIRE_MIN),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGO)


def get_current_account(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security), db=Depends(get_db)):
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthError("Not authorized to access this route")
    try:
        payload = jwt.decode(credentials.credentials, config.JWT_SECRET, algorithms=[config.JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Not authorized to access this route")

    role = payload.get("role")
    if role not in {r.value for r in AccountRole}:
        raise AuthError("Invalid role")
    account = db[ACCOUNT_COLLECTIONS[AccountRole(role)]].find_one({"_id": to_object_id(payload.get("sub"), "User")})
    if not account:
        raise NotFoundError("User not found")
    if not account.get("is_active", True):
        raise ForbiddenError("Account is deactivated")
    return account


def require_role(*roles: str):
    def checker(account=Depends(get_current_account)):
        if account.get("role") not in roles:
            raise ForbiddenError(f"User role '{account.get('role')}' is not authorized to access this route")
        return account

    return checker


def public_account(account: Dict[str, Any]) -> Dict[str, Any]:
    role = account["role"]
    data = {"_id": account["_id"], "name": account["name"], "email": account["email"], "role": role}
    for field in LOGIN_FIELDS[ACCOUNT_COLLECTIONS[AccountRole(role)]]:
        data[field] = account.get(field)
    return data


# ------------------ Registration ------------------

class RegisterRequest(CamelModel):
    role: str = "user"
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None
    address: Optional[Address] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    # collector
    accepted_waste_types: List[WasteType] = Field(default_factory=list)
    operating_hours: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    description: Optional[str] = None
    # vendor
    business_type: Optional[str] = None
    website: Optional[str] = None


def build_account(payload: RegisterRequest, role: AccountRole, **extra):
    """Validated schema instance for a new account of the given role."""
    base = dict(
        name=payload.name,
        email=payload.email.lower(),
        password_hash=hash_password(payload.password),
        phone=payload.phone,
        address=payload.address,
        **extra,
    )
    location = GeoPoint(lat=payload.lat, lng=payload.lng) if payload.lat is not None and payload.lng is not None else None
    try:
        if role == AccountRole.USER:
            return UserSchema(location=location, **base)
        if role == AccountRole.COLLECTOR:
            return CollectorSchema(
                location=location,
                accepted_waste_types=payload.accepted_waste_types,
                operating_hours=payload.operating_hours,
                description=payload.description,
                **base,
            )
        if role == AccountRole.VENDOR:
            vendor_fields = {"business_type": payload.business_type} if payload.business_type else {}
            return VendorSchema(
                location=location,
                description=payload.description,
                website=payload.website,
                **vendor_fields,
                **base,
            )
    except PydanticValidationError as e:
        first = e.errors()[0]
        raise ValidationError(f"{'.'.join(str(p) for p in first['loc'])}: {first['msg']}")
    raise ValidationError("Invalid role")


def register_account(db, payload: RegisterRequest, **extra) -> Dict[str, Any]:
    role = parse_role(payload.role)
    if role in (AccountRole.ADMIN, AccountRole.SUPERADMIN):
        raise ValidationError("Invalid role")
    collection = ACCOUNT_COLLECTIONS[role]
    email = payload.email.lower()
    if db[collection].find_one({"email": email}):
        raise ConflictError(f"{role.value.capitalize()} already exists with this email")

    doc = build_account(payload, role, **extra)
    try:
        account = create_document(db, collection, doc)
    except DuplicateKeyError:
        raise ConflictError(f"{role.value.capitalize()} already exists with this email")

    if role == AccountRole.USER:
        qr = user_qr_payload(account["_id"])
        db["user"].update_one({"_id": account["_id"]}, {"$set": {"qr_code": qr}})
        account["qr_code"] = qr
    logger.info("Registered %s %s", role.value, account["_id"])
    return account


@router.post("/register", status_code=201)
def register(payload: RegisterRequest, db=Depends(get_db)):
    account = register_account(db, payload)
    return ok(public_account(account), token=create_token(account))


@router.post("/register/user", status_code=201)
def register_user(payload: RegisterRequest, db=Depends(get_db)):
    payload.role = AccountRole.USER.value
    account = register_account(db, payload)
    return ok(public_account(account), token=create_token(account))


# ------------------ Login & profile ------------------

class LoginRequest(CamelModel):
    email: EmailStr
    password: str
    role: str


@router.post("/login")
def login(payload: LoginRequest, db=Depends(get_db)):
    collection = collection_for(payload.role)
    account = db[collection].find_one({"email": payload.email.lower()})
    if not account or not verify_password(payload.password, account.get("password_hash")):
        raise AuthError("Invalid credentials")
    if not account.get("is_active", True):
        raise ForbiddenError("Account is deactivated. Please contact administrator")
    return ok(public_account(account), token=create_token(account))


@router.get("/me")
def me(account=Depends(get_current_account)):
    return ok(account)


class ProfileUpdate(CamelModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None


def update_account(db, account: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    changes = {k: v for k, v in changes.items() if v is not None}
    changes["updated_at"] = now()
    collection = ACCOUNT_COLLECTIONS[AccountRole(account["role"])]
    db[collection].update_one({"_id": account["_id"]}, {"$set": changes})
    return db[collection].find_one({"_id": account["_id"]})


@router.put("/update-profile")
def update_profile(payload: ProfileUpdate, account=Depends(get_current_account), db=Depends(get_db)):
    return ok(update_account(db, account, payload.model_dump(exclude_none=True)))


class PasswordChange(CamelModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


@router.put("/change-password")
def change_password(payload: PasswordChange, account=Depends(get_current_account), db=Depends(get_db)):
    if not verify_password(payload.current_password, account.get("password_hash")):
        raise AuthError("Current password is incorrect")
    update_account(db, account, {"password_hash": hash_password(payload.new_password)})
    return ok(message="Password changed successfully")
