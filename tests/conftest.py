import itertools
import os

os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("DATABASE_NAME", None)

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import RegisterRequest, create_token, hash_password, register_account
from database import create_document, ensure_indexes, get_db
from helpers import WASTE_TYPES
from main import app
from schemas import Admin

_ids = itertools.count(1)

PASSWORD = "secret123"


def _email(role):
    return f"{role}{next(_ids)}@recycle.io"


def _create(db, role, fields, **register_fields):
    payload = RegisterRequest(
        role=role,
        name=fields.pop("name", f"Test {role}"),
        email=fields.pop("email", None) or _email(role),
        password=PASSWORD,
        **register_fields,
    )
    account = register_account(db, payload)
    if fields:
        db[role].update_one({"_id": account["_id"]}, {"$set": fields})
    return db[role].find_one({"_id": account["_id"]})


@pytest.fixture
def db():
    database = mongomock.MongoClient()["waste_marketplace_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def factory(**fields):
        return _create(db, "user", fields)

    return factory


@pytest.fixture
def make_collector(db):
    def factory(accepted_waste_types=None, lat=6.9271, lng=79.8612, **fields):
        fields.setdefault("is_verified", True)
        return _create(db, "collector", fields, accepted_waste_types=accepted_waste_types or list(WASTE_TYPES),
                       lat=lat, lng=lng)

    return factory


@pytest.fixture
def make_vendor(db):
    def factory(**fields):
        fields.setdefault("is_verified", True)
        return _create(db, "vendor", fields, business_type="Both")

    return factory


@pytest.fixture
def make_admin(db):
    def factory(role="admin"):
        return create_document(db, "admin", Admin(
            name="Site Admin",
            email=_email("admin"),
            password_hash=hash_password(PASSWORD),
            role=role,
        ))

    return factory


def auth_headers(account):
    return {"Authorization": f"Bearer {create_token(account)}"}
