from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import config
import main
from conftest import PASSWORD, auth_headers
from database import get_db
from helpers import now
from main import app


def register(client, role="user", **fields):
    body = {"role": role, "name": f"Test {role}", "email": f"{role}@recycle.io", "password": PASSWORD}
    body.update(fields)
    return client.post("/api/auth/register", json=body)


# ------------------ Auth ------------------

def test_register_and_login(client):
    created = register(client)
    assert created.status_code == 201
    body = created.json()
    assert body["success"] is True
    assert body["token"]
    assert body["data"]["role"] == "user"
    assert "userId" in body["data"]["qr_code"]
    assert "password_hash" not in body["data"]

    logged_in = client.post("/api/auth/login", json={"email": "USER@recycle.io", "password": PASSWORD, "role": "user"})
    assert logged_in.status_code == 200
    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {logged_in.json()['token']}"})
    assert me.json()["data"]["email"] == "user@recycle.io"


def test_duplicate_email_is_rejected(client):
    register(client)
    again = register(client)
    assert again.status_code == 400
    assert again.json() == {"success": False, "message": "User already exists with this email"}


def test_login_failures(client):
    register(client)
    wrong = client.post("/api/auth/login", json={"email": "user@recycle.io", "password": "nope", "role": "user"})
    assert wrong.status_code == 401
    assert wrong.json()["success"] is False
    other_role = client.post("/api/auth/login", json={"email": "user@recycle.io", "password": PASSWORD, "role": "vendor"})
    assert other_role.status_code == 401
    bad_role = client.post("/api/auth/login", json={"email": "user@recycle.io", "password": PASSWORD, "role": "wizard"})
    assert bad_role.status_code == 400


def test_admin_accounts_cannot_self_register(client):
    assert register(client, role="admin").status_code == 400


def test_collector_registration_needs_waste_types(client):
    assert register(client, role="collector").status_code == 400
    ok = register(client, role="collector", accepted_waste_types=["Plastic"])
    assert ok.status_code == 201
    assert ok.json()["data"]["is_verified"] is False


def test_missing_token_and_wrong_role(client, make_user):
    missing = client.get("/api/users/dashboard")
    assert missing.status_code == 401
    assert missing.json()["success"] is False

    garbage = client.get("/api/users/dashboard", headers={"Authorization": "Bearer not-a-jwt"})
    assert garbage.status_code == 401

    user = make_user()
    forbidden = client.get("/api/collectors/dashboard", headers=auth_headers(user))
    assert forbidden.status_code == 403
    assert forbidden.json()["success"] is False


def test_deactivated_account_is_refused(client, make_user):
    user = make_user(is_active=False)
    assert client.get("/api/users/dashboard", headers=auth_headers(user)).status_code == 403


def test_request_validation_uses_envelope(client):
    response = client.post("/api/auth/register", json={"name": "x", "password": PASSWORD})
    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "email" in response.json()["message"]


def test_unexpected_errors_do_not_leak(client):
    def broken():
        raise RuntimeError("connection string with secrets")

    app.dependency_overrides[get_db] = broken
    response = client.post("/api/auth/login", json={"email": "a@recycle.io", "password": "x", "role": "user"})
    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "Server Error"}


def test_unknown_ids_are_not_found(client, make_user):
    user = make_user(points=100)
    response = client.post("/api/users/rewards/not-an-id/redeem", headers=auth_headers(user))
    assert response.status_code == 404
    assert response.json()["success"] is False


# ------------------ Users ------------------

def test_collection_points_by_distance(client, make_user, make_collector):
    near = make_collector(lat=6.93, lng=79.86)
    make_collector(lat=6.93, lng=79.86, is_verified=False)
    make_collector(lat=7.2906, lng=80.6337)
    make_collector(lat=6.93, lng=79.86, accepted_waste_types=["Glass"])
    user = make_user()

    response = client.get("/api/users/collection-points",
                          params={"lat": 6.9271, "lng": 79.8612, "radius_km": 5, "waste_type": "Plastic"},
                          headers=auth_headers(user))

    assert response.status_code == 200
    assert response.json()["count"] == 1
    assert response.json()["data"][0]["_id"] == str(near["_id"])


def test_insufficient_points_over_http(client, db, make_user, make_vendor):
    vendor = make_vendor()
    created = client.post("/api/vendors/rewards", headers=auth_headers(vendor), json={
        "title": "Tote bag",
        "description": "Reusable bag",
        "type": "Eco-Product",
        "points_required": 50,
        "valid_until": (now() + timedelta(days=5)).isoformat(),
    })
    assert created.status_code == 201
    user = make_user(points=40)

    response = client.post(f"/api/users/rewards/{created.json()['data']['_id']}/redeem", headers=auth_headers(user))

    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "Insufficient points"}
    assert db["user"].find_one({"_id": user["_id"]})["points"] == 40


def test_user_offer_negotiation_over_http(client, db, make_user, make_collector):
    user = make_user()
    collector = make_collector()

    offer = client.post("/api/users/offers", headers=auth_headers(user), json={
        "waste_type": "Plastic", "quantity": 10, "expected_price": 500, "location": {"city": "Colombo"},
    }).json()["data"]
    listed = client.get("/api/collectors/user-offers", params={"city": "colombo"}, headers=auth_headers(collector))
    assert [o["_id"] for o in listed.json()["data"]] == [offer["_id"]]

    request = client.post(f"/api/collectors/user-offers/{offer['_id']}/request", headers=auth_headers(collector), json={
        "offered_price": 450, "proposed_pickup_time": (now() + timedelta(days=1)).isoformat(),
    })
    assert request.status_code == 201
    request_id = request.json()["data"]["_id"]

    incoming = client.get("/api/users/purchase-requests", headers=auth_headers(user)).json()
    assert incoming["count"] == 1
    assert incoming["data"][0]["buyer"]["_id"] == str(collector["_id"])

    accepted = client.put(f"/api/users/purchase-requests/{request_id}", headers=auth_headers(user),
                          json={"response": "accept"})
    assert accepted.json()["data"]["status"] == "accepted"

    completed = client.put(f"/api/collectors/user-purchase-requests/{request_id}/complete",
                           headers=auth_headers(collector), json={"paymentAmount": 470})
    assert completed.status_code == 200
    assert completed.json()["points_earned"] == 100
    assert completed.json()["data"]["final_payment"] == 470

    again = client.put(f"/api/collectors/user-purchase-requests/{request_id}/complete",
                       headers=auth_headers(collector), json={"paymentAmount": 470})
    assert again.status_code == 400
    assert db["user"].find_one({"_id": user["_id"]})["cash_earned"] == 470


def test_vendor_purchase_over_http(client, db, make_collector, make_vendor):
    collector = make_collector()
    vendor = make_vendor()
    offer = client.post("/api/collectors/offers", headers=auth_headers(collector), json={
        "waste_type": "Plastic", "quantity": 20, "min_price_per_kg": 5,
    }).json()["data"]
    assert client.get("/api/vendors/offers", headers=auth_headers(vendor)).json()["count"] == 1

    purchase = client.post("/api/vendors/purchase", headers=auth_headers(vendor),
                           json={"offer_id": offer["_id"], "price_per_unit": 5})
    assert purchase.status_code == 201
    assert purchase.json()["data"]["total_amount"] == 100
    assert client.get("/api/vendors/offers", headers=auth_headers(vendor)).json()["count"] == 0

    purchase_id = purchase.json()["data"]["_id"]
    cancelled = client.put(f"/api/vendors/purchases/{purchase_id}/cancel", headers=auth_headers(vendor))
    assert cancelled.json()["data"]["status"] == "cancelled"
    assert client.get("/api/collectors/offers", headers=auth_headers(collector)).json()["data"][0]["status"] == "available"


def test_request_bodies_accept_camel_case(client, db, make_user, make_collector, make_vendor):
    user = make_user()
    collector = make_collector(inventory={"metal": 10})
    vendor = make_vendor()

    purchase = client.post("/api/vendors/purchase", headers=auth_headers(vendor), json={
        "collectorId": str(collector["_id"]), "wasteType": "Metal", "quantity": 10, "pricePerUnit": 5,
    })
    assert purchase.status_code == 201
    assert purchase.json()["data"]["total_amount"] == 50
    assert purchase.json()["data"]["poster_id"] == str(collector["_id"])

    offer = client.post("/api/users/offers", headers=auth_headers(user), json={
        "wasteType": "Paper", "quantity": 4, "expectedPrice": 80, "pickupPreference": "morning",
    })
    assert offer.status_code == 201
    assert offer.json()["data"]["expected_price"] == 80
    assert offer.json()["data"]["pickup_preference"] == "morning"

    request = client.post(f"/api/collectors/user-offers/{offer.json()['data']['_id']}/request",
                          headers=auth_headers(collector), json={
                              "offeredPrice": 70, "proposedPickupTime": (now() + timedelta(days=1)).isoformat(),
                          })
    assert request.status_code == 201
    assert request.json()["data"]["offered_price"] == 70


def test_collector_accepts_and_completes_vendor_purchase(client, db, make_collector, make_vendor):
    collector = make_collector(inventory={"metal": 50})
    vendor = make_vendor()
    purchase = client.post("/api/vendors/purchase", headers=auth_headers(vendor), json={
        "collector_id": str(collector["_id"]), "waste_type": "Metal", "quantity": 10, "price_per_unit": 30,
    }).json()["data"]

    accepted = client.put(f"/api/collectors/purchase-requests/{purchase['_id']}/accept", headers=auth_headers(collector),
                          json={"pickup_date": (now() + timedelta(days=2)).isoformat()})
    assert accepted.json()["data"]["status"] == "accepted"
    assert accepted.json()["data"]["pickup_date"] is not None
    done = client.put(f"/api/collectors/purchase-requests/{purchase['_id']}/complete", headers=auth_headers(collector))
    assert done.json()["data"]["final_payment"] == 300
    assert db["collector"].find_one({"_id": collector["_id"]})["inventory"]["metal"] == 40

    inventory = client.get("/api/vendors/inventory", headers=auth_headers(vendor)).json()["data"]
    assert inventory["total_quantity"] == 10


def test_dropoff_over_http(client, db, make_user, make_collector):
    user = make_user()
    collector = make_collector()
    scanned = client.post("/api/collectors/verify-qr", headers=auth_headers(collector), json={"qr_code": user["qr_code"]})
    assert scanned.json()["data"]["user"]["_id"] == str(user["_id"])

    response = client.post("/api/collectors/verify-dropoff", headers=auth_headers(collector), json={
        "user_id": str(user["_id"]), "waste_type": "E-waste", "quantity": 2, "qr_code_scanned": True,
    })
    assert response.status_code == 201
    assert response.json()["data"]["points_earned"] == 100
    assert client.get("/api/users/dashboard", headers=auth_headers(user)).json()["data"]["user"]["points"] == 100


def test_vendor_pricing(client, make_vendor, make_collector):
    vendor = make_vendor()
    assert client.get("/api/vendors/pricing", headers=auth_headers(vendor)).json()["data"]["pricing"] == []

    saved = client.put("/api/vendors/pricing", headers=auth_headers(vendor), json={
        "pricing": [{"waste_type": "Plastic", "price_per_kg": 40}, {"waste_type": "Metal", "price_per_kg": 120}],
    })
    assert saved.status_code == 200
    assert saved.json()["data"]["currency"] == "LKR"
    duplicate = client.put("/api/vendors/pricing", headers=auth_headers(vendor), json={
        "pricing": [{"waste_type": "Plastic", "price_per_kg": 40}, {"waste_type": "Plastic", "price_per_kg": 50}],
    })
    assert duplicate.status_code == 400

    listed = client.get("/api/collectors/vendors", headers=auth_headers(make_collector())).json()["data"]
    assert len(listed[0]["pricing"]["pricing"]) == 2


# ------------------ Admin & seed ------------------

def test_seed_is_disabled_by_default(client, monkeypatch):
    monkeypatch.setattr(config, "ENABLE_SEED", False)
    assert client.post("/api/seed").status_code == 403


def test_seed_then_admin_login(client, db, monkeypatch):
    monkeypatch.setattr(config, "ENABLE_SEED", True)
    seeded = client.post("/api/seed").json()["data"]
    assert "Eco Beginner" in seeded["badges"]
    assert client.post("/api/seed").json()["data"] == {"badges": [], "admin": None}

    login = client.post("/api/auth/login", json={
        "email": config.SEED_ADMIN_EMAIL, "password": config.SEED_ADMIN_PASSWORD, "role": "superadmin",
    })
    assert login.status_code == 200
    headers = {"Authorization": f"Bearer {login.json()['token']}"}
    assert client.get("/api/admin/dashboard", headers=headers).status_code == 200
    assert client.get("/api/admin/badges", headers=headers).json()["count"] == db["badge"].count_documents({})


def test_admin_manages_partners(client, db, make_admin, make_user):
    admin = make_admin()
    headers = auth_headers(admin)

    created = client.post("/api/admin/collectors", headers=headers, json={
        "name": "Green Center", "email": "green@recycle.io", "password": PASSWORD, "accepted_waste_types": ["Glass"],
    })
    assert created.status_code == 201
    assert created.json()["data"]["is_verified"] is True
    assert created.json()["data"]["verified_by"] == str(admin["_id"])
    collector_id = created.json()["data"]["_id"]

    assert client.post("/api/auth/login", json={
        "email": "green@recycle.io", "password": PASSWORD, "role": "collector",
    }).status_code == 200

    client.delete(f"/api/admin/collectors/{collector_id}", headers=headers)
    listed = client.get("/api/admin/collectors", params={"status": "inactive"}, headers=headers).json()
    assert [c["_id"] for c in listed["data"]] == [collector_id]

    user = make_user(name="Carol")
    status = client.put(f"/api/admin/users/{user['_id']}/status", headers=headers, json={"is_active": False})
    assert status.json()["data"]["is_active"] is False
    assert client.get("/api/admin/users", params={"search": "car"}, headers=headers).json()["count"] == 1

    assert client.get("/api/admin/dashboard", headers=auth_headers(user)).status_code == 403


def test_admin_challenges(client, make_admin, make_user):
    headers = auth_headers(make_admin())
    created = client.post("/api/admin/challenges", headers=headers, json={
        "title": "Glass month",
        "description": "Bring glass",
        "type": "Monthly",
        "goal": {"waste_type": "Glass", "target_quantity": 20},
        "reward": {"points": 100},
        "start_date": (now() - timedelta(days=1)).isoformat(),
        "end_date": (now() + timedelta(days=29)).isoformat(),
    })
    assert created.status_code == 201
    challenge_id = created.json()["data"]["_id"]

    updated = client.put(f"/api/admin/challenges/{challenge_id}", headers=headers, json={"title": "Glass sprint"})
    assert updated.json()["data"]["title"] == "Glass sprint"
    bad = client.put(f"/api/admin/challenges/{challenge_id}", headers=headers,
                     json={"end_date": (now() - timedelta(days=5)).isoformat()})
    assert bad.status_code == 400

    user = make_user()
    joined = client.post(f"/api/users/challenges/{challenge_id}/join", headers=auth_headers(user))
    assert joined.status_code == 200
    mine = client.get("/api/users/challenges", headers=auth_headers(user)).json()["data"]
    assert mine[0]["is_participating"] is True


@pytest.mark.parametrize("path", ["/", "/test"])
def test_service_endpoints(client, path):
    response = client.get(path)
    assert response.status_code == 200


def test_unknown_route_uses_envelope(client):
    response = client.get("/api/nowhere")
    assert response.status_code == 404
    assert response.json()["success"] is False


def test_startup_creates_indexes(monkeypatch):
    fresh = mongomock.MongoClient()["startup"]
    monkeypatch.setattr(main, "db", fresh)
    with TestClient(app):
        pass
    assert fresh["user"].index_information()["email_1"]["unique"] is True
    assert fresh["reward_redemption"].index_information()["redemption_code_1"]["unique"] is True
