import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware

import admin_api
import auth
import collector_api
import config
import user_api
import vendor_api
from database import db, create_document, ensure_indexes, get_db
from errors import ForbiddenError, register_error_handlers
from schemas import Admin as AdminSchema, Badge as BadgeSchema

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
        logger.info("Indexes ensured on %s", db.name)
    yield


app = FastAPI(title="Waste Recycling Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

app.include_router(auth.router)
app.include_router(user_api.router)
app.include_router(collector_api.router)
app.include_router(vendor_api.router)
app.include_router(admin_api.router)


# ------------------ Seed ------------------

SEED_BADGES = [
    {
        "name": "Eco Beginner",
        "description": "Disposed your first 10kg of waste",
        "icon": "🌱",
        "level": "Bronze",
        "criteria": {"type": "waste_quantity", "threshold": 10},
        "rarity": "Common",
        "points": 10,
    },
    {
        "name": "Regular Recycler",
        "description": "Completed 10 verified drop-offs",
        "icon": "🔁",
        "level": "Silver",
        "criteria": {"type": "transactions_count", "threshold": 10},
        "rarity": "Uncommon",
        "points": 25,
    },
    {
        "name": "Eco Master",
        "description": "Disposed 100kg of total waste",
        "icon": "🏆",
        "level": "Platinum",
        "criteria": {"type": "waste_quantity", "threshold": 100},
        "rarity": "Epic",
        "points": 100,
    },
    {
        "name": "Sustainability Legend",
        "description": "Disposed 500kg of total waste",
        "icon": "👑",
        "level": "Diamond",
        "criteria": {"type": "waste_quantity", "threshold": 500},
        "rarity": "Legendary",
        "points": 250,
    },
]

SEED_PERMISSIONS = [
    "manage_users", "manage_collectors", "manage_vendors", "manage_rewards", "view_analytics", "manage_admins",
]


@app.post("/api/seed")
def seed(database=Depends(get_db)):
    if not config.ENABLE_SEED:
        raise ForbiddenError("Seeding is disabled")
    created = {"badges": [], "admin": None}
    for badge in SEED_BADGES:
        if not database["badge"].find_one({"name": badge["name"]}):
            create_document(database, "badge", BadgeSchema(**badge))
            created["badges"].append(badge["name"])
    email = config.SEED_ADMIN_EMAIL.lower()
    if not database["admin"].find_one({"email": email}):
        create_document(database, "admin", AdminSchema(
            name="Super Admin",
            email=email,
            password_hash=auth.hash_password(config.SEED_ADMIN_PASSWORD),
            role="superadmin",
            permissions=SEED_PERMISSIONS,
            is_verified=True,
        ))
        created["admin"] = email
    logger.info("Seeded %d badges, admin: %s", len(created["badges"]), created["admin"])
    return {"success": True, "data": created}


# ------------------ Health ------------------

@app.get("/")
def read_root():
    return {
        "success": True,
        "message": "Waste Management API is running",
        "version": "1.0.0",
        "endpoints": {
            "auth": "/api/auth",
            "users": "/api/users",
            "collectors": "/api/collectors",
            "vendors": "/api/vendors",
            "admin": "/api/admin",
        },
    }


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if config.DATABASE_NAME else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if db is None:
        return response
    response["connection_status"] = "Connected"
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        logger.warning("Database health check failed: %s", e)
        response["database"] = "⚠️  Connected but Error"
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
