import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALGO = os.getenv("JWT_ALGO", "HS256")
TOKEN_EXPIRE_MIN = int(os.getenv("TOKEN_EXPIRE_MIN", 60 * 24 * 30))

BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))

ENABLE_SEED = os.getenv("ENABLE_SEED", "").lower() in ("1", "true", "yes")

# WasteOffer postings expire after this many days unless given explicitly
OFFER_EXPIRY_DAYS = 7

SEED_ADMIN_EMAIL = os.getenv("SEED_ADMIN_EMAIL", "admin@wastemanagement.com")
SEED_ADMIN_PASSWORD = os.getenv("SEED_ADMIN_PASSWORD", "admin123456")
