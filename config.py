import os


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./grocery.db")

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = "HS256"
# Unset means tokens never expire
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES")) if os.getenv("JWT_EXPIRES_MINUTES") else None

BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:3002").split(",")
    if origin.strip()
]

SEED_SAMPLE_PRODUCTS = _flag("SEED_SAMPLE_PRODUCTS", "true")

PORT = int(os.getenv("PORT", 5000))
