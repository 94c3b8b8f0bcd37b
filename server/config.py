"""
Runtime configuration for the RepoRadar API.

Everything is read from the environment (or a local .env file) once at import.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent

APP_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
APP_URL = os.getenv("APP_URL", "http://localhost:5173")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./database.db")

# External services
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-pro")
GEMINI_FAST_MODEL = os.getenv("GEMINI_FAST_MODEL", "gemini-2.5-flash")
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_PRO_PRICE_ID = os.getenv("STRIPE_PRO_PRICE_ID", "")
STRIPE_ENTERPRISE_PRICE_ID = os.getenv("STRIPE_ENTERPRISE_PRICE_ID", "")

# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN")

MAX_FAILED_LOGINS = 5
LOCKOUT_MINUTES = 15
PASSWORD_MIN_LENGTH = 8
RESET_TOKEN_TTL_MINUTES = 60

# HTTP
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "ALLOWED_ORIGINS",
        "http://localhost:5173,http://localhost:3000,http://localhost:8080",
    ).split(",")
    if origin.strip()
]
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() in ("1", "true", "yes")

# Batch analysis
BATCH_CONCURRENCY = int(os.getenv("BATCH_CONCURRENCY", "5"))
BATCH_MAX_ATTEMPTS = int(os.getenv("BATCH_MAX_ATTEMPTS", "3"))
BATCH_BACKOFF_SECONDS = float(os.getenv("BATCH_BACKOFF_SECONDS", "1.0"))
BATCH_MAX_SIZE = int(os.getenv("BATCH_MAX_SIZE", "50"))
BATCH_MAX_QUEUED_ITEMS = int(os.getenv("BATCH_MAX_QUEUED_ITEMS", "500"))

# Documentation viewer
DOCS_DIR = Path(os.getenv("DOCS_DIR", str(BASE_DIR.parent / "docs")))
DOCS_CACHE_TTL = int(os.getenv("DOCS_CACHE_TTL", "300"))


def stripe_enabled() -> bool:
    return bool(STRIPE_SECRET_KEY)


def gemini_enabled() -> bool:
    return bool(GEMINI_API_KEY)
