"""
Application configuration, read from the environment once at import.
"""

import os

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "shop")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-key-change-me")
JWT_ALGORITHM = "HS256"
SESSION_COOKIE = "authToken"
SESSION_MAX_AGE = 7 * 24 * 60 * 60

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
COOKIE_SECURE = ENVIRONMENT == "production"

PRODUCT_CATALOG_URL = os.getenv("PRODUCT_CATALOG_URL", "https://fakestoreapi.com")
PRODUCT_CATALOG_TIMEOUT = float(os.getenv("PRODUCT_CATALOG_TIMEOUT", "10"))

LOGIN_MAX_ATTEMPTS = 5
LOGIN_LOCKOUT_WINDOW = 15 * 60

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
