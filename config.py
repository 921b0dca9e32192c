import os

# ----------------------
# Auth / Security
# ----------------------
SECRET_KEY = os.getenv("SECRET_KEY", "super-secret-key-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

# Optional bootstrap administrator, created at startup when missing
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
ADMIN_NAME = os.getenv("ADMIN_NAME", "Administrator")

# ----------------------
# Databases
# ----------------------
SQL_DATABASE_URL = os.getenv("SQL_DATABASE_URL", "sqlite:///./finance.db")

MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "finance")
LOG_COLLECTION = os.getenv("LOG_COLLECTION", "logs")

# ----------------------
# HTTP
# ----------------------
API_PREFIX = os.getenv("API_PREFIX", "/api")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
