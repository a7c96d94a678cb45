"""
Application Configuration File

This file centralizes all configuration variables so that:
- deployment changes do not require code changes
- every value can be overridden with an OPSBOARD_* environment variable
- tests can patch values at runtime (modules read config.X at call time)
"""

import os
from pathlib import Path


def _env(name: str, default: str) -> str:
    return os.environ.get(f"OPSBOARD_{name}", default)


def _env_bool(name: str, default: bool) -> bool:
    return _env(name, "1" if default else "0").strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str = "") -> list:
    return [item.strip() for item in _env(name, default).split(",") if item.strip()]


# -------------------------------------------------
# BASE DIRECTORY
# -------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent

# -------------------------------------------------
# DATABASE CONFIGURATION
# -------------------------------------------------
DATABASE_NAME = "opsboard.db"
DATABASE_PATH = BASE_DIR / DATABASE_NAME

DATABASE_URL = _env("DATABASE_URL", f"sqlite:///{DATABASE_PATH}")

# -------------------------------------------------
# APPLICATION SETTINGS
# -------------------------------------------------
APP_NAME = "OpsBoard"
APP_VERSION = "1.0"
DEBUG = _env_bool("DEBUG", False)

# -------------------------------------------------
# NETWORK SETTINGS
# -------------------------------------------------
DEFAULT_HOST = _env("HOST", "0.0.0.0")
DEFAULT_PORT = int(_env("PORT", "8000"))

# -------------------------------------------------
# AUTHENTICATION SETTINGS
# -------------------------------------------------
SESSION_TIMEOUT_MINUTES = int(_env("SESSION_TIMEOUT_MINUTES", "480"))  # 8 hours
SESSION_TOKEN_LENGTH = 32
SESSION_HEADER = "X-Session-Token"

# bcrypt work factor; tests drop this to the minimum (4)
BCRYPT_ROUNDS = int(_env("BCRYPT_ROUNDS", "12"))

# Static keys accepted by the external incident ingestion endpoint
API_KEY_HEADER = "X-API-Key"
API_KEYS = _env_list("API_KEYS")

# -------------------------------------------------
# UPLOAD SETTINGS (task / incident attachments)
# -------------------------------------------------
UPLOAD_DIR = Path(_env("UPLOAD_DIR", str(BASE_DIR / "uploads")))
MAX_UPLOAD_BYTES = int(_env("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))  # 10 MB

ALLOWED_UPLOAD_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
    "application/zip",
    "application/x-zip-compressed",
)

# -------------------------------------------------
# LOGGING SETTINGS
# -------------------------------------------------
LOG_DIR = Path(_env("LOG_DIR", "logs"))
LOG_FILE = "app.log"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

# -------------------------------------------------
# LISTING SETTINGS
# -------------------------------------------------
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

# -------------------------------------------------
# SEED / DEMO SETTINGS
# -------------------------------------------------
ENABLE_SEED_DATA = _env_bool("ENABLE_SEED_DATA", False)  # Keep off in real deployment
SEED_PASSWORD = _env("SEED_PASSWORD", "admin123")
