import os
from pathlib import Path

from dotenv import load_dotenv


# Load environment variables from .env file
load_dotenv()

# Application settings
APP_NAME = os.getenv("APP_NAME", "Dawrak Queue Service")
APP_VERSION = "1.0.0"
APP_DESCRIPTION = "Ticket issuance and now-serving pointer for real-time queue displays"

# Database configuration
DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR / 'queue.db'}")
DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

# Seconds a SQLite writer waits for the database lock before giving up
SQLITE_BUSY_TIMEOUT = float(os.getenv("SQLITE_BUSY_TIMEOUT", "15"))

# Queue behaviour
ADVANCE_MAX_ATTEMPTS = int(os.getenv("ADVANCE_MAX_ATTEMPTS", "5"))
FEED_MAX_PENDING = int(os.getenv("FEED_MAX_PENDING", "100"))

# Security
STAFF_API_KEY = os.getenv("STAFF_API_KEY") or None

# Server settings
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "info")

# CORS settings
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
