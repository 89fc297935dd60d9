"""
Database connection

Reads configuration from the environment (a local .env file is loaded first)
and exposes a MongoDB database handle. `db` is None when DATABASE_URL or
DATABASE_NAME is not set, so the API can still boot and report it on /test.
"""

import logging
import os

from dotenv import load_dotenv
from pymongo import ASCENDING, MongoClient

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_NAME = os.getenv("DATABASE_NAME")
    # Applied to server selection, connect and socket operations
    DATABASE_TIMEOUT_MS = int(os.getenv("DATABASE_TIMEOUT_MS", "5000"))

    # local | firebase
    IDENTITY_PROVIDER = os.getenv("IDENTITY_PROVIDER", "local").lower()
    FIREBASE_SERVICE_ACCOUNT = os.getenv("FIREBASE_SERVICE_ACCOUNT")
    FIREBASE_API_KEY = os.getenv("FIREBASE_API_KEY")
    VERIFICATION_URL = os.getenv("VERIFICATION_URL", "http://localhost:8000/verify-email")

    CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    PORT = int(os.getenv("PORT", 8000))


# (collection, field) pairs that must hold unique values
UNIQUE_FIELDS = [
    ("account", "username"),
    ("identity", "email"),
]

client = None
db = None

if Config.DATABASE_URL and Config.DATABASE_NAME:
    client = MongoClient(
        Config.DATABASE_URL,
        serverSelectionTimeoutMS=Config.DATABASE_TIMEOUT_MS,
        connectTimeoutMS=Config.DATABASE_TIMEOUT_MS,
        socketTimeoutMS=Config.DATABASE_TIMEOUT_MS,
    )
    db = client[Config.DATABASE_NAME]


def ensure_indexes(database) -> None:
    """Create the unique indexes the uniqueness claim relies on."""
    for collection, field in UNIQUE_FIELDS:
        database[collection].create_index([(field, ASCENDING)], unique=True, name=f"{field}_unique")
        logger.info("Unique index ensured on %s.%s", collection, field)
