"""
Database connection and configuration

MongoDB holds the append-only skew history (see services/history_store.py).
The live engine never depends on it: the cache and pipeline work without a
database, but the app refuses to start when the connection settings are missing.
"""
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

REQUIRED_DB_VARS = {
    "MONGO_URL": "MongoDB connection string (e.g., mongodb://localhost:27017)",
    "DB_NAME": "Database name (e.g., skew_engine)",
}


def validate_required_env_vars():
    """
    Raise ValueError listing every missing database variable.
    """
    missing = [
        f"  - {var}: {description}"
        for var, description in REQUIRED_DB_VARS.items()
        if not os.environ.get(var)
    ]
    if missing:
        raise ValueError(
            "\n" + "=" * 60 + "\n"
            "CRITICAL: Missing required environment variables!\n"
            + "=" * 60 + "\n"
            + "\n".join(missing) + "\n\n"
            "Set them in backend/.env or the process environment.\n"
            + "=" * 60
        )


validate_required_env_vars()

try:
    client = AsyncIOMotorClient(
        os.environ['MONGO_URL'],
        maxPoolSize=10,
        connectTimeoutMS=5000,
        serverSelectionTimeoutMS=5000,
        retryWrites=True
    )
except Exception as e:
    raise ValueError(f"Failed to create MongoDB client: {e}")

db = client[os.environ['DB_NAME']]


async def check_db_connection():
    """
    Ping the server once.

    Returns:
        Tuple[bool, Optional[str]]: (success, error_message)
    """
    try:
        await client.admin.command('ping')
        logger.info(f"Database connected successfully: {os.environ['DB_NAME']}")
        return True, None
    except Exception as e:
        error_msg = f"Database connection failed: {e}"
        logger.error(error_msg)
        return False, error_msg
