import os
import logging
from typing import Optional, Tuple
from urllib.parse import urlparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


def _get_db_name_from_uri(uri: str) -> str:
    # DB name from the URI path, e.g. "/quotagate"; otherwise env or default
    parsed = urlparse(uri)
    if parsed.path and len(parsed.path) > 1:
        return parsed.path.lstrip("/")
    return os.getenv("MONGODB_DB", "quotagate")


def get_db() -> AsyncIOMotorDatabase:
    if _db is None:
        raise RuntimeError("Mongo DB not initialized. Call init_mongo() first.")
    return _db


async def init_mongo() -> Tuple[AsyncIOMotorClient, AsyncIOMotorDatabase]:
    """Initialize Mongo connection and ensure indexes.

    Reads MONGODB_URI and optional pool tuning from environment. The client
    is tz-aware so stored instants come back as UTC datetimes.
    """
    global _client, _db

    uri = os.getenv("MONGODB_URI", "mongodb://localhost:27017/quotagate")
    max_pool = int(os.getenv("MONGODB_MAX_POOL_SIZE", "100"))
    min_pool = int(os.getenv("MONGODB_MIN_POOL_SIZE", "0"))
    connect_timeout_ms = int(os.getenv("MONGODB_CONNECT_TIMEOUT_MS", "10000"))
    socket_timeout_ms = int(os.getenv("MONGODB_SOCKET_TIMEOUT_MS", "20000"))

    try:
        _client = AsyncIOMotorClient(
            uri,
            tz_aware=True,
            maxPoolSize=max_pool,
            minPoolSize=min_pool,
            connectTimeoutMS=connect_timeout_ms,
            socketTimeoutMS=socket_timeout_ms,
        )
        db_name = _get_db_name_from_uri(uri)
        _db = _client[db_name]

        try:
            await _db.command("ping")
            logger.info("Connected to MongoDB database '%s'", db_name)
        except Exception as e:  # pragma: no cover
            logger.warning("MongoDB ping failed: %s", e)

        await _ensure_indexes(_db)
        return _client, _db
    except Exception as e:
        logger.exception("Failed to initialize MongoDB: %s", e)
        raise


async def close_mongo() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
    _client = None
    _db = None


async def _ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    try:
        # Uniqueness backs the upsert-based counters
        await db["usage_records"].create_index(
            [("caller_id", 1), ("model_id", 1)], name="caller_model_v1", unique=True
        )
        await db["messages"].create_index([("thread_id", 1), ("created_at", 1)], name="thread_created_v1")
        await db["users"].create_index([("caller_id", 1)], name="caller_id_v1", unique=True)
        logger.info("MongoDB indexes ensured")
    except Exception as e:  # pragma: no cover - index creation failures should not crash
        logger.warning("Failed to ensure MongoDB indexes: %s", e)
