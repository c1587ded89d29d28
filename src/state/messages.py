import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from .models import StoredMessage

logger = logging.getLogger(__name__)


class MessageStore:
    """Persists generated assistant messages into their chat thread."""

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db["messages"]
        else:
            raise ValueError("MessageStore requires a db or collection")

    async def save(self, message: StoredMessage) -> None:
        await self._col.insert_one(message.model_dump())
        logger.debug("Saved assistant message to thread %s", message.thread_id)
