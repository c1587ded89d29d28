import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from router.pipeline import AuthSession

logger = logging.getLogger(__name__)


class SessionProvider:
    """Maps the caller id asserted by the auth layer to a session.

    Session issuance happens upstream; this only reads the subscription flag
    from the users collection. Unknown callers are treated as anonymous.
    """

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db["users"]
        else:
            raise ValueError("SessionProvider requires a db or collection")

    async def lookup(self, caller_id: Optional[str]) -> Optional[AuthSession]:
        caller_id = (caller_id or "").strip()
        if not caller_id:
            return None
        doc = await self._col.find_one({"caller_id": caller_id}, {"is_subscribed": 1})
        if doc is None:
            logger.info("Unknown caller %s; treating request as anonymous", caller_id)
            return None
        return AuthSession(caller_id=caller_id, is_subscribed=bool(doc.get("is_subscribed", False)))
