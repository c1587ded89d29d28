import logging
from datetime import datetime
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .models import UsageRecord, utc_now

logger = logging.getLogger(__name__)


class QuotaLedger:
    """Durable per-(caller, model) usage counters.

    Every mutation is a single Mongo operation so concurrent requests for the
    same key neither lose an increment nor apply a reset twice.
    """

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db["usage_records"]
        else:
            raise ValueError("QuotaLedger requires a db or collection")

    @staticmethod
    def _key(caller_id: str, model_id: str) -> Dict[str, Any]:
        return {"caller_id": caller_id, "model_id": model_id}

    async def get(self, caller_id: str, model_id: str, now: Optional[datetime] = None) -> UsageRecord:
        """Return the record for the key, creating a zeroed one if absent."""
        now = now or utc_now()
        key = self._key(caller_id, model_id)
        try:
            doc = await self._col.find_one_and_update(
                key,
                {
                    "$setOnInsert": {
                        "request_count": 0,
                        "tokens_used": 0,
                        "last_reset": now,
                        "updated_at": now,
                    }
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Lost the insert race against another request; the record exists now
            doc = await self._col.find_one(key)
        return UsageRecord.model_validate(doc)

    async def peek(self, caller_id: str, model_id: str) -> Optional[UsageRecord]:
        doc = await self._col.find_one(self._key(caller_id, model_id))
        if doc is None:
            return None
        return UsageRecord.model_validate(doc)

    async def increment(
        self,
        caller_id: str,
        model_id: str,
        requests: int = 1,
        tokens: int = 0,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or utc_now()
        key = self._key(caller_id, model_id)
        await self._col.update_one(
            key,
            {
                "$inc": {"request_count": int(requests), "tokens_used": max(0, int(tokens))},
                "$set": {"updated_at": now},
                "$setOnInsert": {"last_reset": now},
            },
            upsert=True,
        )

    async def reset(
        self,
        caller_id: str,
        model_id: str,
        now: Optional[datetime] = None,
        expected_last_reset: Optional[datetime] = None,
    ) -> UsageRecord:
        """Zero the counters and move last_reset to now.

        With expected_last_reset the reset only applies if nobody else reset
        the record since it was read; otherwise the current record is returned.
        """
        now = now or utc_now()
        flt = self._key(caller_id, model_id)
        if expected_last_reset is not None:
            flt["last_reset"] = expected_last_reset
        doc = await self._col.find_one_and_update(
            flt,
            {"$set": {"request_count": 0, "tokens_used": 0, "last_reset": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            logger.debug("Reset for %s/%s already applied by a concurrent request", caller_id, model_id)
            return await self.get(caller_id, model_id, now=now)
        return UsageRecord.model_validate(doc)
