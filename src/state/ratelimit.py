import logging
import math
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Callable, Optional

from gateway.schemas import ReasonCode
from .ledger import QuotaLedger
from .limits import RateLimitTable, estimate_token_count
from .models import ModelRateLimit, UsageRecord

logger = logging.getLogger(__name__)


def local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class Decision:
    allowed: bool
    reason_code: Optional[ReasonCode] = None
    reason: Optional[str] = None
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None
    cooldown_seconds: Optional[int] = None


def reset_boundary(last_reset: datetime) -> datetime:
    """Local midnight following last_reset."""
    next_day = last_reset.astimezone().date() + timedelta(days=1)
    # Offset is looked up for the new date; it differs across a DST change
    return datetime.combine(next_day, time.min).astimezone()


def tier_request_limit(limits: ModelRateLimit, is_subscribed: bool) -> int:
    return limits.subscriber_requests_per_day if is_subscribed else limits.free_requests_per_day


def tier_token_limit(limits: ModelRateLimit, is_subscribed: bool) -> int:
    return limits.subscriber_tokens_per_day if is_subscribed else limits.free_tokens_per_day


def tier_cooldown(limits: ModelRateLimit, is_subscribed: bool) -> Optional[int]:
    return limits.subscriber_cooldown_seconds if is_subscribed else limits.free_cooldown_seconds


def within_cooldown(record: UsageRecord, cooldown_seconds: Optional[int], now: Optional[datetime] = None) -> bool:
    # A record without requests has nothing to cool down from
    if not cooldown_seconds or record.request_count == 0:
        return False
    now = now or local_now()
    return now < record.last_reset + timedelta(seconds=cooldown_seconds)


def remaining_cooldown(record: UsageRecord, cooldown_seconds: Optional[int], now: Optional[datetime] = None) -> int:
    if not cooldown_seconds or record.request_count == 0:
        return 0
    now = now or local_now()
    ends = record.last_reset + timedelta(seconds=cooldown_seconds)
    return max(0, math.ceil((ends - now).total_seconds()))


class RateLimiter:
    """Allow/deny decisions for platform-mediated requests.

    Quotas only apply when a caller id is present; callers bringing their own
    upstream key are never metered. Cooldown is measured from the record's
    last_reset, not from the caller's most recent request.
    """

    def __init__(
        self,
        ledger: QuotaLedger,
        limits: Optional[RateLimitTable] = None,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self._ledger = ledger
        self._limits = limits or RateLimitTable()
        self._clock = clock

    @property
    def limits(self) -> RateLimitTable:
        return self._limits

    async def check(
        self,
        caller_id: Optional[str],
        model_id: str,
        message_text: str,
        is_subscribed: bool,
    ) -> Decision:
        if not caller_id:
            return Decision(allowed=True)

        limits = self._limits.for_model(model_id)
        if not is_subscribed and limits.free_requests_per_day == 0:
            return Decision(
                allowed=False,
                reason_code=ReasonCode.SUBSCRIPTION_REQUIRED,
                reason="This model requires a subscription.",
            )

        estimated = estimate_token_count(message_text)
        now = self._clock()
        record = await self._ledger.get(caller_id, model_id, now=now)

        request_limit = tier_request_limit(limits, is_subscribed)
        cooldown = tier_cooldown(limits, is_subscribed)
        boundary = reset_boundary(record.last_reset)

        if now >= boundary:
            logger.info("Resetting daily usage for %s on %s", caller_id, model_id)
            record = await self._ledger.reset(caller_id, model_id, now=now, expected_last_reset=record.last_reset)
            denial = self._cooldown_denial(record, cooldown, now)
            if denial is not None:
                return denial
            # A concurrent request may have won the reset and recorded already
            return Decision(allowed=True, remaining=max(0, request_limit - record.request_count))

        if record.request_count >= request_limit:
            return Decision(
                allowed=False,
                reason_code=ReasonCode.RATE_LIMITED,
                reason=f"You've reached your daily limit of {request_limit} requests for this model.",
                reset_at=boundary,
            )

        if record.tokens_used + estimated > tier_token_limit(limits, is_subscribed):
            return Decision(
                allowed=False,
                reason_code=ReasonCode.RATE_LIMITED,
                reason="You've reached your daily token limit for this model.",
                reset_at=boundary,
            )

        denial = self._cooldown_denial(record, cooldown, now)
        if denial is not None:
            return denial

        return Decision(allowed=True, remaining=request_limit - record.request_count - 1)

    @staticmethod
    def _cooldown_denial(record: UsageRecord, cooldown: Optional[int], now: datetime) -> Optional[Decision]:
        if not within_cooldown(record, cooldown, now):
            return None
        return Decision(
            allowed=False,
            reason_code=ReasonCode.COOLDOWN,
            reason="Please wait before making another request.",
            cooldown_seconds=remaining_cooldown(record, cooldown, now),
        )

    async def record(self, caller_id: Optional[str], model_id: str, tokens_used: int) -> None:
        if not caller_id:
            return
        try:
            await self._ledger.increment(caller_id, model_id, requests=1, tokens=tokens_used, now=self._clock())
        except Exception as e:
            logger.warning(
                "Failed to record usage for %s on %s [%s]: %s",
                caller_id,
                model_id,
                ReasonCode.PERSISTENCE_ERROR.value,
                e,
            )
