"""
Allowance Service - Decides whether a built-in request may run.

Read-only: admission takes no reservation. Settlement happens after the
response in CreditLedger.record_usage.
"""

import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chainchat.exceptions import StorageError
from chainchat.models.api import AllowanceResponse
from chainchat.models.domain import AccountKey
from chainchat.observability.logging import get_logger
from chainchat.observability.metrics import metrics
from chainchat.services.ledger import FREE_REQUESTS_PER_DAY, CreditLedger, utc_now

logger = get_logger(__name__)

DENIAL_REASON = "Free requests exhausted and no credit balance. Purchase credits to continue."


def next_reset_time(now: datetime) -> datetime:
    """Next UTC midnight, when free requests reset."""
    tomorrow = now.astimezone(UTC).date() + timedelta(days=1)
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=UTC)


class AllowanceService:
    """Free-tier and credit-balance admission for built-in model requests."""

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utc_now) -> None:
        self.clock = clock
        self.ledger = CreditLedger(session, clock=clock)

    async def check_allowance(self, key: AccountKey) -> AllowanceResponse:
        """
        Check whether the account may make one more built-in request.

        1. Fewer than FREE_REQUESTS_PER_DAY requests today -> free
        2. Otherwise a positive token balance -> paid
        3. Otherwise denied
        """
        start = time.perf_counter()
        try:
            usage = await self.ledger.get_daily_usage(key)
            request_count = usage.request_count if usage else 0

            if request_count < FREE_REQUESTS_PER_DAY:
                response = AllowanceResponse(
                    allowed=True,
                    mode="free",
                    free_remaining=FREE_REQUESTS_PER_DAY - request_count,
                )
            else:
                balance = await self.ledger.get_balance(key)
                balance_tokens = balance.balance_tokens if balance else 0
                if balance_tokens > 0:
                    response = AllowanceResponse(
                        allowed=True,
                        mode="paid",
                        free_remaining=0,
                        balance_tokens=balance_tokens,
                    )
                else:
                    response = AllowanceResponse(
                        allowed=False,
                        mode="paid",
                        reason=DENIAL_REASON,
                        free_remaining=0,
                        balance_tokens=0,
                    )
        except SQLAlchemyError as e:
            metrics.record_error("SQLAlchemyError", "check_allowance")
            raise StorageError(f"Allowance check for {key} failed") from e

        metrics.record_allowance_check(response.allowed, response.mode, time.perf_counter() - start)
        logger.info(
            "allowance_checked",
            chain_id=key.chain_id,
            account_name=key.account_name,
            allowed=response.allowed,
            mode=response.mode,
            request_count=request_count,
        )
        return response

    def next_reset_time(self) -> datetime:
        return next_reset_time(self.clock())
