"""
Participant Allocation Pool

Limit calculation for the 60/40 rule and read access to the monthly pool.

HARD RULE: the organic share of the monthly pool must be used up before
any paid slot can be bought. Pools are created, reset and usage-counted by
the quota provisioning service; this module only reads them, except for
`provision_pool` which is that service's write path.
"""

import logging
import math
from fractions import Fraction
from typing import Optional

from .config import QUOTA_SPLIT
from .models import AllocationPool, ParticipantLimits, SlotEligibility, current_period
from .protocols import LedgerStore

logger = logging.getLogger(__name__)


def _share(value) -> Fraction:
    # Exact decimal share, so floor(100 * 0.6) is 60 and never 59
    return Fraction(str(value))


def split_limits(monthly_limit: int, split: Optional[dict] = None):
    """(organic_limit, paid_limit) for a monthly allowance."""
    split = split or QUOTA_SPLIT
    organic_limit = math.floor(monthly_limit * _share(split["organic_share"]))
    paid_limit = math.floor(monthly_limit * _share(split["paid_share"]))
    return organic_limit, paid_limit


def calculate_participant_limits(pool: AllocationPool, split: Optional[dict] = None) -> ParticipantLimits:
    """
    Calculate participant purchase limits (60/40 rule).

    paid_remaining follows the pool's paid usage; purchasable_slots further
    subtracts slots already bought but not yet used, so one tranche can't
    be bought twice.
    """
    organic_limit, paid_limit = split_limits(pool.monthly_limit, split)

    organic_used = min(pool.organic_usage, organic_limit)
    organic_remaining = max(0, organic_limit - organic_used)

    # Paid slots only unlock when organic is depleted
    paid_unlocked = organic_remaining == 0

    paid_remaining = max(0, paid_limit - pool.paid_usage) if paid_unlocked else 0
    purchasable = (
        max(0, paid_limit - max(pool.paid_usage, pool.paid_purchased))
        if paid_unlocked else 0
    )

    return ParticipantLimits(
        organic_limit=organic_limit,
        paid_limit=paid_limit,
        organic_used=organic_used,
        paid_used=pool.paid_usage,
        organic_remaining=organic_remaining,
        paid_remaining=paid_remaining,
        paid_unlocked=paid_unlocked,
        purchasable_slots=purchasable,
        total_available=organic_remaining + paid_remaining
    )


def slot_eligibility(limits: Optional[ParticipantLimits]) -> SlotEligibility:
    if limits is None:
        return SlotEligibility(can_purchase=False, reason="Participant pool not found")

    if not limits.paid_unlocked:
        return SlotEligibility(
            can_purchase=False,
            reason=(
                f"Must use all {limits.organic_limit} organic slots first. "
                f"{limits.organic_remaining} remaining."
            )
        )

    if limits.purchasable_slots == 0:
        return SlotEligibility(
            can_purchase=False,
            reason="Maximum paid slots already purchased (40% of monthly pool)."
        )

    return SlotEligibility(can_purchase=True, max_available=limits.purchasable_slots)


class AllocationService:
    """Read access to allocation pools plus the provisioning write path."""

    def __init__(self, store: LedgerStore, split: Optional[dict] = None):
        self.store = store
        self.split = split or QUOTA_SPLIT

    async def get_allocation_pool(self, business_id: str, period: Optional[str] = None) -> Optional[AllocationPool]:
        """Pool for the given period (current month by default), None if never provisioned."""
        return await self.store.get_pool(business_id, period or current_period())

    async def get_limits(self, business_id: str, period: Optional[str] = None) -> Optional[ParticipantLimits]:
        pool = await self.get_allocation_pool(business_id, period)
        if pool is None:
            return None
        return calculate_participant_limits(pool, self.split)

    async def can_purchase_more_slots(self, business_id: str) -> SlotEligibility:
        """Check if business can purchase more participant slots."""
        return slot_eligibility(await self.get_limits(business_id))

    async def provision_pool(
        self,
        business_id: str,
        monthly_limit: int,
        organic_usage: int = 0,
        paid_usage: int = 0,
        period: Optional[str] = None
    ) -> AllocationPool:
        """
        Create or update the pool for a period.

        Called by the quota provisioning service only - it owns
        monthly_limit and the usage counters.
        """
        period = period or current_period()
        existing = await self.store.get_pool(business_id, period)
        purchased = existing.paid_purchased if existing else 0

        pool = AllocationPool(
            business_id=business_id,
            period=period,
            monthly_limit=monthly_limit,
            organic_usage=organic_usage,
            paid_purchased=purchased,
            paid_usage=paid_usage,
            remaining=max(0, monthly_limit + purchased - organic_usage - paid_usage)
        )
        saved = await self.store.save_pool(pool)
        logger.info(
            f"Provisioned pool for {business_id} ({saved.period}): limit={monthly_limit}, "
            f"organic_usage={organic_usage}, paid_usage={paid_usage}"
        )
        return saved
