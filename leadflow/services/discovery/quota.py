"""Per-tier daily discovery quota."""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from loguru import logger

from leadflow.services.discovery.exceptions import QuotaExceededError
from leadflow.services.discovery.models import QuotaSnapshot

if TYPE_CHECKING:
    from leadflow.services.discovery.repo import IRunRepository

DEFAULT_TIER = "free_trial"

TIER_DAILY_DISCOVERY_LIMIT = {
    "free_trial": 5,
    "starter": 25,
    "professional": 100,
    "enterprise": 500,
}

TIER_MAX_RESULTS_PER_DISCOVERY = {
    "free_trial": 60,
    "starter": 60,
    "professional": 120,
    "enterprise": 200,
}


def start_of_local_day(now: Optional[datetime] = None) -> datetime:
    """Midnight of the current day in the server's local timezone (tz-aware)."""
    now = (now or datetime.now()).astimezone()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def evaluate_quota(tier: Optional[str], today_count: int) -> QuotaSnapshot:
    """Pure quota computation. Unknown tiers fall back to free_trial limits."""
    tier = tier if tier in TIER_DAILY_DISCOVERY_LIMIT else DEFAULT_TIER
    return QuotaSnapshot(
        tier=tier,
        today_count=today_count,
        daily_limit=TIER_DAILY_DISCOVERY_LIMIT[tier],
        max_results_per_run=TIER_MAX_RESULTS_PER_DISCOVERY[tier],
    )


def check_admission(quota: QuotaSnapshot) -> QuotaSnapshot:
    if quota.today_count >= quota.daily_limit:
        raise QuotaExceededError(
            f"Daily discovery limit reached for your {quota.tier} plan "
            f"({quota.daily_limit}/day)"
        )
    return quota


class QuotaEnforcer:
    """Reads the user's tier and today's run count, then admits or rejects."""

    def __init__(self, runs: "IRunRepository"):
        self.runs = runs

    async def get_quota(self, user_id: str) -> QuotaSnapshot:
        tier = await self.runs.get_subscription_tier(user_id)
        today_count = await self.runs.count_runs_since(user_id, start_of_local_day())
        return evaluate_quota(tier, today_count)

    async def enforce(self, user_id: str) -> QuotaSnapshot:
        quota = await self.get_quota(user_id)
        if quota.today_count >= quota.daily_limit:
            logger.warning(
                f"Discovery quota reached for user {user_id}: "
                f"{quota.today_count}/{quota.daily_limit} ({quota.tier})"
            )
        return check_admission(quota)
