from dataclasses import dataclass
from datetime import datetime, timezone

from companion.core.config import settings
from companion.db.models.base import as_utc

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class PreMatchStatus:
    days_passed: int
    can_apply: bool
    is_expired: bool
    min_days: int

    @property
    def days_until_apply(self) -> int:
        return max(0, self.min_days - self.days_passed)


def calc_pre_match_status(
    applied_at: datetime,
    now: datetime | None = None,
    *,
    min_days: int | None = None,
    max_days: int | None = None,
) -> PreMatchStatus:
    """
    Whole days elapsed since `applied_at` (floored, not calendar aligned) and
    what they permit: formal application from `min_days`, forced decision from
    `max_days`. Pure: same inputs, same answer.
    """
    if min_days is None:
        min_days = settings.PRE_MATCH_MIN_DAYS
    if max_days is None:
        max_days = settings.PRE_MATCH_MAX_DAYS
    if now is None:
        now = datetime.now(timezone.utc)

    elapsed = (as_utc(now) - as_utc(applied_at)).total_seconds()
    days_passed = max(0, int(elapsed // SECONDS_PER_DAY))

    return PreMatchStatus(
        days_passed=days_passed,
        can_apply=days_passed >= min_days,
        is_expired=days_passed >= max_days,
        min_days=min_days,
    )
