"""
Admission control for pre-matches.

A youth may hold at most YOUTH_PRE_MATCH_LIMIT concurrent `pre_chat_active`
interests, an elderly at most ELDERLY_PRE_MATCH_LIMIT. Admins are exempt.
The check runs when an interest is created and again when it is accepted;
the second run is the one that counts.
"""

from dataclasses import dataclass

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from companion.core.config import settings
from companion.db.models import Application
from companion.exceptions import LimitExceededError

ROLES = ("youth", "elderly", "admin")


def pre_match_limit(role: str) -> int | None:
    """Ceiling for a role; None means unlimited."""
    if role == "youth":
        return settings.YOUTH_PRE_MATCH_LIMIT
    if role == "elderly":
        return settings.ELDERLY_PRE_MATCH_LIMIT
    if role == "admin":
        return None
    raise ValueError(f"Unknown role: {role}")


def is_limit_reached(active_count: int, role: str, limit: int | None = None) -> bool:
    """True when the user may NOT start another pre-match."""
    if role == "admin":
        return False
    if limit is None:
        limit = pre_match_limit(role)
    return active_count >= limit


@dataclass(frozen=True)
class AdmissionCheck:
    allowed: bool
    reason: str | None = None  # youth_limit_reached | elderly_limit_reached


async def count_active_pre_matches(db: AsyncSession, user_id: int, role: str) -> int:
    column = Application.youth_id if role == "youth" else Application.elderly_id
    count = await db.scalar(
        select(func.count(Application.id)).where(
            column == user_id,
            Application.status == "pre_chat_active",
        )
    )
    return int(count or 0)


async def check_pre_match_limit(db: AsyncSession, user_id: int, role: str) -> bool:
    if role == "admin":
        return False
    count = await count_active_pre_matches(db, user_id, role)
    return is_limit_reached(count, role)


async def can_start_pre_match(db: AsyncSession, youth_id: int, elderly_id: int) -> AdmissionCheck:
    # youth is reported first when both sides are full
    if await check_pre_match_limit(db, youth_id, "youth"):
        return AdmissionCheck(False, "youth_limit_reached")
    if await check_pre_match_limit(db, elderly_id, "elderly"):
        return AdmissionCheck(False, "elderly_limit_reached")
    return AdmissionCheck(True)


def raise_for_admission(check: AdmissionCheck) -> None:
    if check.allowed:
        return
    if check.reason == "youth_limit_reached":
        raise LimitExceededError(
            "youth",
            settings.YOUTH_PRE_MATCH_LIMIT,
            "This youth student has reached their active chat limit. "
            "They need to end an existing chat before this one can start.",
        )
    raise LimitExceededError("elderly", settings.ELDERLY_PRE_MATCH_LIMIT)
