"""
Cooling-off protocol for ending a relationship.

    end_request_status:  none --request--> pending_cooldown --cooldown over--> under_review
                           ^                    |                                 |
                           +------cancel--------+                   admin approve | admin reject
                                                                           v            v
                                                                   approved(ended)   rejected(active)

While `pending_cooldown` or `under_review` the relationship is `paused`, its
progress is frozen in `progress_frozen_at` and the stage engine will not
advance it. The end is never finalised automatically.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from companion.core.config import settings
from companion.db.models import Relationship
from companion.db.models.base import as_utc, utcnow
from companion.exceptions import InvalidStateError, NotAuthorizedError
from companion.realtime.events import relationship_changed
from companion.realtime.notifier import ChangeNotifier, channels_for_relationship, publish_quietly
from companion.services.notifications import create_notification
from companion.stages import catalogue
from companion.stages.progression import compute_progress_percent
from companion.stages.repo import (
    find_relationship_for_user,
    list_cooling_due,
    require_relationship,
    transition_relationship,
)

log = logging.getLogger("companion-relationship")


@dataclass(frozen=True)
class CoolingPeriodInfo:
    is_in_cooling_period: bool
    relationship_id: str | None = None
    end_request_status: str = "none"
    cooling_ends_at: datetime | None = None
    remaining_seconds: int = 0
    progress_frozen_at: float | None = None
    stage_display_name: str = ""


def _now(now: datetime | None) -> datetime:
    return as_utc(now) if now else datetime.now(timezone.utc)


def _other_party(rel: Relationship, user_id: int) -> int:
    if rel.youth_id == user_id:
        return rel.elderly_id
    if rel.elderly_id == user_id:
        return rel.youth_id
    raise NotAuthorizedError("You are not part of this relationship.")


def cooling_info_for(rel: Relationship | None, now: datetime | None = None) -> CoolingPeriodInfo:
    """Authoritative remaining time: `cooling_ends_at` minus `now`, floored at zero."""
    if rel is None:
        return CoolingPeriodInfo(is_in_cooling_period=False)

    ends_at = as_utc(rel.cooling_ends_at)
    remaining = 0
    if ends_at is not None:
        remaining = max(0, int((ends_at - _now(now)).total_seconds()))

    return CoolingPeriodInfo(
        is_in_cooling_period=(
            rel.status == "paused" and rel.end_request_status == "pending_cooldown" and remaining > 0
        ),
        relationship_id=rel.id,
        end_request_status=rel.end_request_status,
        cooling_ends_at=ends_at,
        remaining_seconds=remaining,
        progress_frozen_at=rel.progress_frozen_at,
        stage_display_name=catalogue.display_name(rel.current_stage),
    )


async def get_cooling_period_info(db: AsyncSession, user_id: int, now: datetime | None = None) -> CoolingPeriodInfo:
    rel = await find_relationship_for_user(db, user_id)
    return cooling_info_for(rel, now)


async def _notify_parties(db, rel: Relationship, user_ids, *, type: str, title: str, message: str, notifier):
    for user_id in user_ids:
        await create_notification(
            db,
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            reference_id=rel.id,
            reference_table="relationships",
            notifier=notifier,
        )


async def request_withdrawal(
    db: AsyncSession,
    relationship_id: str,
    user_id: int,
    reason: str,
    *,
    now: datetime | None = None,
    notifier: ChangeNotifier | None = None,
) -> Relationship:
    rel = await require_relationship(db, relationship_id)
    other_id = _other_party(rel, user_id)
    now = _now(now)

    frozen = await compute_progress_percent(db, rel.id, rel.current_stage)
    rel = await transition_relationship(
        db,
        relationship_id,
        (
            Relationship.status == "active",
            Relationship.end_request_status.in_(("none", "rejected")),
        ),
        {
            "status": "paused",
            "end_request_status": "pending_cooldown",
            "end_request_by": user_id,
            "end_request_reason": (reason or "").strip() or None,
            "end_request_at": now,
            "cooling_ends_at": now + timedelta(hours=settings.COOLING_PERIOD_HOURS),
            "progress_frozen_at": float(frozen),
        },
        expected=("active/none", "active/rejected"),
        message="This relationship is not active, or an end request is already in progress.",
    )
    log.info("[COOLING] withdrawal requested id=%s by=%s frozen=%s", rel.id, user_id, frozen)

    await publish_quietly(notifier, relationship_changed(rel), channels_for_relationship(rel))
    await _notify_parties(
        db,
        rel,
        [other_id],
        type="withdrawal_requested",
        title="Journey paused",
        message=(
            "Your companion has asked to end the relationship. "
            f"The journey is paused for a {settings.COOLING_PERIOD_HOURS}-hour cooling-off period."
        ),
        notifier=notifier,
    )
    return rel


async def cancel_withdrawal(
    db: AsyncSession,
    relationship_id: str,
    user_id: int,
    *,
    notifier: ChangeNotifier | None = None,
) -> Relationship:
    """Only the requester can take their end request back, and only during the cooldown."""
    rel = await require_relationship(db, relationship_id)
    other_id = _other_party(rel, user_id)
    if rel.end_request_by is not None and rel.end_request_by != user_id:
        raise NotAuthorizedError("Only the person who asked to end the relationship can cancel the request.")

    rel = await transition_relationship(
        db,
        relationship_id,
        (
            Relationship.status == "paused",
            Relationship.end_request_status == "pending_cooldown",
            Relationship.end_request_by == user_id,
        ),
        {
            "status": "active",
            "end_request_status": "none",
            "end_request_by": None,
            "end_request_reason": None,
            "end_request_at": None,
            "cooling_ends_at": None,
            "progress_frozen_at": None,
        },
        expected=("paused/pending_cooldown",),
        message="There is no end request in its cooling-off period to cancel.",
    )
    log.info("[COOLING] withdrawal cancelled id=%s by=%s", rel.id, user_id)

    await publish_quietly(notifier, relationship_changed(rel), channels_for_relationship(rel))
    await _notify_parties(
        db,
        rel,
        [other_id],
        type="withdrawal_cancelled",
        title="Journey resumed",
        message="The request to end your relationship was withdrawn. Your journey continues!",
        notifier=notifier,
    )
    return rel


async def resolve_cooling_period(
    db: AsyncSession,
    relationship_id: str,
    now: datetime | None = None,
    *,
    notifier: ChangeNotifier | None = None,
) -> bool:
    """
    Hand an elapsed cooldown to admin review. Returns False when the cooldown
    is still running or the request has already moved on.
    """
    now = _now(now)
    try:
        rel = await transition_relationship(
            db,
            relationship_id,
            (
                Relationship.status == "paused",
                Relationship.end_request_status == "pending_cooldown",
                Relationship.cooling_ends_at <= now,
            ),
            {"end_request_status": "under_review"},
            expected=("paused/pending_cooldown",),
        )
    except InvalidStateError:
        return False

    log.info("[COOLING] cooldown over id=%s -> under_review", rel.id)
    await publish_quietly(notifier, relationship_changed(rel), channels_for_relationship(rel))
    await _notify_parties(
        db,
        rel,
        [rel.youth_id, rel.elderly_id],
        type="end_request_under_review",
        title="Cooling-off period over",
        message="The cooling-off period has ended. Our team is now reviewing the end request.",
        notifier=notifier,
    )
    return True


async def resolve_elapsed_cooling_periods(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    notifier: ChangeNotifier | None = None,
) -> int:
    now = _now(now)
    resolved = 0
    for rel in await list_cooling_due(db, now):
        if await resolve_cooling_period(db, rel.id, now, notifier=notifier):
            resolved += 1
    return resolved


async def review_end_request(
    db: AsyncSession,
    relationship_id: str,
    admin_id: int,
    approve: bool,
    notes: str | None = None,
    *,
    notifier: ChangeNotifier | None = None,
) -> Relationship:
    now = utcnow()
    if approve:
        values = {
            "status": "ended",
            "end_request_status": "approved",
            "ended_at": now,
            "end_admin_notes": notes,
        }
    else:
        values = {
            "status": "active",
            "end_request_status": "rejected",
            "cooling_ends_at": None,
            "progress_frozen_at": None,
            "end_admin_notes": notes,
        }

    rel = await transition_relationship(
        db,
        relationship_id,
        (Relationship.end_request_status == "under_review",),
        values,
        expected=("paused/under_review",),
        message="This end request is not awaiting review.",
    )
    log.info("[COOLING] end request reviewed id=%s admin=%s approve=%s", rel.id, admin_id, approve)

    await publish_quietly(notifier, relationship_changed(rel), channels_for_relationship(rel))
    if approve:
        title, message = "Relationship ended", "Your relationship has been ended. Thank you for the time you shared."
    else:
        title, message = "Journey resumed", "After review, your relationship continues. Welcome back!"
    await _notify_parties(
        db,
        rel,
        [rel.youth_id, rel.elderly_id],
        type="end_request_approved" if approve else "end_request_rejected",
        title=title,
        message=message,
        notifier=notifier,
    )
    return rel


class CoolingCountdown:
    """
    Client-side ticking of the remaining cooldown. Advisory only: re-attach
    with a fresh `cooling_info_for()` to get the authoritative value.
    """

    def __init__(
        self,
        remaining_seconds: int,
        on_tick: Optional[Callable[[int], Awaitable[None]]] = None,
        on_finished: Optional[Callable[[], Awaitable[None]]] = None,
        interval: float = 1.0,
    ):
        self.remaining_seconds = max(0, int(remaining_seconds))
        self.on_tick = on_tick
        self.on_finished = on_finished
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def is_in_cooling_period(self) -> bool:
        return self.remaining_seconds > 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "CoolingCountdown":
        if not self.running:
            self._task = asyncio.create_task(self._run())
        return self

    async def _run(self) -> None:
        while self.remaining_seconds > 0:
            await asyncio.sleep(self.interval)
            self.remaining_seconds -= 1
            if self.on_tick is not None:
                await self.on_tick(self.remaining_seconds)
        if self.on_finished is not None:
            await self.on_finished()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def formatted(self) -> str:
        hours, rest = divmod(self.remaining_seconds, 3600)
        minutes, seconds = divmod(rest, 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
