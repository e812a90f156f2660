"""Admin review of formal applications."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from companion.core.config import settings
from companion.db.models import Application
from companion.db.models.base import as_utc
from companion.exceptions import InvalidRequestError, InvalidStateError
from companion.matching.repo import (
    count_by_status,
    count_claims_held_by_others,
    count_reviewed_since,
    list_applied_at,
    require_application,
    review_claim_free,
    set_review_claim,
    transition,
)
from companion.realtime.events import application_changed
from companion.realtime.notifier import ChangeNotifier, channels_for_application, publish_quietly
from companion.services.notifications import create_notification

log = logging.getLogger("companion-review")

REJECTION_REASONS = (
    "Insufficient motivation letter",
    "Age verification failed",
    "Inappropriate match",
    "Incomplete profile",
    "Other (requires detailed explanation)",
)
OTHER_REASON = REJECTION_REASONS[-1]

MIN_LETTER_LENGTH = 50
MAX_LETTER_LENGTH = 1000
WAITING_ALERT_HOURS = 72

REVIEWABLE_STATUSES = ("pending_review", "info_requested")
_CLAIMED_MESSAGE = "Another admin is reviewing this application. Try again later."


@dataclass(frozen=True)
class ReviewValidation:
    is_valid: bool
    issues: list[str] = field(default_factory=list)


def validate_review_criteria(app: Application) -> ReviewValidation:
    """Advisory checks shown to the reviewer; they never block a decision."""
    issues = []
    if not app.youth.age_verified:
        issues.append("Age verification not completed for youth")
    if not app.elderly.age_verified:
        issues.append("Age verification not completed for elderly")
    letter = (app.motivation_letter or "").strip()
    if len(letter) < MIN_LETTER_LENGTH:
        issues.append(f"Motivation letter is too short (minimum {MIN_LETTER_LENGTH} characters)")
    elif len(letter) > MAX_LETTER_LENGTH:
        issues.append(f"Motivation letter is too long (maximum {MAX_LETTER_LENGTH} characters)")
    if not (app.youth.full_name or "").strip() or not (app.elderly.full_name or "").strip():
        issues.append("Profile information incomplete")
    return ReviewValidation(is_valid=not issues, issues=issues)


def _now(now: datetime | None = None) -> datetime:
    return as_utc(now) if now else datetime.now(timezone.utc)


def _hours_since(then: datetime, now: datetime) -> int:
    return max(0, int((now - as_utc(then)).total_seconds() // 3600))


def calculate_waiting_hours(app: Application, now: datetime | None = None) -> int:
    return _hours_since(app.applied_at, _now(now))


def is_waiting_time_alert(app: Application, now: datetime | None = None) -> bool:
    return calculate_waiting_hours(app, now) >= WAITING_ALERT_HOURS


def _claim_cutoff(now: datetime) -> datetime:
    return now - timedelta(minutes=settings.REVIEW_LOCK_MINUTES)


def claimed_by_other(app: Application, admin_id: int, now: datetime | None = None) -> bool:
    if app.locked_by is None or app.locked_by == admin_id or app.locked_at is None:
        return False
    return as_utc(app.locked_at) >= _claim_cutoff(_now(now))


async def _decide(
    db: AsyncSession,
    application_id: str,
    admin_id: int,
    expected: tuple[str, ...],
    values: dict,
    now: datetime | None,
) -> Application:
    """Admin decision: refused while another admin holds a live claim; clears the claim."""
    now = _now(now)
    app = await require_application(db, application_id)
    if claimed_by_other(app, admin_id, now):
        raise InvalidStateError(_CLAIMED_MESSAGE, current=app.status, expected=expected)
    return await transition(
        db,
        application_id,
        expected,
        {**values, "reviewed_by": admin_id, "reviewed_at": now, "locked_by": None, "locked_at": None},
        extra_where=(review_claim_free(admin_id, _claim_cutoff(now)),),
    )


async def approve_application(
    db: AsyncSession,
    application_id: str,
    admin_id: int,
    notes: str | None = None,
    *,
    now: datetime | None = None,
    notifier: ChangeNotifier | None = None,
) -> Application:
    app = await _decide(
        db,
        application_id,
        admin_id,
        ("pending_review",),
        {"status": "approved", "review_notes": notes},
        now,
    )
    log.info("[REVIEW] approved id=%s admin=%s", app.id, admin_id)
    await publish_quietly(notifier, application_changed(app), channels_for_application(app))

    await create_notification(
        db,
        user_id=app.elderly_id,
        type="application_approved",
        title="Application ready for your decision",
        message="An application to adopt you has been approved by our team. Please accept or decline.",
        reference_id=app.id,
        notifier=notifier,
    )
    await create_notification(
        db,
        user_id=app.youth_id,
        type="application_approved",
        title="Application approved by admin",
        message="Your application has passed review and is waiting for the elderly's final decision.",
        reference_id=app.id,
        notifier=notifier,
    )
    return app


async def reject_application(
    db: AsyncSession,
    application_id: str,
    admin_id: int,
    reason: str,
    notes: str | None = None,
    *,
    now: datetime | None = None,
    notifier: ChangeNotifier | None = None,
) -> Application:
    if reason not in REJECTION_REASONS:
        raise InvalidRequestError("Please choose one of the listed rejection reasons.")
    if reason == OTHER_REASON and not (notes or "").strip():
        raise InvalidRequestError("A detailed explanation is required when the reason is 'Other'.")

    app = await _decide(
        db,
        application_id,
        admin_id,
        REVIEWABLE_STATUSES,
        {"status": "rejected", "rejection_reason": reason, "review_notes": notes},
        now,
    )
    log.info("[REVIEW] rejected id=%s admin=%s reason=%s", app.id, admin_id, reason)
    await publish_quietly(notifier, application_changed(app), channels_for_application(app))

    await create_notification(
        db,
        user_id=app.youth_id,
        type="application_rejected",
        title="Application Update",
        message=f"Your application was not approved. Reason: {reason}",
        reference_id=app.id,
        notifier=notifier,
    )
    return app


async def request_more_info(
    db: AsyncSession,
    application_id: str,
    admin_id: int,
    info: str,
    *,
    now: datetime | None = None,
    notifier: ChangeNotifier | None = None,
) -> Application:
    info = (info or "").strip()
    if not info:
        raise InvalidRequestError("Please describe what information is needed.")

    app = await _decide(
        db,
        application_id,
        admin_id,
        ("pending_review",),
        {"status": "info_requested", "info_requested": info},
        now,
    )
    log.info("[REVIEW] info requested id=%s admin=%s", app.id, admin_id)
    await publish_quietly(notifier, application_changed(app), channels_for_application(app))

    await create_notification(
        db,
        user_id=app.youth_id,
        type="info_requested",
        title="More information needed",
        message=f"Our team needs more information about your application: {info}",
        reference_id=app.id,
        notifier=notifier,
    )
    return app


async def get_review_detail(db: AsyncSession, application_id: str, now: datetime | None = None) -> dict:
    app = await require_application(db, application_id)
    validation = validate_review_criteria(app)
    return {
        "application": app,
        "validation": validation,
        "waiting_hours": calculate_waiting_hours(app, now),
        "waiting_alert": is_waiting_time_alert(app, now),
    }


async def lock_application(
    db: AsyncSession,
    application_id: str,
    admin_id: int,
    *,
    now: datetime | None = None,
) -> Application:
    """
    Claims an application for one reviewer so two admins do not decide it at
    the same time. Locking again refreshes the claim; a lapsed claim can be
    taken over by anyone.
    """
    now = _now(now)
    app = await require_application(db, application_id)
    if app.status not in REVIEWABLE_STATUSES:
        raise InvalidStateError(
            "Only applications awaiting review can be claimed.",
            current=app.status,
            expected=REVIEWABLE_STATUSES,
        )

    claimed = await set_review_claim(
        db,
        application_id,
        (Application.status.in_(REVIEWABLE_STATUSES), review_claim_free(admin_id, _claim_cutoff(now))),
        {"locked_by": admin_id, "locked_at": now},
    )
    app = await require_application(db, application_id)
    if not claimed:
        raise InvalidStateError(_CLAIMED_MESSAGE, current=app.status, expected=REVIEWABLE_STATUSES)
    log.info("[REVIEW] claimed id=%s admin=%s", app.id, admin_id)
    return app


async def release_application(db: AsyncSession, application_id: str, admin_id: int) -> Application:
    app = await require_application(db, application_id)
    if app.locked_by is None:
        return app
    if app.locked_by != admin_id:
        raise InvalidStateError("Only the admin holding this application can release it.", current=app.status)

    await set_review_claim(
        db,
        application_id,
        (Application.locked_by == admin_id,),
        {"locked_by": None, "locked_at": None},
    )
    log.info("[REVIEW] released id=%s admin=%s", application_id, admin_id)
    return await require_application(db, application_id)


@dataclass(frozen=True)
class ApplicationStats:
    pending_review: int
    locked_by_others: int
    approved_today: int
    avg_waiting_hours: float
    by_status: dict[str, int] = field(default_factory=dict)


async def get_application_stats(db: AsyncSession, admin_id: int, now: datetime | None = None) -> ApplicationStats:
    """Review dashboard counters, as seen by `admin_id`."""
    now = _now(now)
    by_status = await count_by_status(db)
    waiting = [_hours_since(applied_at, now) for applied_at in await list_applied_at(db, "pending_review")]
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return ApplicationStats(
        pending_review=by_status.get("pending_review", 0),
        locked_by_others=await count_claims_held_by_others(db, admin_id, _claim_cutoff(now)),
        approved_today=await count_reviewed_since(db, "approved", start_of_day),
        avg_waiting_hours=round(sum(waiting) / len(waiting), 1) if waiting else 0.0,
        by_status=by_status,
    )
