"""
Stage progression engine.

A relationship only moves forward along STAGE_ORDER. Advancing is a
compare-and-swap on the observed `current_stage` plus `status == 'active'`,
written in the same transaction as a StageTransition row keyed on
(relationship_id, to_stage), so concurrent or repeated callers advance at
most once and a paused relationship never advances.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from companion.db.models import Application, Relationship, StageRequirement, StageTransition
from companion.db.models.base import as_utc, utcnow
from companion.db.models.relationship import empty_stage_metrics
from companion.exceptions import (
    DependencyFailureError,
    InvalidRequestError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
)
from companion.realtime.events import relationship_changed, requirement_changed
from companion.realtime.notifier import ChangeNotifier, channels_for_relationship, publish_quietly
from companion.services.notifications import create_notification
from companion.stages import catalogue
from companion.stages.repo import (
    find_by_application,
    list_requirements,
    require_relationship,
    require_relationship_for_user,
    seed_requirements,
)

log = logging.getLogger("companion-relationship")


@dataclass
class AdvanceResult:
    advanced: bool
    relationship: Relationship
    from_stage: str | None = None
    to_stage: str | None = None
    reason: str | None = None  # why nothing happened


@dataclass
class StageProgression:
    relationship_id: str
    current_stage: str
    status: str
    stages: list[dict]
    metrics: dict
    requirements: list[StageRequirement] = field(default_factory=list)
    progress_percent: int = 0
    next_stage_preview: list[str] = field(default_factory=list)
    features: list[dict] = field(default_factory=list)
    days_together: int = 0


def progress_percent(requirements) -> int:
    """Completed share of a requirement set, 0..100, rounded half up."""
    if not requirements:
        return 0
    done = sum(1 for r in requirements if r.is_completed)
    return int(math.floor(done * 100 / len(requirements) + 0.5))


def requirements_met(requirements) -> bool:
    return bool(requirements) and all(r.is_completed for r in requirements)


def compute_days_together(start: datetime | None, now: datetime | None = None) -> int:
    """Whole calendar days between two UTC dates; never negative."""
    if start is None:
        return 0
    now = as_utc(now) if now else datetime.now(timezone.utc)
    days = (now.date() - as_utc(start).date()).days
    return max(0, days)


def _party(rel: Relationship, user_id: int) -> str:
    if rel.youth_id == user_id:
        return "youth"
    if rel.elderly_id == user_id:
        return "elderly"
    raise NotAuthorizedError("You are not part of this relationship.")


def _complete_counted(requirements, metrics: dict, now: datetime) -> list[StageRequirement]:
    """Mark counted requirements whose metric reached the threshold."""
    changed = []
    for req in requirements:
        if req.is_completed or req.completion_mode != "counted" or not req.metric:
            continue
        if int(metrics.get(req.metric, 0) or 0) >= req.required_value:
            req.is_completed = True
            req.completed_at = now
            changed.append(req)
    return changed


def _derived_metrics(metrics: dict, requirements) -> dict:
    out = dict(empty_stage_metrics())
    out.update(metrics or {})
    out["progress_percentage"] = progress_percent(requirements)
    out["requirements_met"] = requirements_met(requirements)
    return out


async def compute_progress_percent(db: AsyncSession, relationship_id: str, stage: str) -> int:
    return progress_percent(await list_requirements(db, relationship_id, stage))


async def get_stage_progression(db: AsyncSession, user_id: int, now: datetime | None = None) -> StageProgression:
    rel = await require_relationship_for_user(db, user_id)
    requirements = await list_requirements(db, rel.id, rel.current_stage)
    return StageProgression(
        relationship_id=rel.id,
        current_stage=rel.current_stage,
        status=rel.status,
        stages=catalogue.stage_overview(rel.current_stage),
        metrics=dict(rel.stage_metrics or {}),
        requirements=requirements,
        progress_percent=progress_percent(requirements),
        next_stage_preview=catalogue.next_stage_preview(rel.current_stage),
        features=catalogue.stage_features(rel.current_stage),
        days_together=compute_days_together(rel.created_at, now),
    )


async def create_relationship_from_application(
    db: AsyncSession,
    app: Application,
    *,
    notifier: ChangeNotifier | None = None,
) -> Relationship:
    """Exactly one relationship per application; a repeat call returns the existing one."""
    existing = await find_by_application(db, app.id)
    if existing:
        return existing

    now = utcnow()
    rel = Relationship(
        youth_id=app.youth_id,
        elderly_id=app.elderly_id,
        application_id=app.id,
        current_stage=catalogue.STAGE_ORDER[0],
        stage_start_date=now,
        stage_metrics=empty_stage_metrics(),
        status="active",
        end_request_status="none",
        created_at=now,
        updated_at=now,
    )
    db.add(rel)
    try:
        await db.flush()
        await seed_requirements(db, rel.id, rel.current_stage)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await find_by_application(db, app.id)
        if existing:
            return existing
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        raise DependencyFailureError("Could not start the relationship. Please try again.", original_error=e) from e

    await db.refresh(rel)
    log.info("[STAGE] relationship started id=%s application=%s", rel.id, app.id)
    await publish_quietly(notifier, relationship_changed(rel, "INSERT"), channels_for_relationship(rel))

    for user_id in (rel.youth_id, rel.elderly_id):
        await create_notification(
            db,
            user_id=user_id,
            type="relationship_started",
            title="Your journey begins!",
            message=f"Welcome to the {catalogue.display_name(rel.current_stage)} stage.",
            reference_id=rel.id,
            reference_table="relationships",
            notifier=notifier,
        )
    return rel


async def _try_advance(db: AsyncSession, rel: Relationship, now: datetime) -> str | None:
    """One compare-and-swap attempt; returns the new stage or None if someone else moved first."""
    observed = rel.current_stage
    target = catalogue.next_stage(observed)
    try:
        result = await db.execute(
            update(Relationship)
            .where(
                Relationship.id == rel.id,
                Relationship.current_stage == observed,
                Relationship.status == "active",
            )
            .values(
                current_stage=target,
                stage_start_date=now,
                stage_metrics=empty_stage_metrics(),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            return None
        db.add(StageTransition(relationship_id=rel.id, from_stage=observed, to_stage=target, created_at=now))
        await seed_requirements(db, rel.id, target)
        await db.commit()
    except IntegrityError:
        # transition to `target` already recorded
        await db.rollback()
        return None
    except SQLAlchemyError as e:
        await db.rollback()
        raise DependencyFailureError("Could not advance the stage. Please try again.", original_error=e) from e
    return target


async def advance_relationship_if_eligible(
    db: AsyncSession,
    relationship_id: str,
    *,
    now: datetime | None = None,
    notifier: ChangeNotifier | None = None,
) -> AdvanceResult:
    rel = await require_relationship(db, relationship_id)

    if rel.status != "active":
        return AdvanceResult(False, rel, reason=f"relationship_{rel.status}")
    if catalogue.is_last_stage(rel.current_stage):
        return AdvanceResult(False, rel, reason="final_stage")

    requirements = await list_requirements(db, rel.id, rel.current_stage)
    if not requirements_met(requirements):
        return AdvanceResult(False, rel, reason="requirements_incomplete")

    from_stage = rel.current_stage
    to_stage = await _try_advance(db, rel, now or utcnow())
    rel = await require_relationship(db, relationship_id)
    if to_stage is None:
        log.info("[STAGE] advance skipped id=%s observed=%s now=%s", rel.id, from_stage, rel.current_stage)
        return AdvanceResult(False, rel, reason="stage_changed")

    log.info("[STAGE] advanced id=%s %s -> %s", rel.id, from_stage, to_stage)
    await publish_quietly(notifier, relationship_changed(rel), channels_for_relationship(rel))
    for user_id in (rel.youth_id, rel.elderly_id):
        await create_notification(
            db,
            user_id=user_id,
            type="stage_completed",
            title="Stage complete!",
            message=(
                f"You completed {catalogue.display_name(from_stage)}. "
                f"Welcome to {catalogue.display_name(to_stage)}!"
            ),
            reference_id=rel.id,
            reference_table="relationships",
            notifier=notifier,
        )
    return AdvanceResult(True, rel, from_stage, to_stage)


async def advance_stage_if_eligible(
    db: AsyncSession,
    user_id: int,
    *,
    now: datetime | None = None,
    notifier: ChangeNotifier | None = None,
) -> AdvanceResult:
    rel = await require_relationship_for_user(db, user_id)
    return await advance_relationship_if_eligible(db, rel.id, now=now, notifier=notifier)


async def _save_metrics(db: AsyncSession, rel: Relationship, metrics: dict, now: datetime) -> None:
    # stage guard: a concurrent advance has already reset the counters
    await db.execute(
        update(Relationship)
        .where(Relationship.id == rel.id, Relationship.current_stage == rel.current_stage)
        .values(stage_metrics=metrics, updated_at=now)
        .execution_options(synchronize_session=False)
    )


async def refresh_stage_metrics(
    db: AsyncSession,
    relationship_id: str,
    *,
    notifier: ChangeNotifier | None = None,
) -> dict:
    """Recompute progress and requirements_met from a fresh read of the requirements."""
    rel = await require_relationship(db, relationship_id)
    now = utcnow()
    requirements = await list_requirements(db, rel.id, rel.current_stage)
    completed = _complete_counted(requirements, rel.stage_metrics or {}, now)
    metrics = _derived_metrics(rel.stage_metrics, requirements)
    try:
        await _save_metrics(db, rel, metrics, now)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise DependencyFailureError("Could not update stage progress.", original_error=e) from e

    for req in completed:
        await publish_quietly(notifier, requirement_changed(req), channels_for_relationship(rel))
    return metrics


async def record_activity(
    db: AsyncSession,
    relationship_id: str,
    user_id: int,
    metric: str,
    amount: int = 1,
    *,
    notifier: ChangeNotifier | None = None,
) -> Relationship:
    """
    Count an activity towards the current stage. Counters keep running while
    the relationship is paused; advancing waits until it is active again.
    """
    if metric not in catalogue.METRICS:
        raise InvalidRequestError(f"Unknown activity metric: {metric}")
    if amount < 1:
        raise InvalidRequestError("Activity amount must be positive.")

    rel = await require_relationship(db, relationship_id)
    _party(rel, user_id)
    if rel.status == "ended":
        raise InvalidStateError("This relationship has ended.", current=rel.status, expected=("active", "paused"))

    now = utcnow()
    metrics = dict(empty_stage_metrics())
    metrics.update(rel.stage_metrics or {})
    metrics[metric] = int(metrics.get(metric, 0) or 0) + amount

    requirements = await list_requirements(db, rel.id, rel.current_stage)
    completed = _complete_counted(requirements, metrics, now)
    metrics = _derived_metrics(metrics, requirements)
    try:
        await _save_metrics(db, rel, metrics, now)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise DependencyFailureError("Could not record the activity. Please try again.", original_error=e) from e

    log.info("[STAGE] activity id=%s %s+%s progress=%s", rel.id, metric, amount, metrics["progress_percentage"])
    rel = await require_relationship(db, relationship_id)
    for req in completed:
        await publish_quietly(notifier, requirement_changed(req), channels_for_relationship(rel))
    await publish_quietly(notifier, relationship_changed(rel), channels_for_relationship(rel))

    if completed:
        result = await advance_relationship_if_eligible(db, rel.id, now=now, notifier=notifier)
        rel = result.relationship
    return rel


async def sign_off_requirement(
    db: AsyncSession,
    requirement_id: str,
    user_id: int,
    *,
    notifier: ChangeNotifier | None = None,
) -> StageRequirement:
    req = await db.get(StageRequirement, requirement_id, populate_existing=True)
    if req is None:
        raise NotFoundError("Requirement not found")
    rel = await require_relationship(db, req.relationship_id)
    party = _party(rel, user_id)

    if req.completion_mode != "sign_off":
        raise InvalidRequestError("This requirement is completed by activity, not by sign-off.")
    if rel.status == "ended":
        raise InvalidStateError("This relationship has ended.", current=rel.status, expected=("active", "paused"))
    if req.stage != rel.current_stage:
        raise InvalidStateError(
            "This requirement belongs to a different stage.",
            current=rel.current_stage,
            expected=(req.stage,),
        )
    if req.is_completed:
        return req

    now = utcnow()
    setattr(req, f"{party}_signed", True)
    if req.youth_signed and req.elderly_signed:
        req.is_completed = True
        req.completed_at = now

    try:
        await db.flush()
        requirements = await list_requirements(db, rel.id, rel.current_stage)
        await _save_metrics(db, rel, _derived_metrics(rel.stage_metrics, requirements), now)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise DependencyFailureError("Could not save the sign-off. Please try again.", original_error=e) from e

    log.info("[STAGE] sign-off id=%s requirement=%s by=%s done=%s", rel.id, req.id, party, req.is_completed)
    await publish_quietly(notifier, requirement_changed(req), channels_for_relationship(rel))

    if req.is_completed:
        await advance_relationship_if_eligible(db, rel.id, now=now, notifier=notifier)
    return req
