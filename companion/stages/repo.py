import logging
from datetime import datetime

from sqlalchemy import select, update, delete, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from companion.db.models import Relationship, StageRequirement
from companion.db.models.base import utcnow
from companion.exceptions import DependencyFailureError, InvalidStateError, NotFoundError
from companion.stages.catalogue import REQUIREMENT_TEMPLATES

log = logging.getLogger("companion-relationship")


async def get_relationship(db: AsyncSession, relationship_id: str) -> Relationship | None:
    return await db.get(Relationship, relationship_id, populate_existing=True)


async def require_relationship(db: AsyncSession, relationship_id: str) -> Relationship:
    rel = await get_relationship(db, relationship_id)
    if rel is None:
        raise NotFoundError("Relationship not found")
    return rel


async def find_relationship_for_user(
    db: AsyncSession,
    user_id: int,
    statuses: tuple[str, ...] = ("active", "paused"),
) -> Relationship | None:
    """Most recent relationship the user is a party to, in one of `statuses`."""
    res = await db.execute(
        select(Relationship)
        .where(
            or_(Relationship.youth_id == user_id, Relationship.elderly_id == user_id),
            Relationship.status.in_(statuses),
        )
        .order_by(Relationship.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return res.scalars().first()


async def require_relationship_for_user(db: AsyncSession, user_id: int) -> Relationship:
    rel = await find_relationship_for_user(db, user_id)
    if rel is None:
        raise NotFoundError("No active relationship found")
    return rel


async def find_by_application(db: AsyncSession, application_id: str) -> Relationship | None:
    res = await db.execute(
        select(Relationship).where(Relationship.application_id == application_id)
    )
    return res.scalars().first()


async def list_requirements(db: AsyncSession, relationship_id: str, stage: str) -> list[StageRequirement]:
    res = await db.execute(
        select(StageRequirement)
        .where(
            StageRequirement.relationship_id == relationship_id,
            StageRequirement.stage == stage,
        )
        .order_by(StageRequirement.created_at.asc(), StageRequirement.title.asc())
        .execution_options(populate_existing=True)
    )
    return list(res.scalars().all())


async def seed_requirements(db: AsyncSession, relationship_id: str, stage: str) -> list[StageRequirement]:
    """Fresh requirement set for a stage. Runs inside the caller's transaction."""
    await db.execute(
        delete(StageRequirement).where(
            StageRequirement.relationship_id == relationship_id,
            StageRequirement.stage == stage,
        )
    )
    now = utcnow()
    rows = [
        StageRequirement(
            relationship_id=relationship_id,
            stage=stage,
            title=t.title,
            description=t.description,
            completion_mode=t.completion_mode,
            metric=t.metric,
            required_value=t.required_value,
            created_at=now,
        )
        for t in REQUIREMENT_TEMPLATES.get(stage, ())
    ]
    db.add_all(rows)
    return rows


async def transition_relationship(
    db: AsyncSession,
    relationship_id: str,
    where: tuple,
    values: dict,
    *,
    expected: tuple[str, ...] = (),
    message: str = "This relationship has changed since you last saw it. Refresh and try again.",
) -> Relationship:
    """
    Conditional update of one relationship row. `where` holds the precondition
    columns; a zero rowcount is reported as InvalidStateError with the
    end-request status found on a fresh read.
    """
    values = dict(values)
    values.setdefault("updated_at", utcnow())

    try:
        result = await db.execute(
            update(Relationship)
            .where(Relationship.id == relationship_id, *where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            current = await get_relationship(db, relationship_id)
            if current is None:
                raise NotFoundError("Relationship not found")
            raise InvalidStateError(
                message,
                current=f"{current.status}/{current.end_request_status}",
                expected=expected,
            )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise DependencyFailureError("Could not update the relationship. Please try again.", original_error=e) from e

    return await require_relationship(db, relationship_id)


async def list_cooling_due(db: AsyncSession, now: datetime) -> list[Relationship]:
    res = await db.execute(
        select(Relationship)
        .where(
            Relationship.status == "paused",
            Relationship.end_request_status == "pending_cooldown",
            Relationship.cooling_ends_at <= now,
        )
        .order_by(Relationship.cooling_ends_at.asc())
    )
    return list(res.scalars().all())


async def list_end_requests(db: AsyncSession, status: str = "under_review") -> list[Relationship]:
    res = await db.execute(
        select(Relationship)
        .where(Relationship.end_request_status == status)
        .order_by(Relationship.end_request_at.asc())
    )
    return list(res.scalars().all())
