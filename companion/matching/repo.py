import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from companion.db.models import Application, ACTIVE_APPLICATION_STATUSES
from companion.db.models.base import utcnow
from companion.exceptions import DependencyFailureError, InvalidStateError, NotFoundError
from companion.services.chat import delete_messages_for_application

log = logging.getLogger("companion-interest")


async def get_application(db: AsyncSession, application_id: str) -> Application | None:
    return await db.get(Application, application_id, populate_existing=True)


async def require_application(db: AsyncSession, application_id: str) -> Application:
    app = await get_application(db, application_id)
    if app is None:
        raise NotFoundError("Application not found")
    return app


async def find_active_for_pair(db: AsyncSession, youth_id: int, elderly_id: int) -> Application | None:
    res = await db.execute(
        select(Application).where(
            Application.youth_id == youth_id,
            Application.elderly_id == elderly_id,
            Application.status.in_(ACTIVE_APPLICATION_STATUSES),
        )
    )
    return res.scalars().first()


async def insert_interest(db: AsyncSession, youth_id: int, elderly_id: int) -> Application:
    """Insert a fresh interest unless the pair already has an open one."""
    existing = await find_active_for_pair(db, youth_id, elderly_id)
    if existing:
        raise InvalidStateError(
            "You already have an open interest with this person.",
            current=existing.status,
        )

    now = utcnow()
    app = Application(
        youth_id=youth_id,
        elderly_id=elderly_id,
        status="pending_interest",
        youth_decision="accept",
        elderly_decision="pending",
        applied_at=now,
    )
    db.add(app)
    try:
        await db.commit()
    except IntegrityError:
        # lost the race against a concurrent insert for the same pair
        await db.rollback()
        existing = await find_active_for_pair(db, youth_id, elderly_id)
        if existing:
            raise InvalidStateError(
                "You already have an open interest with this person.",
                current=existing.status,
            )
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        raise DependencyFailureError("Could not create the interest. Please try again.", original_error=e) from e

    await db.refresh(app)
    return app


async def transition(
    db: AsyncSession,
    application_id: str,
    expected: tuple[str, ...],
    values: dict,
    extra_where: tuple = (),
) -> Application:
    """
    Conditional full-record update: applies `values` only if the row is still
    in one of the `expected` statuses. Losing the race raises InvalidStateError
    carrying the status found on a fresh read.
    """
    values = dict(values)
    values.setdefault("reviewed_at", utcnow())

    try:
        result = await db.execute(
            update(Application)
            .where(
                Application.id == application_id,
                Application.status.in_(expected),
                *extra_where,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            current = await get_application(db, application_id)
            if current is None:
                raise NotFoundError("Application not found")
            raise InvalidStateError(
                "This application has changed since you last saw it. Refresh and try again.",
                current=current.status,
                expected=expected,
            )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise DependencyFailureError("Could not update the application. Please try again.", original_error=e) from e

    return await require_application(db, application_id)


async def delete_application_cascade(db: AsyncSession, application_id: str) -> None:
    """Messages go first, then the application, in one transaction."""
    try:
        removed = await delete_messages_for_application(db, application_id)
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("[INTEREST] message cleanup failed application_id=%s: %s", application_id, e)
        raise DependencyFailureError(
            "Could not remove the chat history for this application. Nothing was deleted.",
            original_error=e,
        ) from e

    try:
        await db.execute(delete(Application).where(Application.id == application_id))
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        log.error("[INTEREST] delete failed application_id=%s: %s", application_id, e)
        raise DependencyFailureError("Could not delete the application.", original_error=e) from e

    log.info("[INTEREST] deleted application_id=%s messages=%s", application_id, removed)


async def list_incoming_interests(db: AsyncSession, elderly_id: int) -> list[Application]:
    res = await db.execute(
        select(Application)
        .where(
            Application.elderly_id == elderly_id,
            Application.elderly_decision == "pending",
            Application.status == "pending_interest",
        )
        .order_by(Application.applied_at.desc())
    )
    return list(res.scalars().all())


async def list_applications_for_user(db: AsyncSession, user_id: int, status: str | None = None) -> list[Application]:
    q = select(Application).where(
        or_(Application.youth_id == user_id, Application.elderly_id == user_id)
    )
    if status:
        q = q.where(Application.status == status)
    res = await db.execute(q.order_by(Application.applied_at.desc()))
    return list(res.scalars().all())


async def list_pending_elderly_review(db: AsyncSession, elderly_id: int) -> list[Application]:
    res = await db.execute(
        select(Application)
        .where(
            Application.elderly_id == elderly_id,
            Application.status.in_(("pending_review", "approved")),
        )
        .order_by(Application.reviewed_at.desc())
    )
    return list(res.scalars().all())


async def list_applications(
    db: AsyncSession,
    status: str | None = None,
    oldest_first: bool = True,
    limit: int = 50,
    offset: int = 0,
) -> list[Application]:
    q = select(Application)
    if status:
        q = q.where(Application.status == status)
    order = Application.applied_at.asc() if oldest_first else Application.applied_at.desc()
    res = await db.execute(q.order_by(order).offset(offset).limit(limit))
    return list(res.scalars().all())


async def list_overdue_pre_matches(db: AsyncSession, now: datetime, max_days: int) -> list[Application]:
    cutoff = now - timedelta(days=max_days)
    res = await db.execute(
        select(Application)
        .where(
            Application.status == "pre_chat_active",
            Application.applied_at <= cutoff,
        )
        .order_by(Application.applied_at.asc())
    )
    return list(res.scalars().all())


def review_claim_free(admin_id: int, cutoff: datetime):
    """Rows `admin_id` may act on: unclaimed, claimed by them, or claimed before `cutoff`."""
    return or_(
        Application.locked_by.is_(None),
        Application.locked_by == admin_id,
        Application.locked_at < cutoff,
    )


async def set_review_claim(db: AsyncSession, application_id: str, where: tuple, values: dict) -> bool:
    try:
        result = await db.execute(
            update(Application)
            .where(Application.id == application_id, *where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise DependencyFailureError("Could not update the review claim. Please try again.", original_error=e) from e
    return result.rowcount > 0


async def count_by_status(db: AsyncSession) -> dict[str, int]:
    res = await db.execute(select(Application.status, func.count()).group_by(Application.status))
    return {status: count for status, count in res.all()}


async def count_claims_held_by_others(db: AsyncSession, admin_id: int, cutoff: datetime) -> int:
    return await db.scalar(
        select(func.count())
        .select_from(Application)
        .where(
            Application.locked_by.isnot(None),
            Application.locked_by != admin_id,
            Application.locked_at >= cutoff,
        )
    ) or 0


async def count_reviewed_since(db: AsyncSession, status: str, since: datetime) -> int:
    return await db.scalar(
        select(func.count())
        .select_from(Application)
        .where(Application.status == status, Application.reviewed_at >= since)
    ) or 0


async def list_applied_at(db: AsyncSession, status: str) -> list[datetime]:
    res = await db.execute(select(Application.applied_at).where(Application.status == status))
    return list(res.scalars().all())
