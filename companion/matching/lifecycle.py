"""
Interest lifecycle.

    (none) --express--> pending_interest --accept--> pre_chat_active
                               |                          |
                            decline                  formal submit (>= 7 days)
                               v                          v
                           rejected <---- end ----   pending_review --admin--> approved
                               |                                                  |
                          youth confirms                               elderly accept/decline
                               v                                                  v
                            deleted                                  both_accepted | rejected

Every transition is a conditional update on the expected status, so a stale
client loses with InvalidStateError instead of overwriting someone else's
decision. Notifications and the welcome message are best-effort and never
undo a committed transition.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from companion.core.config import settings
from companion.db.models import Application, User
from companion.exceptions import (
    InvalidRequestError,
    InvalidStateError,
    LimitExceededError,
    NotAuthorizedError,
    NotEligibleError,
    NotFoundError,
)
from companion.matching.limits import can_start_pre_match, check_pre_match_limit, raise_for_admission
from companion.matching.repo import (
    delete_application_cascade,
    insert_interest,
    list_overdue_pre_matches,
    require_application,
    transition,
)
from companion.matching.timer import PreMatchStatus, calc_pre_match_status
from companion.realtime.events import application_changed
from companion.realtime.notifier import ChangeNotifier, channels_for_application, publish_quietly
from companion.services.chat import create_welcome_message
from companion.services.notifications import create_notification

log = logging.getLogger("companion-interest")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _display_name(user: User | None, fallback: str) -> str:
    return (user.full_name if user and user.full_name else None) or fallback


async def _require_user(db: AsyncSession, user_id: int, role: str) -> User:
    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise NotFoundError(f"{role.capitalize()} user not found")
    if user.user_type != role:
        raise NotAuthorizedError(f"Only {role} users can do this.")
    return user


def _require_party(app: Application, user_id: int, role: str | None = None) -> str:
    """Return which side of the application `user_id` is on."""
    if app.youth_id == user_id and role in (None, "youth"):
        return "youth"
    if app.elderly_id == user_id and role in (None, "elderly"):
        return "elderly"
    raise NotAuthorizedError("You are not a party to this application.")


async def _publish(notifier, app: Application, operation: str = "UPDATE") -> None:
    await publish_quietly(notifier, application_changed(app, operation), channels_for_application(app))


async def express_interest(
    db: AsyncSession,
    youth_id: int,
    elderly_id: int,
    *,
    notifier: ChangeNotifier | None = None,
) -> Application:
    youth = await _require_user(db, youth_id, "youth")
    await _require_user(db, elderly_id, "elderly")

    if await check_pre_match_limit(db, youth_id, "youth"):
        raise LimitExceededError("youth", settings.YOUTH_PRE_MATCH_LIMIT)

    app = await insert_interest(db, youth_id, elderly_id)
    log.info("[INTEREST] created id=%s youth=%s elderly=%s", app.id, youth_id, elderly_id)

    await _publish(notifier, app, "INSERT")
    await create_notification(
        db,
        user_id=elderly_id,
        type="new_interest",
        title="Someone is interested in you",
        message=f"{_display_name(youth, 'A youth')} would like to get to know you.",
        reference_id=app.id,
        notifier=notifier,
    )
    return app


async def respond_to_interest(
    db: AsyncSession,
    interest_id: str,
    elderly_id: int,
    accept: bool,
    *,
    notifier: ChangeNotifier | None = None,
) -> Application:
    app = await require_application(db, interest_id)
    _require_party(app, elderly_id, "elderly")
    if app.status != "pending_interest":
        raise InvalidStateError(
            "This interest has already been answered.",
            current=app.status,
            expected=("pending_interest",),
        )

    if accept:
        # quotas may have filled up since the interest was sent
        raise_for_admission(await can_start_pre_match(db, app.youth_id, app.elderly_id))
        app = await transition(
            db,
            interest_id,
            ("pending_interest",),
            {"status": "pre_chat_active", "elderly_decision": "accept"},
        )
    else:
        app = await transition(
            db,
            interest_id,
            ("pending_interest",),
            {"status": "rejected", "elderly_decision": "decline"},
        )

    log.info("[INTEREST] answered id=%s accept=%s status=%s", app.id, accept, app.status)
    await _publish(notifier, app)

    elderly_name = _display_name(app.elderly, "An elderly member")
    if accept:
        await create_notification(
            db,
            user_id=app.youth_id,
            type="interest_accepted",
            title="Interest Accepted!",
            message=f"{elderly_name} has accepted your interest. Start chatting now!",
            reference_id=app.id,
            notifier=notifier,
        )
        welcome = await create_welcome_message(db, app)
        if welcome is None:
            log.warning("[INTEREST] accepted without welcome message id=%s", app.id)
    else:
        await create_notification(
            db,
            user_id=app.youth_id,
            type="interest_rejected",
            title="Interest Update",
            message=f"{elderly_name} has declined your interest. Keep browsing for other matches!",
            reference_id=app.id,
            notifier=notifier,
        )
    return app


async def end_pre_match(
    db: AsyncSession,
    application_id: str,
    user_id: int,
    *,
    notifier: ChangeNotifier | None = None,
) -> Application:
    """Either party walks away from an active pre-match."""
    app = await require_application(db, application_id)
    party = _require_party(app, user_id)

    app = await transition(
        db,
        application_id,
        ("pre_chat_active",),
        {"status": "rejected", f"{party}_decision": "decline"},
    )
    log.info("[INTEREST] pre-match ended id=%s by=%s", app.id, party)
    await _publish(notifier, app)

    other_id = app.elderly_id if party == "youth" else app.youth_id
    await create_notification(
        db,
        user_id=other_id,
        type="pre_match_ended",
        title="Chat Ended",
        message="Your pre-match chat has ended. Keep browsing for other matches!",
        reference_id=app.id,
        notifier=notifier,
    )
    return app


async def get_pre_match_status(
    db: AsyncSession,
    application_id: str,
    user_id: int,
    now: datetime | None = None,
) -> PreMatchStatus:
    app = await require_application(db, application_id)
    _require_party(app, user_id)
    return calc_pre_match_status(app.applied_at, now)


async def submit_formal_application(
    db: AsyncSession,
    application_id: str,
    youth_id: int,
    motivation_letter: str,
    *,
    now: datetime | None = None,
    notifier: ChangeNotifier | None = None,
) -> Application:
    app = await require_application(db, application_id)
    _require_party(app, youth_id, "youth")
    if app.status != "pre_chat_active":
        raise InvalidStateError(
            "This pre-match is not active.",
            current=app.status,
            expected=("pre_chat_active",),
        )

    status = calc_pre_match_status(app.applied_at, now)
    if not status.can_apply:
        raise NotEligibleError(
            f"Minimum pre-match period not met. {status.days_until_apply} days remaining.",
            days_remaining=status.days_until_apply,
        )

    app = await transition(
        db,
        application_id,
        ("pre_chat_active",),
        {
            "status": "pending_review",
            "motivation_letter": motivation_letter.strip(),
            "youth_decision": "accept",
        },
    )
    log.info("[INTEREST] formal application submitted id=%s days=%s", app.id, status.days_passed)
    await _publish(notifier, app)

    await create_notification(
        db,
        user_id=app.elderly_id,
        type="application_submitted",
        title="New Formal Application",
        message=f"{_display_name(app.youth, 'A youth')} has submitted a formal adoption application. Please review.",
        reference_id=app.id,
        notifier=notifier,
    )
    return app


async def resubmit_application(
    db: AsyncSession,
    application_id: str,
    youth_id: int,
    motivation_letter: str,
    *,
    notifier: ChangeNotifier | None = None,
) -> Application:
    """Answer an admin's request for more information."""
    app = await require_application(db, application_id)
    _require_party(app, youth_id, "youth")

    app = await transition(
        db,
        application_id,
        ("info_requested",),
        {"status": "pending_review", "motivation_letter": motivation_letter.strip()},
    )
    log.info("[INTEREST] resubmitted id=%s", app.id)
    await _publish(notifier, app)
    return app


async def review_formal_application(
    db: AsyncSession,
    application_id: str,
    elderly_id: int,
    decision: str,
    *,
    notifier: ChangeNotifier | None = None,
) -> Application:
    """Elderly decides directly on a pending formal application."""
    if decision not in ("approve", "reject"):
        raise InvalidRequestError(f"Unknown decision: {decision}")

    app = await require_application(db, application_id)
    _require_party(app, elderly_id, "elderly")
    if app.status != "pending_review":
        raise InvalidStateError(
            "This application is not pending review.",
            current=app.status,
            expected=("pending_review",),
        )

    approve = decision == "approve"
    app = await transition(
        db,
        application_id,
        ("pending_review",),
        {
            "status": "both_accepted" if approve else "rejected",
            "elderly_decision": "accept" if approve else "decline",
        },
    )
    log.info("[INTEREST] reviewed by elderly id=%s decision=%s", app.id, decision)
    await _publish(notifier, app)

    elderly_name = _display_name(app.elderly, "The elderly member")
    if approve:
        await create_notification(
            db,
            user_id=app.youth_id,
            type="application_approved",
            title="Application Approved!",
            message=f"{elderly_name} has approved your application. Confirm to begin your journey!",
            reference_id=app.id,
            notifier=notifier,
        )
    else:
        await create_notification(
            db,
            user_id=app.youth_id,
            type="application_rejected",
            title="Application Update",
            message=f"{elderly_name} has declined your application. Keep browsing for other matches!",
            reference_id=app.id,
            notifier=notifier,
        )
    return app


async def elderly_respond_to_approved(
    db: AsyncSession,
    application_id: str,
    elderly_id: int,
    accept: bool,
    reason: str | None = None,
    *,
    notifier: ChangeNotifier | None = None,
) -> Application:
    """Elderly's final word on an application an admin has already approved."""
    app = await require_application(db, application_id)
    _require_party(app, elderly_id, "elderly")

    values = {
        "status": "both_accepted" if accept else "rejected",
        "elderly_decision": "accept" if accept else "decline",
    }
    if not accept and reason:
        values["rejection_reason"] = f"Elderly rejection reason: {reason.strip()}"

    app = await transition(db, application_id, ("approved",), values)
    log.info("[INTEREST] elderly final decision id=%s accept=%s", app.id, accept)
    await _publish(notifier, app)

    await create_notification(
        db,
        user_id=app.youth_id,
        type="application_approved" if accept else "application_rejected",
        title="Application Approved!" if accept else "Application Update",
        message=(
            "Both sides said yes. Confirm to begin your journey together!"
            if accept
            else "The elderly member has decided not to continue. Keep browsing for other matches!"
        ),
        reference_id=app.id,
        notifier=notifier,
    )
    return app


async def confirm_match(
    db: AsyncSession,
    application_id: str,
    youth_id: int,
    *,
    notifier: ChangeNotifier | None = None,
):
    """Youth confirms a both-accepted application; the relationship starts."""
    from companion.stages.progression import create_relationship_from_application

    app = await require_application(db, application_id)
    _require_party(app, youth_id, "youth")
    if app.status != "both_accepted":
        raise InvalidStateError(
            "Only applications accepted by both sides can be confirmed.",
            current=app.status,
            expected=("both_accepted",),
        )
    return await create_relationship_from_application(db, app, notifier=notifier)


async def confirm_rejection(
    db: AsyncSession,
    application_id: str,
    youth_id: int,
    *,
    notifier: ChangeNotifier | None = None,
) -> None:
    """Youth acknowledges a rejection; the application and its chat are removed."""
    app = await require_application(db, application_id)
    _require_party(app, youth_id, "youth")
    if app.status != "rejected":
        raise InvalidStateError(
            "Only rejected applications can be dismissed.",
            current=app.status,
            expected=("rejected",),
        )
    await delete_application(db, application_id)
    await publish_quietly(
        notifier,
        application_changed(app, "DELETE"),
        channels_for_application(app),
    )


async def delete_application(db: AsyncSession, application_id: str) -> None:
    await require_application(db, application_id)
    await delete_application_cascade(db, application_id)


async def notify_overdue_pre_matches(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    notifier: ChangeNotifier | None = None,
) -> int:
    """
    Pre-matches past the maximum hold get one `decision_required` notification
    per party. The record is left `pre_chat_active`; the parties decide.
    """
    now = now or _now()
    overdue = await list_overdue_pre_matches(db, now, settings.PRE_MATCH_MAX_DAYS)

    notified = 0
    for app in overdue:
        if app.expiry_notified_at is not None:
            continue
        result = await db.execute(
            update(Application)
            .where(
                Application.id == app.id,
                Application.status == "pre_chat_active",
                Application.expiry_notified_at.is_(None),
            )
            .values(expiry_notified_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount == 0:
            continue

        for user_id in (app.youth_id, app.elderly_id):
            await create_notification(
                db,
                user_id=user_id,
                type="decision_required",
                title="Time to decide",
                message=(
                    f"Your pre-match chat has passed {settings.PRE_MATCH_MAX_DAYS} days. "
                    "Please submit a formal application or end the chat."
                ),
                reference_id=app.id,
                notifier=notifier,
            )
        notified += 1

    if notified:
        log.info("[INTEREST] decision required for %s overdue pre-matches", notified)
    return notified
