import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from companion.db.models import Notification
from companion.db.session import side_session
from companion.realtime.events import notification_created
from companion.realtime.notifier import ChangeNotifier, publish_quietly, user_channel

log = logging.getLogger("companion-notifications")


async def create_notification(
    db: AsyncSession,
    *,
    user_id: int,
    type: str,
    title: str,
    message: str,
    reference_id: str | None = None,
    reference_table: str | None = "applications",
    notifier: ChangeNotifier | None = None,
) -> Notification | None:
    """
    Fire-and-forget notification. Failures are logged and swallowed so the
    state transition that triggered the notification stands. The write runs
    in its own session, so the caller's objects stay loaded either way.
    """
    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        reference_id=reference_id,
        reference_table=reference_table,
    )
    async with side_session(db) as side:
        side.add(notification)
        try:
            await side.commit()
        except SQLAlchemyError as e:
            await side.rollback()
            log.warning("[NOTIFY] failed user_id=%s type=%s ref=%s: %s", user_id, type, reference_id, e)
            return None

    await publish_quietly(notifier, notification_created(notification), [user_channel(user_id)])
    return notification
