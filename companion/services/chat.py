import logging

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from companion.db.models import Message
from companion.db.session import side_session

log = logging.getLogger("companion-chat")

WELCOME_MESSAGE = "Hello! I've accepted your interest. Let's get to know each other!"


async def create_welcome_message(db: AsyncSession, application) -> Message | None:
    """
    System-authored greeting from the elderly to the youth opening the pre-match chat.
    Best-effort: a failure is logged and leaves the accepted interest as it is.
    """
    application_id = application.id
    msg = Message(
        sender_id=application.elderly_id,
        receiver_id=application.youth_id,
        application_id=application_id,
        message_type="text",
        content=WELCOME_MESSAGE,
        is_system=True,
    )
    async with side_session(db) as side:
        side.add(msg)
        try:
            await side.commit()
        except SQLAlchemyError as e:
            await side.rollback()
            log.warning("[CHAT] welcome message failed application_id=%s: %s", application_id, e)
            return None
    return msg


async def delete_messages_for_application(db: AsyncSession, application_id: str) -> int:
    """Deletes inside the caller's transaction; the caller commits or rolls back."""
    result = await db.execute(
        delete(Message).where(Message.application_id == application_id)
    )
    return result.rowcount or 0
