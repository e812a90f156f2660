"""
Tests for the interest lifecycle: interest, pre-match, formal application, decision
"""

from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from companion.db.models import Application, Message, Notification, Relationship
from companion.exceptions import (
    InvalidStateError,
    LimitExceededError,
    NotAuthorizedError,
    NotEligibleError,
    NotFoundError,
)
from companion.matching import lifecycle
from companion.matching.repo import transition
from companion.services.chat import WELCOME_MESSAGE, create_welcome_message


async def _notifications(db, user_id, type_):
    res = await db.execute(
        select(Notification).where(Notification.user_id == user_id, Notification.type == type_)
    )
    return list(res.scalars().all())


async def _count(db, model, *where):
    return await db.scalar(select(func.count()).select_from(model).where(*where))


_real_commit = AsyncSession.commit


@contextmanager
def commit_fails_for(model):
    """Any commit with a pending `model` row raises, on every session"""

    async def commit(self):
        if any(isinstance(obj, model) for obj in self.new):
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return await _real_commit(self)

    with patch.object(AsyncSession, "commit", commit):
        yield


class TestExpressInterest:

    async def test_creates_pending_interest(self, db, youth, elderly, notifier):
        async with notifier.subscribe(f"user:{elderly.id}") as sub:
            app = await lifecycle.express_interest(db, youth.id, elderly.id, notifier=notifier)
            event = await sub.get(timeout=1)

        assert app.status == "pending_interest"
        assert app.youth_decision == "accept"
        assert app.elderly_decision == "pending"
        assert event.table == "applications"
        assert event.operation == "INSERT"
        assert len(await _notifications(db, elderly.id, "new_interest")) == 1

    async def test_one_open_interest_per_pair(self, db, youth, elderly):
        await lifecycle.express_interest(db, youth.id, elderly.id)

        with pytest.raises(InvalidStateError):
            await lifecycle.express_interest(db, youth.id, elderly.id)

        assert await _count(db, Application, Application.youth_id == youth.id) == 1

    async def test_unconfirmed_match_blocks_a_new_interest(self, db, youth, elderly, make_application):
        await make_application(youth, elderly, status="both_accepted")

        with pytest.raises(InvalidStateError) as exc:
            await lifecycle.express_interest(db, youth.id, elderly.id)

        assert exc.value.current == "both_accepted"
        assert await _count(db, Application, Application.youth_id == youth.id) == 1

    async def test_pair_can_try_again_after_rejection(self, db, youth, elderly, make_application):
        await make_application(youth, elderly, status="rejected")

        app = await lifecycle.express_interest(db, youth.id, elderly.id)

        assert app.status == "pending_interest"

    async def test_youth_at_ceiling_is_refused(self, db, youth, elderly, make_user, make_application):
        for _ in range(3):
            await make_application(youth, await make_user("elderly"))

        with pytest.raises(LimitExceededError) as exc:
            await lifecycle.express_interest(db, youth.id, elderly.id)

        assert exc.value.code == "youth_limit_reached"
        assert exc.value.message == (
            "You have reached the maximum number of active chats (3). "
            "End an existing chat to connect with someone new."
        )
        assert await _count(db, Application, Application.elderly_id == elderly.id) == 0

    async def test_only_youth_can_express_interest(self, db, elderly, make_user):
        other_elderly = await make_user("elderly")

        with pytest.raises(NotAuthorizedError):
            await lifecycle.express_interest(db, other_elderly.id, elderly.id)

    async def test_unknown_elderly(self, db, youth):
        with pytest.raises(NotFoundError):
            await lifecycle.express_interest(db, youth.id, 9999)


class TestRespondToInterest:

    async def test_accept_opens_pre_match_with_welcome(self, db, youth, elderly):
        app = await lifecycle.express_interest(db, youth.id, elderly.id)

        app = await lifecycle.respond_to_interest(db, app.id, elderly.id, accept=True)

        assert app.status == "pre_chat_active"
        assert app.elderly_decision == "accept"
        assert len(await _notifications(db, youth.id, "interest_accepted")) == 1
        welcome = (await db.execute(select(Message).where(Message.application_id == app.id))).scalar_one()
        assert welcome.content == WELCOME_MESSAGE
        assert welcome.is_system is True
        assert welcome.sender_id == elderly.id

    async def test_decline_rejects_without_message(self, db, youth, elderly):
        app = await lifecycle.express_interest(db, youth.id, elderly.id)

        app = await lifecycle.respond_to_interest(db, app.id, elderly.id, accept=False)

        assert app.status == "rejected"
        assert app.elderly_decision == "decline"
        assert len(await _notifications(db, youth.id, "interest_rejected")) == 1
        assert await _count(db, Message, Message.application_id == app.id) == 0

    async def test_second_answer_is_stale(self, db, youth, elderly):
        app = await lifecycle.express_interest(db, youth.id, elderly.id)
        await lifecycle.respond_to_interest(db, app.id, elderly.id, accept=False)

        with pytest.raises(InvalidStateError) as exc:
            await lifecycle.respond_to_interest(db, app.id, elderly.id, accept=True)

        assert exc.value.current == "rejected"

    async def test_other_elderly_cannot_answer(self, db, youth, elderly, make_user):
        app = await lifecycle.express_interest(db, youth.id, elderly.id)
        stranger = await make_user("elderly")

        with pytest.raises(NotAuthorizedError):
            await lifecycle.respond_to_interest(db, app.id, stranger.id, accept=True)

    async def test_accept_rechecks_elderly_ceiling(self, db, youth, elderly, make_user, make_application):
        app = await lifecycle.express_interest(db, youth.id, elderly.id)
        for _ in range(5):
            await make_application(await make_user("youth"), elderly)

        with pytest.raises(LimitExceededError) as exc:
            await lifecycle.respond_to_interest(db, app.id, elderly.id, accept=True)

        assert exc.value.code == "elderly_limit_reached"
        assert "You have reached your active chat limit (5)" in exc.value.message
        refreshed = await db.get(Application, app.id, populate_existing=True)
        assert refreshed.status == "pending_interest"
        assert refreshed.elderly_decision == "pending"

    async def test_accept_rechecks_youth_ceiling(self, db, youth, elderly, make_user, make_application):
        app = await lifecycle.express_interest(db, youth.id, elderly.id)
        # the youth filled their quota after sending this interest
        for _ in range(3):
            await make_application(youth, await make_user("elderly"))

        with pytest.raises(LimitExceededError) as exc:
            await lifecycle.respond_to_interest(db, app.id, elderly.id, accept=True)

        assert exc.value.code == "youth_limit_reached"
        assert "This youth student" in exc.value.message

    async def test_elderly_never_exceeds_five_active(self, db, elderly, make_user):
        accepted, refused = 0, 0
        for _ in range(7):
            youth = await make_user("youth")
            app = await lifecycle.express_interest(db, youth.id, elderly.id)
            try:
                await lifecycle.respond_to_interest(db, app.id, elderly.id, accept=True)
                accepted += 1
            except LimitExceededError:
                refused += 1

        active = await _count(
            db, Application, Application.elderly_id == elderly.id, Application.status == "pre_chat_active"
        )
        assert (accepted, refused, active) == (5, 2, 5)

    async def test_accept_stands_when_welcome_message_fails(self, db, youth, elderly):
        app = await lifecycle.express_interest(db, youth.id, elderly.id)

        with patch.object(lifecycle, "create_welcome_message", AsyncMock(return_value=None)) as welcome:
            app = await lifecycle.respond_to_interest(db, app.id, elderly.id, accept=True)

        welcome.assert_awaited_once()
        assert app.status == "pre_chat_active"

    @pytest.mark.parametrize("failing", [Notification, Message])
    async def test_accept_stands_when_side_effect_commit_fails(self, db, youth, elderly, failing):
        app = await lifecycle.express_interest(db, youth.id, elderly.id)

        with commit_fails_for(failing):
            app = await lifecycle.respond_to_interest(db, app.id, elderly.id, accept=True)

        assert app.status == "pre_chat_active"
        assert app.elderly.full_name == "Margaret"
        assert await _count(db, Application, Application.status == "pre_chat_active") == 1
        # new_interest notification and welcome message, minus whichever failed
        assert await _count(db, failing) == (1 if failing is Notification else 0)


class TestWelcomeMessage:

    async def test_store_failure_is_swallowed(self, db, youth, elderly, make_application):
        app = await make_application(youth, elderly)

        with commit_fails_for(Message):
            assert await create_welcome_message(db, app) is None

        assert app.status == "pre_chat_active"
        assert await _count(db, Message) == 0


class TestFormalApplication:

    async def test_too_early_is_not_eligible(self, db, youth, elderly, make_application, now):
        app = await make_application(youth, elderly, applied_at=now - timedelta(days=6))

        with pytest.raises(NotEligibleError) as exc:
            await lifecycle.submit_formal_application(db, app.id, youth.id, "letter", now=now)

        assert exc.value.days_remaining == 1
        assert exc.value.message == "Minimum pre-match period not met. 1 days remaining."
        refreshed = await db.get(Application, app.id, populate_existing=True)
        assert refreshed.status == "pre_chat_active"

    async def test_after_seven_days_goes_to_review(self, db, youth, elderly, make_application, now):
        app = await make_application(youth, elderly, applied_at=now - timedelta(days=7))

        app = await lifecycle.submit_formal_application(db, app.id, youth.id, "  I would love to help.  ", now=now)

        assert app.status == "pending_review"
        assert app.motivation_letter == "I would love to help."
        assert app.youth_decision == "accept"
        assert len(await _notifications(db, elderly.id, "application_submitted")) == 1

    async def test_wrong_status_is_invalid_state_before_timer(self, db, youth, elderly, make_application, now):
        app = await make_application(youth, elderly, status="pending_interest", applied_at=now)

        with pytest.raises(InvalidStateError):
            await lifecycle.submit_formal_application(db, app.id, youth.id, "letter", now=now)

    async def test_only_the_youth_submits(self, db, youth, elderly, make_application, now):
        app = await make_application(youth, elderly, applied_at=now - timedelta(days=8))

        with pytest.raises(NotAuthorizedError):
            await lifecycle.submit_formal_application(db, app.id, elderly.id, "letter", now=now)

    async def test_pre_match_status_for_party(self, db, youth, elderly, make_application, now):
        app = await make_application(youth, elderly, applied_at=now - timedelta(days=3))

        status = await lifecycle.get_pre_match_status(db, app.id, elderly.id, now)

        assert status.days_passed == 3
        assert status.days_until_apply == 4


class TestDecisions:

    async def test_elderly_approves_pending_review(self, db, youth, elderly, make_application):
        app = await make_application(youth, elderly, status="pending_review", elderly_decision="pending")

        app = await lifecycle.review_formal_application(db, app.id, elderly.id, "approve")

        assert app.status == "both_accepted"
        assert app.elderly_decision == "accept"
        assert len(await _notifications(db, youth.id, "application_approved")) == 1

    async def test_elderly_rejects_pending_review(self, db, youth, elderly, make_application):
        app = await make_application(youth, elderly, status="pending_review")

        app = await lifecycle.review_formal_application(db, app.id, elderly.id, "reject")

        assert app.status == "rejected"
        assert app.elderly_decision == "decline"

    async def test_review_requires_pending_review(self, db, youth, elderly, make_application):
        app = await make_application(youth, elderly)

        with pytest.raises(InvalidStateError):
            await lifecycle.review_formal_application(db, app.id, elderly.id, "approve")

    async def test_elderly_declines_approved_with_reason(self, db, youth, elderly, make_application):
        app = await make_application(youth, elderly, status="approved", elderly_decision="pending")

        app = await lifecycle.elderly_respond_to_approved(db, app.id, elderly.id, False, "Not the right time")

        assert app.status == "rejected"
        assert app.rejection_reason == "Elderly rejection reason: Not the right time"

    async def test_elderly_accepts_approved(self, db, youth, elderly, make_application):
        app = await make_application(youth, elderly, status="approved", elderly_decision="pending")

        app = await lifecycle.elderly_respond_to_approved(db, app.id, elderly.id, True)

        assert app.status == "both_accepted"

    async def test_end_pre_match_by_youth(self, db, youth, elderly, make_application):
        app = await make_application(youth, elderly)

        app = await lifecycle.end_pre_match(db, app.id, youth.id)

        assert app.status == "rejected"
        assert app.youth_decision == "decline"
        assert len(await _notifications(db, elderly.id, "pre_match_ended")) == 1

    async def test_stale_transition_reports_current_status(self, db, youth, elderly, make_application):
        app = await make_application(youth, elderly, status="rejected")

        with pytest.raises(InvalidStateError) as exc:
            await transition(db, app.id, ("pre_chat_active",), {"status": "pending_review"})

        assert exc.value.current == "rejected"
        assert exc.value.expected == ("pre_chat_active",)


class TestConfirmation:

    async def test_confirm_match_creates_one_relationship(self, db, youth, elderly, make_application):
        app = await make_application(youth, elderly, status="both_accepted")

        first = await lifecycle.confirm_match(db, app.id, youth.id)
        second = await lifecycle.confirm_match(db, app.id, youth.id)

        assert first.id == second.id
        assert first.current_stage == "getting_to_know"
        assert await _count(db, Relationship, Relationship.application_id == app.id) == 1

    async def test_confirm_match_requires_both_accepted(self, db, youth, elderly, make_application):
        app = await make_application(youth, elderly, status="approved")

        with pytest.raises(InvalidStateError):
            await lifecycle.confirm_match(db, app.id, youth.id)

    async def test_confirm_rejection_deletes_messages_then_record(self, db, youth, elderly):
        app = await lifecycle.express_interest(db, youth.id, elderly.id)
        await lifecycle.respond_to_interest(db, app.id, elderly.id, accept=True)
        await lifecycle.end_pre_match(db, app.id, elderly.id)

        await lifecycle.confirm_rejection(db, app.id, youth.id)

        assert await _count(db, Message, Message.application_id == app.id) == 0
        assert await _count(db, Application, Application.id == app.id) == 0

    async def test_confirm_rejection_requires_rejected(self, db, youth, elderly, make_application):
        app = await make_application(youth, elderly)

        with pytest.raises(InvalidStateError):
            await lifecycle.confirm_rejection(db, app.id, youth.id)

        assert await _count(db, Application, Application.id == app.id) == 1


class TestOverduePreMatches:

    async def test_overdue_pair_is_asked_to_decide_once(self, db, youth, elderly, make_user, make_application, now):
        app = await make_application(youth, elderly, applied_at=now - timedelta(days=15))
        await make_application(youth, await make_user("elderly"), applied_at=now - timedelta(days=3))

        assert await lifecycle.notify_overdue_pre_matches(db, now) == 1
        assert await lifecycle.notify_overdue_pre_matches(db, now) == 0

        assert len(await _notifications(db, youth.id, "decision_required")) == 1
        assert len(await _notifications(db, elderly.id, "decision_required")) == 1
        refreshed = await db.get(Application, app.id, populate_existing=True)
        assert refreshed.status == "pre_chat_active"
        assert refreshed.expiry_notified_at is not None

