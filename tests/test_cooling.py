"""
Tests for the end-of-relationship cooling-off protocol
"""

import asyncio
from datetime import timedelta

import pytest

from companion.db.models.base import as_utc
from companion.exceptions import InvalidStateError, NotAuthorizedError
from companion.stages import cooling
from companion.stages.cooling import CoolingCountdown
from companion.stages.progression import advance_relationship_if_eligible, record_activity


class TestRequestWithdrawal:

    async def test_pauses_and_freezes_progress(self, db, youth, elderly, make_relationship, now):
        rel = await make_relationship(youth, elderly)
        await record_activity(db, rel.id, youth.id, "message_count", 50)

        rel = await cooling.request_withdrawal(db, rel.id, youth.id, "Moving abroad", now=now)

        assert rel.status == "paused"
        assert rel.end_request_status == "pending_cooldown"
        assert rel.end_request_by == youth.id
        assert rel.end_request_reason == "Moving abroad"
        assert rel.progress_frozen_at == 33.0
        assert as_utc(rel.cooling_ends_at) == now + timedelta(hours=72)

    async def test_second_request_is_refused(self, db, youth, elderly, make_relationship, now):
        rel = await make_relationship(youth, elderly)
        await cooling.request_withdrawal(db, rel.id, youth.id, "", now=now)

        with pytest.raises(InvalidStateError) as exc:
            await cooling.request_withdrawal(db, rel.id, elderly.id, "", now=now)

        assert exc.value.current == "paused/pending_cooldown"

    async def test_outsider_cannot_request(self, db, youth, elderly, admin, make_relationship, now):
        rel = await make_relationship(youth, elderly)

        with pytest.raises(NotAuthorizedError):
            await cooling.request_withdrawal(db, rel.id, admin.id, "", now=now)

    async def test_remaining_time_comes_from_the_deadline(self, db, youth, elderly, make_relationship, now):
        rel = await make_relationship(youth, elderly)
        await cooling.request_withdrawal(db, rel.id, youth.id, "", now=now)

        info = await cooling.get_cooling_period_info(db, elderly.id, now + timedelta(hours=70))

        assert info.is_in_cooling_period is True
        assert info.remaining_seconds == 2 * 3600
        assert info.stage_display_name == "Getting Acquainted"

        later = await cooling.get_cooling_period_info(db, elderly.id, now + timedelta(hours=80))
        assert later.is_in_cooling_period is False
        assert later.remaining_seconds == 0

    async def test_no_relationship_means_no_cooling(self, db, youth):
        info = await cooling.get_cooling_period_info(db, youth.id)

        assert info.is_in_cooling_period is False
        assert info.relationship_id is None


class TestCancelWithdrawal:

    async def test_only_requester_can_cancel(self, db, youth, elderly, make_relationship, now):
        rel = await make_relationship(youth, elderly)
        await cooling.request_withdrawal(db, rel.id, youth.id, "", now=now)

        with pytest.raises(NotAuthorizedError):
            await cooling.cancel_withdrawal(db, rel.id, elderly.id)

        rel = await cooling.cancel_withdrawal(db, rel.id, youth.id)

        assert rel.status == "active"
        assert rel.end_request_status == "none"
        assert rel.cooling_ends_at is None
        assert rel.progress_frozen_at is None

    async def test_nothing_to_cancel(self, db, youth, elderly, make_relationship):
        rel = await make_relationship(youth, elderly)

        with pytest.raises(InvalidStateError):
            await cooling.cancel_withdrawal(db, rel.id, youth.id)


class TestResolveCooling:

    async def test_not_before_the_deadline(self, db, youth, elderly, make_relationship, now):
        rel = await make_relationship(youth, elderly)
        await cooling.request_withdrawal(db, rel.id, youth.id, "", now=now)

        assert await cooling.resolve_cooling_period(db, rel.id, now + timedelta(hours=71)) is False

    async def test_elapsed_cooldown_goes_to_review(self, db, youth, elderly, make_relationship, now):
        rel = await make_relationship(youth, elderly)
        await cooling.request_withdrawal(db, rel.id, youth.id, "", now=now)

        assert await cooling.resolve_cooling_period(db, rel.id, now + timedelta(hours=72)) is True
        assert await cooling.resolve_cooling_period(db, rel.id, now + timedelta(hours=73)) is False

        info = await cooling.get_cooling_period_info(db, youth.id, now + timedelta(hours=73))
        assert info.end_request_status == "under_review"

    async def test_sweep_counts_resolved(self, db, youth, elderly, make_user, make_relationship, now):
        first = await make_relationship(youth, elderly)
        other_youth, other_elderly = await make_user("youth"), await make_user("elderly")
        second = await make_relationship(other_youth, other_elderly)
        await cooling.request_withdrawal(db, first.id, youth.id, "", now=now)
        await cooling.request_withdrawal(db, second.id, other_elderly.id, "", now=now + timedelta(hours=10))

        assert await cooling.resolve_elapsed_cooling_periods(db, now + timedelta(hours=75)) == 1
        assert await cooling.resolve_elapsed_cooling_periods(db, now + timedelta(hours=90)) == 1
        assert await cooling.resolve_elapsed_cooling_periods(db, now + timedelta(hours=100)) == 0


class TestReviewEndRequest:

    async def _under_review(self, db, rel, requester, now):
        await cooling.request_withdrawal(db, rel.id, requester.id, "", now=now)
        await cooling.resolve_cooling_period(db, rel.id, now + timedelta(hours=72))

    async def test_approve_ends_relationship(self, db, youth, elderly, admin, make_relationship, now):
        rel = await make_relationship(youth, elderly)
        await self._under_review(db, rel, youth, now)

        rel = await cooling.review_end_request(db, rel.id, admin.id, True, "Both agreed")

        assert rel.status == "ended"
        assert rel.end_request_status == "approved"
        assert rel.ended_at is not None

        with pytest.raises(InvalidStateError):
            await record_activity(db, rel.id, youth.id, "message_count")

    async def test_reject_resumes_and_allows_new_request(self, db, youth, elderly, admin, make_relationship, now):
        rel = await make_relationship(youth, elderly)
        await self._under_review(db, rel, youth, now)

        rel = await cooling.review_end_request(db, rel.id, admin.id, False)

        assert rel.status == "active"
        assert rel.end_request_status == "rejected"

        rel = await cooling.request_withdrawal(db, rel.id, elderly.id, "", now=now + timedelta(days=5))
        assert rel.end_request_status == "pending_cooldown"

    async def test_review_needs_elapsed_cooldown(self, db, youth, elderly, admin, make_relationship, now):
        rel = await make_relationship(youth, elderly)
        await cooling.request_withdrawal(db, rel.id, youth.id, "", now=now)

        with pytest.raises(InvalidStateError):
            await cooling.review_end_request(db, rel.id, admin.id, True)


class TestPausedProgress:

    async def test_activity_counts_but_stage_holds(self, db, youth, elderly, make_relationship, complete_stage, now):
        rel = await make_relationship(youth, elderly)
        await cooling.request_withdrawal(db, rel.id, youth.id, "", now=now)
        await complete_stage(rel)

        rel = await record_activity(db, rel.id, elderly.id, "message_count", 3)
        result = await advance_relationship_if_eligible(db, rel.id)

        assert rel.stage_metrics["message_count"] == 3
        assert result.advanced is False
        assert result.relationship.current_stage == "getting_to_know"


class TestCoolingCountdown:

    async def test_ticks_down_and_finishes(self):
        ticks = []
        finished = asyncio.Event()

        async def on_tick(remaining):
            ticks.append(remaining)

        async def on_finished():
            finished.set()

        countdown = CoolingCountdown(3, on_tick, on_finished, interval=0.01).start()
        await asyncio.wait_for(finished.wait(), timeout=2)

        assert ticks == [2, 1, 0]
        assert countdown.is_in_cooling_period is False
        assert countdown.formatted() == "00:00:00"

    async def test_stop_cancels(self):
        countdown = CoolingCountdown(100, interval=10).start()
        assert countdown.running is True

        await countdown.stop()

        assert countdown.running is False
        assert countdown.remaining_seconds == 100

    def test_formatted(self):
        assert CoolingCountdown(3661).formatted() == "01:01:01"
        assert CoolingCountdown(-5).formatted() == "00:00:00"
