"""
Tests for change events, the notifier and per-user stage sessions
"""

import json
from datetime import timedelta

import pytest

from companion.realtime.events import RelationshipChange, parse_change_event, relationship_changed
from companion.realtime.notifier import ChangeNotifier, relationship_channel, user_channel
from companion.stages.cooling import request_withdrawal
from companion.stages.progression import advance_relationship_if_eligible
from companion.stages.session import (
    MILESTONES,
    MilestoneTracker,
    StageCompletionDetector,
    StageSession,
    milestone_message,
)

RELATIONSHIP_PAYLOAD = {
    "table": "relationships",
    "operation": "UPDATE",
    "new": {
        "id": "rel-1",
        "youth_id": 1,
        "elderly_id": 2,
        "current_stage": "trial_period",
        "status": "active",
        "end_request_status": "none",
    },
}


class TestParseChangeEvent:

    def test_valid_payload(self):
        event = parse_change_event(RELATIONSHIP_PAYLOAD)

        assert isinstance(event, RelationshipChange)
        assert event.new.current_stage == "trial_period"

    def test_json_payload(self):
        event = parse_change_event(json.dumps(RELATIONSHIP_PAYLOAD))

        assert isinstance(event, RelationshipChange)

    @pytest.mark.parametrize(
        "payload",
        [
            {"table": "users", "operation": "UPDATE", "new": {}},
            {"table": "relationships", "operation": "UPSERT", "new": None},
            {"table": "relationships", "operation": "UPDATE", "new": {"id": "rel-1"}},
            "not json",
        ],
    )
    def test_malformed_payload_is_dropped(self, payload):
        assert parse_change_event(payload) is None


class TestChangeNotifier:

    async def test_one_delivery_across_channels(self):
        notifier = ChangeNotifier()
        sub = notifier.subscribe(user_channel(1), relationship_channel("rel-1"))
        event = parse_change_event(RELATIONSHIP_PAYLOAD)

        await notifier.publish(event, [relationship_channel("rel-1"), user_channel(1), user_channel(2)])

        assert await sub.get(timeout=1) is event
        assert sub.queue.empty()

    async def test_context_manager_unsubscribes(self):
        notifier = ChangeNotifier()

        async with notifier.subscribe(user_channel(1)):
            assert notifier.subscriber_count(user_channel(1)) == 1

        assert notifier.subscriber_count(user_channel(1)) == 0

    async def test_failing_subscriber_does_not_block_others(self):
        notifier = ChangeNotifier()

        async def broken(event):
            raise RuntimeError("boom")

        notifier.subscribe(user_channel(1), callback=broken)
        healthy = notifier.subscribe(user_channel(1))
        event = parse_change_event(RELATIONSHIP_PAYLOAD)

        await notifier.publish(event, [user_channel(1)])

        assert await healthy.get(timeout=1) is event


class TestMilestoneTracker:

    def test_each_threshold_fires_once(self):
        tracker = MilestoneTracker()

        assert tracker.check(3) is None
        assert tracker.check(7) == 7
        assert tracker.check(8) is None

    def test_missed_thresholds_fold_into_newest(self):
        tracker = MilestoneTracker()

        assert tracker.check(35) == 30
        assert tracker.check(40) is None
        assert 14 in tracker.shown

    def test_long_past_threshold_is_not_celebrated(self):
        tracker = MilestoneTracker()

        assert tracker.check(400) is None
        assert tracker.shown == set(MILESTONES)
        assert tracker.check(401) is None

    def test_catch_up_window(self):
        tracker = MilestoneTracker(catch_up_days=3)

        assert tracker.check(10) is None
        assert tracker.check(16) == 14

    def test_persisted_shown_set(self):
        tracker = MilestoneTracker(shown={7})

        assert tracker.check(8) is None

    def test_message(self):
        assert milestone_message(365) == "One whole year together! Happy anniversary!"
        assert milestone_message(500) == "500 days together!"


class TestStageCompletionDetector:

    def test_forward_move_completes_previous_stage_once(self):
        detector = StageCompletionDetector()

        assert detector.stage_changed("rel-1", None, "getting_to_know") is None
        assert detector.stage_changed("rel-1", "getting_to_know", "trial_period") == "getting_to_know"
        assert detector.stage_changed("rel-1", "getting_to_know", "trial_period") is None

    def test_backward_move_is_ignored(self):
        detector = StageCompletionDetector()

        assert detector.stage_changed("rel-1", "trial_period", "getting_to_know") is None

    def test_journey_completion(self):
        detector = StageCompletionDetector()

        assert detector.journey_completed("rel-1", "official_ceremony", True) is False
        assert detector.journey_completed("rel-1", "family_life", False) is False
        assert detector.journey_completed("rel-1", "family_life", True) is True
        assert detector.journey_completed("rel-1", "family_life", True) is False


class TestStageSession:

    async def test_no_relationship(self, session_factory, youth):
        session = StageSession(session_factory, youth.id)

        assert await session.open() == []
        assert session.relationship_id is None
        assert await session.stage_progression() is None
        await session.close()

    async def test_stage_completed_after_advance(self, db, session_factory, youth, elderly, make_relationship, complete_stage):
        rel = await make_relationship(youth, elderly)
        session = StageSession(session_factory, youth.id)
        assert await session.open() == []

        await complete_stage(rel)
        result = await advance_relationship_if_eligible(db, rel.id)
        event = relationship_changed(result.relationship)

        signals = await session.handle_event(event)

        assert [s.kind for s in signals] == ["stage_completed"]
        assert (signals[0].stage, signals[0].next_stage) == ("getting_to_know", "trial_period")
        assert session.signals.get_nowait() is signals[0]
        assert await session.handle_event(event) == []
        await session.close()

    async def test_stage_completed_when_open_advances(self, session_factory, notifier, youth, elderly, make_relationship, complete_stage):
        rel = await make_relationship(youth, elderly)
        await complete_stage(rel)
        session = StageSession(session_factory, youth.id, notifier)

        signals = await session.open()

        assert [(s.kind, s.stage, s.next_stage) for s in signals] == [
            ("stage_completed", "getting_to_know", "trial_period")
        ]
        assert session.previous_stage == "trial_period"
        assert await session.refresh() == []
        await session.close()

    async def test_old_relationship_opens_without_milestone(self, session_factory, youth, elderly, make_relationship, now):
        await make_relationship(youth, elderly, created_at=now - timedelta(days=400))
        session = StageSession(session_factory, youth.id)

        assert await session.refresh(initial=True, now=now) == []
        await session.close()

    async def test_other_relationship_events_are_ignored(self, session_factory, youth, elderly, make_relationship):
        await make_relationship(youth, elderly)
        session = StageSession(session_factory, youth.id)
        await session.open()

        assert await session.handle_event(parse_change_event(RELATIONSHIP_PAYLOAD)) == []
        await session.close()

    async def test_withdrawal_pauses_session(self, db, session_factory, notifier, youth, elderly, make_relationship):
        rel = await make_relationship(youth, elderly)

        async with StageSession(session_factory, youth.id, notifier) as session:
            await request_withdrawal(db, rel.id, elderly.id, "Need a break", notifier=notifier)

            paused = session.signals.get_nowait()
            assert paused.kind == "journey_paused"
            assert session.paused is True
            assert session.cooling.is_in_cooling_period is True
            assert session.countdown is not None and session.countdown.running

        assert session.countdown is None
        assert notifier.subscriber_count(user_channel(youth.id)) == 0

    async def test_milestone_signal(self, session_factory, youth, elderly, make_relationship, now):
        await make_relationship(youth, elderly, created_at=now - timedelta(days=8))
        session = StageSession(session_factory, youth.id)

        signals = await session.refresh(initial=True, now=now)
        again = await session.refresh(now=now + timedelta(days=1))

        assert [(s.kind, s.days) for s in signals] == [("milestone_reached", 7)]
        assert again == []
        await session.close()

    async def test_journey_completed_on_last_stage(self, session_factory, youth, elderly, make_relationship, complete_stage, now):
        rel = await make_relationship(youth, elderly, stage="family_life", created_at=now)
        await complete_stage(rel)
        session = StageSession(session_factory, youth.id)

        signals = await session.refresh(initial=True, now=now)

        assert [s.kind for s in signals] == ["journey_completed"]
        assert await session.refresh(now=now) == []
        await session.close()
