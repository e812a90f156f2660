"""
Per-user stage session.

Owns what a client screen needs while it is open: the last stage it saw, the
completion and milestone detectors, cooling-off state and a change
subscription. Nothing here is global; open one per user and close it (or use
`async with`) when done.

Events are treated as hints only. Every event triggers a fresh read and the
signals are derived from that read, never from the payload.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from companion.exceptions import NotFoundError
from companion.realtime.events import (
    ApplicationChange,
    NotificationChange,
    RelationshipChange,
    RequirementChange,
)
from companion.realtime.notifier import ChangeNotifier, Subscription, user_channel
from companion.stages import catalogue
from companion.stages.cooling import CoolingCountdown, CoolingPeriodInfo, cooling_info_for
from companion.stages.progression import (
    advance_relationship_if_eligible,
    compute_days_together,
    get_stage_progression,
    requirements_met,
)
from companion.stages.repo import find_relationship_for_user, list_requirements

log = logging.getLogger("companion-relationship")

MILESTONES = (7, 14, 30, 60, 90, 180, 365)

# a threshold passed longer ago than this is marked shown without firing
MILESTONE_CATCH_UP_DAYS = 7

_MILESTONE_MESSAGES = {
    7: "One week together! You're off to a wonderful start.",
    14: "Two weeks together! Your bond is growing.",
    30: "One month together! What a journey so far.",
    60: "Two months together! Your connection keeps getting stronger.",
    90: "Three months together! You've built something special.",
    180: "Half a year together! Look how far you've come.",
    365: "One whole year together! Happy anniversary!",
}


def milestone_message(days: int) -> str:
    return _MILESTONE_MESSAGES.get(days, f"{days} days together!")


class MilestoneTracker:
    """Fires each day-count threshold at most once for the tracker's lifetime."""

    def __init__(self, thresholds=MILESTONES, shown=None, catch_up_days=MILESTONE_CATCH_UP_DAYS):
        self.thresholds = tuple(sorted(thresholds))
        self.shown: set[int] = set(shown or ())
        self.catch_up_days = catch_up_days

    def check(self, days_together: int) -> int | None:
        reached = [t for t in self.thresholds if t <= days_together]
        if not reached or reached[-1] in self.shown:
            return None
        # older thresholds missed while away are folded into the newest one
        self.shown.update(reached)
        if days_together - reached[-1] >= self.catch_up_days:
            return None
        return reached[-1]


class StageCompletionDetector:
    """
    Idempotency keys `(relationship_id, stage)` shared by both completion
    paths, so one data change seen twice raises one signal.
    """

    def __init__(self):
        self.seen: set[tuple[str, str]] = set()

    def _claim(self, relationship_id: str, stage: str) -> bool:
        key = (relationship_id, stage)
        if key in self.seen:
            return False
        self.seen.add(key)
        return True

    def stage_changed(self, relationship_id: str, previous: str | None, current: str) -> str | None:
        """Completed stage when `current` is ahead of `previous`, else None."""
        if previous is None or previous == current:
            return None
        if catalogue.stage_index(current) < catalogue.stage_index(previous):
            log.warning("[STAGE] stage moved backwards id=%s %s -> %s", relationship_id, previous, current)
            return None
        return previous if self._claim(relationship_id, previous) else None

    def journey_completed(self, relationship_id: str, stage: str, all_met: bool) -> bool:
        if not all_met or not catalogue.is_last_stage(stage):
            return False
        return self._claim(relationship_id, stage)


@dataclass
class StageSignal:
    kind: str  # stage_completed | journey_completed | milestone_reached | journey_paused
    relationship_id: str
    stage: str | None = None
    next_stage: str | None = None
    days: int | None = None
    message: str = ""
    data: dict = field(default_factory=dict)


class StageSession:

    def __init__(self, session_factory, user_id: int, notifier: ChangeNotifier | None = None, shown_milestones=()):
        self.session_factory = session_factory
        self.user_id = user_id
        self.notifier = notifier

        self.relationship_id: str | None = None
        self.previous_stage: str | None = None
        self.paused = False
        self.cooling: CoolingPeriodInfo = CoolingPeriodInfo(is_in_cooling_period=False)
        self.countdown: CoolingCountdown | None = None

        self.detector = StageCompletionDetector()
        self.milestones = MilestoneTracker(shown=shown_milestones)
        self.signals: asyncio.Queue = asyncio.Queue()
        self._subscription: Subscription | None = None
        self._refreshing = False
        self._stale = False

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self) -> list[StageSignal]:
        # relationship events are fanned out to both parties' user channels
        if self.notifier is not None:
            self._subscription = self.notifier.subscribe(user_channel(self.user_id), callback=self.handle_event)
        return await self.refresh(initial=True)

    async def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        await self._stop_countdown()

    async def handle_event(self, event) -> list[StageSignal]:
        if isinstance(event, (ApplicationChange, NotificationChange)):
            # a confirmed match may have created our relationship
            if self.relationship_id is not None:
                return []
        elif isinstance(event, (RelationshipChange, RequirementChange)):
            row = event.new
            rel_id = None
            if row is not None:
                rel_id = row.id if isinstance(event, RelationshipChange) else row.relationship_id
            if self.relationship_id and rel_id and rel_id != self.relationship_id:
                return []
        else:
            return []
        if self._refreshing:
            # our own advance echoing back; re-read once the current refresh ends
            self._stale = True
            return []
        return await self.refresh(advance=isinstance(event, RequirementChange))

    async def refresh(self, *, initial: bool = False, advance: bool = True, now: datetime | None = None) -> list[StageSignal]:
        """Re-derive everything from a fresh read and return the new signals."""
        self._refreshing = True
        try:
            signals = await self._refresh(initial, advance, now)
        finally:
            self._refreshing = False
        if self._stale:
            self._stale = False
            signals += await self.refresh(advance=False, now=now)
        return signals

    async def _refresh(self, initial: bool, advance: bool, now: datetime | None) -> list[StageSignal]:
        signals: list[StageSignal] = []
        async with self.session_factory() as db:
            rel = await find_relationship_for_user(db, self.user_id)
            if rel is None:
                self.relationship_id = None
                return signals

            observed = rel.current_stage
            if advance and rel.status == "active":
                rel = (await advance_relationship_if_eligible(db, rel.id, now=now, notifier=self.notifier)).relationship

            requirements = await list_requirements(db, rel.id, rel.current_stage)
            signals.extend(self._stage_signals(rel, requirements, observed if initial else self.previous_stage))
            signals.extend(await self._pause_signals(rel, now))

            days = compute_days_together(rel.created_at, now)
            hit = self.milestones.check(days)
            if hit is not None:
                signals.append(StageSignal("milestone_reached", rel.id, days=hit, message=milestone_message(hit)))

        for signal in signals:
            log.info("[STAGE] signal %s id=%s stage=%s", signal.kind, signal.relationship_id, signal.stage)
            self.signals.put_nowait(signal)
        return signals

    def _stage_signals(self, rel, requirements, previous: str | None) -> list[StageSignal]:
        """`previous` is the stage last seen; on open, the stage read before advancing."""
        out = []
        self.relationship_id = rel.id
        self.previous_stage = rel.current_stage

        completed = self.detector.stage_changed(rel.id, previous, rel.current_stage)
        if completed is not None:
            out.append(StageSignal(
                "stage_completed",
                rel.id,
                stage=completed,
                next_stage=rel.current_stage,
                message=f"You completed {catalogue.display_name(completed)}!",
            ))
            return out

        # journey completion only when no stage change is in flight
        if previous in (None, rel.current_stage) and self.detector.journey_completed(
            rel.id, rel.current_stage, requirements_met(requirements)
        ):
            out.append(StageSignal(
                "journey_completed",
                rel.id,
                stage=rel.current_stage,
                message="You have completed every stage of your journey together!",
            ))
        return out

    async def _pause_signals(self, rel, now) -> list[StageSignal]:
        self.cooling = cooling_info_for(rel, now)
        out = []
        was_paused = self.paused
        self.paused = rel.status == "paused"

        if self.paused and not was_paused and rel.end_request_status == "pending_cooldown":
            out.append(StageSignal(
                "journey_paused",
                rel.id,
                stage=rel.current_stage,
                message="Your journey is paused during the cooling-off period.",
                data={"remaining_seconds": self.cooling.remaining_seconds},
            ))

        if self.cooling.is_in_cooling_period:
            await self._start_countdown(self.cooling.remaining_seconds)
        else:
            await self._stop_countdown()
        return out

    async def _start_countdown(self, remaining: int) -> None:
        await self._stop_countdown()
        self.countdown = CoolingCountdown(remaining, on_finished=self._countdown_finished).start()

    async def _stop_countdown(self) -> None:
        if self.countdown is not None:
            countdown, self.countdown = self.countdown, None
            await countdown.stop()

    async def _countdown_finished(self) -> None:
        self.cooling = CoolingPeriodInfo(
            is_in_cooling_period=False,
            relationship_id=self.cooling.relationship_id,
            end_request_status=self.cooling.end_request_status,
            cooling_ends_at=self.cooling.cooling_ends_at,
            progress_frozen_at=self.cooling.progress_frozen_at,
            stage_display_name=self.cooling.stage_display_name,
        )

    async def stage_progression(self):
        async with self.session_factory() as db:
            try:
                return await get_stage_progression(db, self.user_id)
            except NotFoundError:
                return None
