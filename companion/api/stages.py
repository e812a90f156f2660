from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from companion.db.models import User
from companion.db.session import get_db
from companion.realtime.notifier import ChangeNotifier, get_notifier
from companion.schemas.stages import (
    ActivityCreate,
    AdvanceOut,
    CoolingPeriodOut,
    RelationshipOut,
    RequirementOut,
    StageProgressionOut,
    WithdrawalRequest,
)
from companion.stages import cooling, progression
from companion.stages.repo import require_relationship_for_user
from companion.utils.deps import get_current_user

router = APIRouter(prefix="/stages", tags=["stages"])


@router.get("/progression", response_model=StageProgressionOut)
async def stage_progression(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return StageProgressionOut.model_validate(await progression.get_stage_progression(db, user.id))


@router.post("/advance", response_model=AdvanceOut)
async def advance_stage(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    result = await progression.advance_stage_if_eligible(db, user.id, notifier=notifier)
    return AdvanceOut(
        advanced=result.advanced,
        from_stage=result.from_stage,
        to_stage=result.to_stage,
        reason=result.reason,
        relationship=RelationshipOut.model_validate(result.relationship),
    )


@router.post("/activities", response_model=RelationshipOut)
async def record_activity(
    data: ActivityCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    rel = await require_relationship_for_user(db, user.id)
    return await progression.record_activity(db, rel.id, user.id, data.metric, data.amount, notifier=notifier)


@router.post("/requirements/{requirement_id}/sign-off", response_model=RequirementOut)
async def sign_off_requirement(
    requirement_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return await progression.sign_off_requirement(db, requirement_id, user.id, notifier=notifier)


@router.post("/withdrawal", response_model=RelationshipOut)
async def request_withdrawal(
    data: WithdrawalRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    rel = await require_relationship_for_user(db, user.id)
    return await cooling.request_withdrawal(db, rel.id, user.id, data.reason, notifier=notifier)


@router.delete("/withdrawal", response_model=RelationshipOut)
async def cancel_withdrawal(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    rel = await require_relationship_for_user(db, user.id)
    return await cooling.cancel_withdrawal(db, rel.id, user.id, notifier=notifier)


@router.get("/cooling", response_model=CoolingPeriodOut)
async def cooling_period_info(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return CoolingPeriodOut.model_validate(await cooling.get_cooling_period_info(db, user.id))
