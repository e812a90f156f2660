from fastapi import APIRouter, Depends, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from companion.db.models import User
from companion.db.session import get_db
from companion.matching import lifecycle
from companion.matching.limits import can_start_pre_match
from companion.matching.repo import (
    list_applications_for_user,
    list_incoming_interests,
    list_pending_elderly_review,
)
from companion.realtime.notifier import ChangeNotifier, get_notifier
from companion.schemas.matching import (
    AdmissionOut,
    ApplicationListResponse,
    ApplicationOut,
    ElderlyFinalDecision,
    ElderlyReviewRequest,
    FormalApplicationCreate,
    InterestCreate,
    InterestResponse,
    PreMatchStatusOut,
)
from companion.schemas.stages import RelationshipOut
from companion.utils.deps import get_current_user

router = APIRouter(prefix="/matching", tags=["matching"])


def _list(items) -> ApplicationListResponse:
    return ApplicationListResponse(count=len(items), items=[ApplicationOut.model_validate(a) for a in items])


@router.post("/interests", response_model=ApplicationOut, status_code=status.HTTP_201_CREATED)
async def express_interest(
    data: InterestCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return await lifecycle.express_interest(db, user.id, data.elderly_id, notifier=notifier)


@router.get("/interests/incoming", response_model=ApplicationListResponse)
async def incoming_interests(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _list(await list_incoming_interests(db, user.id))


@router.post("/interests/{interest_id}/respond", response_model=ApplicationOut)
async def respond_to_interest(
    data: InterestResponse,
    interest_id: str = Path(..., description="ID of the interest to answer"),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return await lifecycle.respond_to_interest(db, interest_id, user.id, data.accept, notifier=notifier)


@router.get("/admission/{elderly_id}", response_model=AdmissionOut)
async def check_admission(
    elderly_id: int,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    check = await can_start_pre_match(db, user.id, elderly_id)
    return AdmissionOut(allowed=check.allowed, reason=check.reason)


@router.get("/applications", response_model=ApplicationListResponse)
async def my_applications(
    status_filter: str | None = None,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _list(await list_applications_for_user(db, user.id, status_filter))


@router.get("/applications/pending-review", response_model=ApplicationListResponse)
async def pending_elderly_review(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _list(await list_pending_elderly_review(db, user.id))


@router.get("/applications/{application_id}/pre-match-status", response_model=PreMatchStatusOut)
async def pre_match_status(
    application_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return PreMatchStatusOut.model_validate(await lifecycle.get_pre_match_status(db, application_id, user.id))


@router.post("/applications/{application_id}/end", response_model=ApplicationOut)
async def end_pre_match(
    application_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return await lifecycle.end_pre_match(db, application_id, user.id, notifier=notifier)


@router.post("/applications/{application_id}/formal", response_model=ApplicationOut)
async def submit_formal_application(
    data: FormalApplicationCreate,
    application_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return await lifecycle.submit_formal_application(
        db, application_id, user.id, data.motivation_letter, notifier=notifier
    )


@router.post("/applications/{application_id}/resubmit", response_model=ApplicationOut)
async def resubmit_application(
    data: FormalApplicationCreate,
    application_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return await lifecycle.resubmit_application(
        db, application_id, user.id, data.motivation_letter, notifier=notifier
    )


@router.post("/applications/{application_id}/review", response_model=ApplicationOut)
async def review_formal_application(
    data: ElderlyReviewRequest,
    application_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return await lifecycle.review_formal_application(db, application_id, user.id, data.decision, notifier=notifier)


@router.post("/applications/{application_id}/decision", response_model=ApplicationOut)
async def elderly_final_decision(
    data: ElderlyFinalDecision,
    application_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return await lifecycle.elderly_respond_to_approved(
        db, application_id, user.id, data.accept, data.reason, notifier=notifier
    )


@router.post("/applications/{application_id}/confirm", response_model=RelationshipOut)
async def confirm_match(
    application_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return await lifecycle.confirm_match(db, application_id, user.id, notifier=notifier)


@router.delete("/applications/{application_id}")
async def confirm_rejection(
    application_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    await lifecycle.confirm_rejection(db, application_id, user.id, notifier=notifier)
    return {"ok": True, "deleted": application_id}
