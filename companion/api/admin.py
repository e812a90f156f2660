from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from companion.db.models import User
from companion.db.session import get_db
from companion.matching import review
from companion.matching.repo import list_applications
from companion.realtime.notifier import ChangeNotifier, get_notifier
from companion.schemas.matching import (
    AdminApproveRequest,
    AdminInfoRequest,
    AdminRejectRequest,
    ApplicationListResponse,
    ApplicationOut,
    ApplicationStatsOut,
    ReviewDetailOut,
)
from companion.schemas.stages import EndRequestReview, RelationshipOut
from companion.stages.cooling import review_end_request
from companion.stages.repo import list_end_requests
from companion.utils.deps import get_current_admin

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/applications", response_model=ApplicationListResponse)
async def admin_list_applications(
    status: str | None = Query("pending_review"),
    oldest_first: bool = True,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    items = await list_applications(db, status, oldest_first, limit, offset)
    return ApplicationListResponse(count=len(items), items=[ApplicationOut.model_validate(a) for a in items])


@router.get("/applications/rejection-reasons")
async def rejection_reasons(admin: User = Depends(get_current_admin)):
    return {"reasons": list(review.REJECTION_REASONS)}


@router.get("/applications/stats", response_model=ApplicationStatsOut)
async def application_stats(
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    return ApplicationStatsOut.model_validate(await review.get_application_stats(db, admin.id))


@router.get("/applications/{application_id}", response_model=ReviewDetailOut)
async def application_detail(
    application_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    detail = await review.get_review_detail(db, application_id)
    return ReviewDetailOut(
        application=ApplicationOut.model_validate(detail["application"]),
        is_valid=detail["validation"].is_valid,
        issues=detail["validation"].issues,
        waiting_hours=detail["waiting_hours"],
        waiting_alert=detail["waiting_alert"],
    )


@router.post("/applications/{application_id}/lock", response_model=ApplicationOut)
async def lock_application(
    application_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    return await review.lock_application(db, application_id, admin.id)


@router.delete("/applications/{application_id}/lock", response_model=ApplicationOut)
async def release_application(
    application_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    return await review.release_application(db, application_id, admin.id)


@router.post("/applications/{application_id}/approve", response_model=ApplicationOut)
async def approve_application(
    data: AdminApproveRequest,
    application_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return await review.approve_application(db, application_id, admin.id, data.notes, notifier=notifier)


@router.post("/applications/{application_id}/reject", response_model=ApplicationOut)
async def reject_application(
    data: AdminRejectRequest,
    application_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return await review.reject_application(db, application_id, admin.id, data.reason, data.notes, notifier=notifier)


@router.post("/applications/{application_id}/request-info", response_model=ApplicationOut)
async def request_more_info(
    data: AdminInfoRequest,
    application_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return await review.request_more_info(db, application_id, admin.id, data.info, notifier=notifier)


@router.get("/relationships/end-requests", response_model=list[RelationshipOut])
async def pending_end_requests(
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    return await list_end_requests(db, "under_review")


@router.post("/relationships/{relationship_id}/end-request", response_model=RelationshipOut)
async def decide_end_request(
    data: EndRequestReview,
    relationship_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return await review_end_request(db, relationship_id, admin.id, data.approve, data.notes, notifier=notifier)
