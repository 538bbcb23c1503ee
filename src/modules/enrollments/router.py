"""API endpoints for Enrollments module."""

from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import AdminUser, CurrentUser, StudentUser
from src.core.database.session import async_session, get_db
from src.core.dependencies import get_notifier
from src.core.notifications import Notifier
from src.modules.enrollments.expiration import expire_enrollments
from src.modules.enrollments.models import EnrollmentStatus
from src.modules.enrollments.schemas import (
    AccessCheckResponse,
    BulkEnrollRequest,
    BulkEnrollResult,
    EnrollmentFilters,
    EnrollmentRequest,
    EnrollmentResponse,
    EnrollmentStatusUpdate,
    ExpirationUpdate,
    SweepResponse,
)
from src.modules.enrollments.service import EnrollmentService
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/enrollments", tags=["Enrollments"])


def get_session_factory():
    """Session factory used by the expiration sweep (overridden in tests)."""
    return async_session


@router.post(
    "",
    response_model=ApiResponse[EnrollmentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def request_enrollment(
    data: EnrollmentRequest,
    current_user: StudentUser,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Request access to a course with payment evidence and an optional voucher."""
    service = EnrollmentService(db, notifier=notifier)
    enrollment = await service.request_enrollment(
        student_id=current_user.id,
        course_id=data.course_id,
        receipt_ref=data.receipt_ref,
        voucher_code=data.voucher_code,
        payment_method=data.payment_method,
        bank_name=data.bank_name,
        account_reference=data.account_reference,
        transaction_id=data.transaction_id,
    )
    return ApiResponse(
        data=EnrollmentResponse.model_validate(enrollment),
        message="Enrollment request submitted",
    )


@router.get("/my", response_model=ApiResponse[list[EnrollmentResponse]])
async def list_my_enrollments(
    current_user: StudentUser,
    db: AsyncSession = Depends(get_db),
):
    """Enrollments of the calling student."""
    service = EnrollmentService(db)
    enrollments = await service.list_my_enrollments(current_user.id)
    return ApiResponse(data=[EnrollmentResponse.model_validate(e) for e in enrollments])


@router.get("/access/{course_id}", response_model=ApiResponse[AccessCheckResponse])
async def check_access(
    course_id: int,
    current_user: CurrentUser,
    student_id: int | None = Query(None, description="Admin only: check another student"),
    db: AsyncSession = Depends(get_db),
):
    """Whether the student may open the course content right now."""
    target = student_id if (student_id and current_user.is_admin) else current_user.id
    service = EnrollmentService(db)
    has_access = await service.check_access(target, course_id)
    return ApiResponse(
        data=AccessCheckResponse(course_id=course_id, student_id=target, has_access=has_access)
    )


@router.get(
    "",
    response_model=ApiResponse[PaginatedResponse[EnrollmentResponse]],
)
async def list_enrollments(
    current_user: AdminUser,
    course_id: int | None = Query(None),
    student_id: int | None = Query(None),
    status: EnrollmentStatus | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """List enrollments with optional filters."""
    service = EnrollmentService(db)
    filters = EnrollmentFilters(
        course_id=course_id,
        student_id=student_id,
        status=status,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )
    enrollments, total = await service.list_enrollments(filters)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[EnrollmentResponse.model_validate(e) for e in enrollments],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.post("/bulk", response_model=ApiResponse[BulkEnrollResult], status_code=status.HTTP_201_CREATED)
async def bulk_enroll(
    data: BulkEnrollRequest,
    current_user: AdminUser,
    db: AsyncSession = Depends(get_db),
):
    """Enroll several students directly (approved, no payment)."""
    service = EnrollmentService(db)
    enrolled, skipped = await service.bulk_enroll(data.course_id, data.student_ids, current_user.id)
    return ApiResponse(
        data=BulkEnrollResult(enrolled=enrolled, skipped=skipped),
        message=f"{len(enrolled)} student(s) enrolled",
    )


@router.post("/expire", response_model=ApiResponse[SweepResponse])
async def run_expiration_sweep(
    current_user: AdminUser,
    session_factory=Depends(get_session_factory),
    notifier: Notifier = Depends(get_notifier),
):
    """Run the expiration sweep now."""
    result = await expire_enrollments(session_factory, notifier=notifier)
    return ApiResponse(
        data=SweepResponse(found=result.found, expired=result.expired, failed=result.failed),
        message=f"{result.expired} enrollment(s) expired",
    )


@router.get("/{enrollment_id}", response_model=ApiResponse[EnrollmentResponse])
async def get_enrollment(
    enrollment_id: int,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
):
    """Get enrollment by ID (owner or admin)."""
    service = EnrollmentService(db)
    enrollment = await service.get_enrollment_for_user(
        enrollment_id, current_user.id, current_user.is_admin
    )
    return ApiResponse(data=EnrollmentResponse.model_validate(enrollment))


@router.patch("/{enrollment_id}/status", response_model=ApiResponse[EnrollmentResponse])
async def set_enrollment_status(
    enrollment_id: int,
    data: EnrollmentStatusUpdate,
    current_user: AdminUser,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Approve or reject an enrollment."""
    service = EnrollmentService(db, notifier=notifier)
    enrollment = await service.set_status(
        enrollment_id, data.status, current_user.id, data.rejection_reason
    )
    return ApiResponse(
        data=EnrollmentResponse.model_validate(enrollment),
        message=f"Enrollment {enrollment.status}",
    )


@router.patch("/{enrollment_id}/expiration", response_model=ApiResponse[EnrollmentResponse])
async def set_enrollment_expiration(
    enrollment_id: int,
    data: ExpirationUpdate,
    current_user: AdminUser,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Set or extend the access term."""
    service = EnrollmentService(db, notifier=notifier)
    enrollment = await service.set_expiration(enrollment_id, data.expiration_date, current_user.id)
    return ApiResponse(data=EnrollmentResponse.model_validate(enrollment))
