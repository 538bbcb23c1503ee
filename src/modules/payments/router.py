"""API endpoints for Payments module."""

from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import AdminUser, CurrentUser, StudentUser
from src.core.database.session import get_db
from src.core.dependencies import get_notifier
from src.core.notifications import Notifier
from src.modules.payments.models import PaymentMethod, PaymentStatus
from src.modules.payments.schemas import (
    PaymentCreate,
    PaymentFilters,
    PaymentResponse,
    PaymentStatusUpdate,
    ReuploadRequest,
)
from src.modules.payments.service import PaymentService
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post(
    "",
    response_model=ApiResponse[PaymentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def record_payment(
    data: PaymentCreate,
    current_user: StudentUser,
    db: AsyncSession = Depends(get_db),
):
    """Record a payment for one of the student's own enrollments."""
    service = PaymentService(db)
    payment = await service.record_payment(
        enrollment_id=data.enrollment_id,
        amount=data.amount,
        payment_method=data.payment_method,
        requested_by_id=current_user.id,
        receipt_ref=data.receipt_ref,
        payment_date=data.payment_date,
        bank_name=data.bank_name,
        account_reference=data.account_reference,
        transaction_id=data.transaction_id,
        notes=data.notes,
    )
    return ApiResponse(
        data=PaymentResponse.model_validate(payment),
        message="Payment recorded",
    )


@router.get(
    "",
    response_model=ApiResponse[PaginatedResponse[PaymentResponse]],
)
async def list_payments(
    current_user: CurrentUser,
    student_id: int | None = Query(None),
    course_id: int | None = Query(None),
    status: PaymentStatus | None = Query(None),
    payment_method: PaymentMethod | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """List payments with optional filters. Students only see their own."""
    service = PaymentService(db)
    filters = PaymentFilters(
        student_id=student_id if current_user.is_admin else current_user.id,
        course_id=course_id,
        status=status,
        payment_method=payment_method,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )
    payments, total = await service.list_payments(filters)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[PaymentResponse.model_validate(p) for p in payments],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.get(
    "/{payment_id}",
    response_model=ApiResponse[PaymentResponse],
)
async def get_payment(
    payment_id: int,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
):
    """Get payment by ID (owner or admin)."""
    service = PaymentService(db)
    payment = await service.get_payment_for_user(payment_id, current_user.id, current_user.is_admin)
    return ApiResponse(data=PaymentResponse.model_validate(payment))


@router.patch(
    "/{payment_id}/status",
    response_model=ApiResponse[PaymentResponse],
)
async def update_payment_status(
    payment_id: int,
    data: PaymentStatusUpdate,
    current_user: AdminUser,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Verify or reject a payment. Rejection also rejects the enrollment."""
    service = PaymentService(db, notifier=notifier)
    payment = await service.transition_status(payment_id, data.status, current_user.id, data.reason)
    return ApiResponse(
        data=PaymentResponse.model_validate(payment),
        message=f"Payment {payment.status}",
    )


@router.post(
    "/{payment_id}/reupload",
    response_model=ApiResponse[PaymentResponse],
)
async def reupload_evidence(
    payment_id: int,
    data: ReuploadRequest,
    current_user: StudentUser,
    db: AsyncSession = Depends(get_db),
):
    """Submit a new receipt for a rejected payment."""
    service = PaymentService(db)
    payment = await service.reupload_evidence(payment_id, data.receipt_ref, current_user.id)
    return ApiResponse(
        data=PaymentResponse.model_validate(payment),
        message="Receipt reuploaded",
    )
