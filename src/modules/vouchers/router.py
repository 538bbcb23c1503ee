"""API endpoints for Vouchers module."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import AdminUser, StudentUser
from src.core.database.session import get_db
from src.core.dependencies import get_notifier
from src.core.notifications import Notifier
from src.modules.vouchers.schemas import (
    ApplyRetroactiveRequest,
    VoucherCreate,
    VoucherDeleteResult,
    VoucherDetailResponse,
    VoucherFilters,
    VoucherResponse,
    VoucherUpdate,
    VoucherUsageResponse,
    VoucherValidateRequest,
    VoucherValidationResponse,
)
from src.modules.vouchers.service import VoucherService
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/vouchers", tags=["Vouchers"])


# --- Student endpoints ---


@router.post("/validate", response_model=ApiResponse[VoucherValidationResponse])
async def validate_voucher(
    data: VoucherValidateRequest,
    current_user: StudentUser,
    db: AsyncSession = Depends(get_db),
):
    """Check a code for a course. An unusable code is a normal answer with valid=false."""
    service = VoucherService(db)
    result = await service.validate(data.code, data.course_id, current_user.id)
    voucher = result.voucher if result.valid else None
    return ApiResponse(
        data=VoucherValidationResponse(
            valid=result.valid,
            code=result.reason.value if result.reason else None,
            message=result.message,
            voucher_code=voucher.code if voucher else None,
            discount_percentage=voucher.discount_percentage if voucher else None,
            original_price=result.original_price,
            discount_amount=result.discount_amount,
            final_price=result.final_price,
        )
    )


@router.get("/my-usage", response_model=ApiResponse[list[VoucherUsageResponse]])
async def list_my_usages(
    current_user: StudentUser,
    db: AsyncSession = Depends(get_db),
):
    """Vouchers the calling student has redeemed."""
    service = VoucherService(db)
    usages = await service.list_usages(student_id=current_user.id)
    return ApiResponse(data=[VoucherUsageResponse.model_validate(u) for u in usages])


# --- Admin endpoints ---


@router.post(
    "",
    response_model=ApiResponse[VoucherResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_voucher(
    data: VoucherCreate,
    current_user: AdminUser,
    db: AsyncSession = Depends(get_db),
):
    """Create a new voucher."""
    service = VoucherService(db)
    voucher = await service.create_voucher(data, current_user.id)
    return ApiResponse(
        data=VoucherResponse.model_validate(voucher),
        message="Voucher created successfully",
    )


@router.get("", response_model=ApiResponse[PaginatedResponse[VoucherResponse]])
async def list_vouchers(
    current_user: AdminUser,
    is_active: bool | None = Query(None),
    course_id: int | None = Query(None),
    search: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """List vouchers with optional filters."""
    service = VoucherService(db)
    filters = VoucherFilters(
        is_active=is_active, course_id=course_id, search=search, page=page, limit=limit
    )
    vouchers, total = await service.list_vouchers(filters)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[VoucherResponse.model_validate(v) for v in vouchers],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.get("/usages", response_model=ApiResponse[list[VoucherUsageResponse]])
async def list_usages(
    current_user: AdminUser,
    voucher_id: int | None = Query(None),
    student_id: int | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Redemption history lookup."""
    service = VoucherService(db)
    usages = await service.list_usages(voucher_id=voucher_id, student_id=student_id)
    return ApiResponse(data=[VoucherUsageResponse.model_validate(u) for u in usages])


@router.post("/apply-retroactive", response_model=ApiResponse[VoucherUsageResponse])
async def apply_retroactive(
    data: ApplyRetroactiveRequest,
    current_user: AdminUser,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Apply a voucher to an existing enrollment on the student's behalf."""
    service = VoucherService(db, notifier=notifier)
    usage = await service.apply_retroactive(data.enrollment_id, data.code, current_user.id)
    return ApiResponse(
        data=VoucherUsageResponse.model_validate(usage),
        message="Voucher applied successfully",
    )


@router.get("/{voucher_id}", response_model=ApiResponse[VoucherDetailResponse])
async def get_voucher(
    voucher_id: int,
    current_user: AdminUser,
    db: AsyncSession = Depends(get_db),
):
    """Get voucher with usage statistics."""
    service = VoucherService(db)
    voucher, usage_count, recent = await service.get_voucher_detail(voucher_id)
    base = VoucherResponse.model_validate(voucher)
    return ApiResponse(
        data=VoucherDetailResponse(
            **base.model_dump(),
            usage_count=usage_count,
            recent_usages=[VoucherUsageResponse.model_validate(u) for u in recent],
        )
    )


@router.patch("/{voucher_id}", response_model=ApiResponse[VoucherResponse])
async def update_voucher(
    voucher_id: int,
    data: VoucherUpdate,
    current_user: AdminUser,
    db: AsyncSession = Depends(get_db),
):
    """Update a voucher."""
    service = VoucherService(db)
    voucher = await service.update_voucher(voucher_id, data, current_user.id)
    return ApiResponse(
        data=VoucherResponse.model_validate(voucher),
        message="Voucher updated successfully",
    )


@router.delete("/{voucher_id}", response_model=ApiResponse[VoucherDeleteResult])
async def delete_voucher(
    voucher_id: int,
    current_user: AdminUser,
    db: AsyncSession = Depends(get_db),
):
    """Delete an unused voucher, or deactivate it when it has been used."""
    service = VoucherService(db)
    deleted, deactivated = await service.delete_voucher(voucher_id, current_user.id)
    return ApiResponse(
        data=VoucherDeleteResult(id=voucher_id, deleted=deleted, deactivated=deactivated),
        message="Voucher deleted" if deleted else "Voucher has usages and was deactivated",
    )
