"""Voucher redemption engine and voucher administration."""

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.exceptions import (
    ConflictError,
    DuplicateError,
    NotFoundError,
    ValidationError,
    VoucherUnavailableError,
)
from src.core.logging import get_logger
from src.core.notifications import LogNotifier, Notifier, send_notification
from src.modules.courses.models import Course
from src.modules.courses.service import CourseCatalog, SqlCourseCatalog
from src.modules.vouchers.models import (
    Voucher,
    VoucherReason,
    VoucherUsage,
    voucher_courses,
)
from src.modules.vouchers.schemas import VoucherCreate, VoucherFilters, VoucherUpdate
from src.shared.utils.dates import as_utc, utc_now
from src.shared.utils.money import round_money

logger = get_logger(__name__)

REASON_MESSAGES: dict[VoucherReason, str] = {
    VoucherReason.NOT_FOUND: "Voucher not found",
    VoucherReason.INACTIVE: "Voucher is no longer active",
    VoucherReason.NOT_YET_VALID: "Voucher is not valid yet",
    VoucherReason.EXPIRED: "Voucher has expired",
    VoucherReason.EXHAUSTED: "Voucher usage limit has been reached",
    VoucherReason.NOT_APPLICABLE: "Voucher does not apply to this course",
    VoucherReason.ALREADY_USED: "You have already used this voucher",
}


def canonical_code(code: str) -> str:
    return code.strip().upper()


def compute_discount(price: Decimal, percentage: Decimal) -> tuple[Decimal, Decimal]:
    """
    Discount and final price for a percentage voucher.

    The discount is rounded half-up to the minor unit and the final price is
    derived from it, so ``final + discount == price`` always holds.
    """
    price = round_money(price)
    discount = round_money(price * Decimal(str(percentage)) / Decimal("100"))
    return discount, round_money(price - discount)


@dataclass
class VoucherValidation:
    """Result of validating a code for a (course, student) pair."""

    valid: bool
    voucher: Voucher | None = None
    reason: VoucherReason | None = None
    original_price: Decimal | None = None
    discount_amount: Decimal | None = None
    final_price: Decimal | None = None

    @property
    def message(self) -> str | None:
        return REASON_MESSAGES[self.reason] if self.reason else None


class VoucherService:
    """Service for validating, redeeming and administering vouchers."""

    def __init__(
        self,
        db: AsyncSession,
        catalog: CourseCatalog | None = None,
        notifier: Notifier | None = None,
    ):
        self.db = db
        self.catalog = catalog or SqlCourseCatalog(db)
        self.notifier = notifier or LogNotifier()
        self.audit = AuditService(db)

    # --- Validation / redemption ---

    async def validate(
        self,
        code: str,
        course_id: int,
        student_id: int,
        price: Decimal | None = None,
    ) -> VoucherValidation:
        """
        Check a code for a course and student, short-circuiting on the first failure.

        Order: exists, active, within window, uses left, applies to course,
        not used by this student before. ``price`` defaults to the catalog price.
        """
        voucher = await self.get_voucher_by_code(code)
        if voucher is None:
            return VoucherValidation(valid=False, reason=VoucherReason.NOT_FOUND)

        reason = self._availability_reason(voucher)
        if reason is None and course_id not in voucher.applicable_course_ids:
            reason = VoucherReason.NOT_APPLICABLE
        if reason is None and await self._has_usage(voucher.id, student_id):
            reason = VoucherReason.ALREADY_USED
        if reason is not None:
            return VoucherValidation(valid=False, voucher=voucher, reason=reason)

        if price is None:
            price = (await self.catalog.get_course(course_id)).price
        discount, final = compute_discount(price, voucher.discount_percentage)
        return VoucherValidation(
            valid=True,
            voucher=voucher,
            original_price=round_money(price),
            discount_amount=discount,
            final_price=final,
        )

    async def redeem(
        self,
        code: str,
        student_id: int,
        course_id: int,
        enrollment_id: int,
        applied_by_id: int,
        price: Decimal | None = None,
        payment_id: int | None = None,
        commit: bool = True,
    ) -> VoucherUsage:
        """
        Consume one use of a voucher for a student.

        Re-validates first, then inserts the usage row and bumps ``used_count``
        with a conditional UPDATE inside one savepoint. A student who already
        holds a usage for this voucher always gets ConflictError.
        """
        result = await self.validate(code, course_id, student_id, price=price)
        if not result.valid:
            if result.voucher is not None and result.reason != VoucherReason.ALREADY_USED:
                if await self._has_usage(result.voucher.id, student_id):
                    result.reason = VoucherReason.ALREADY_USED
            raise self._redeem_error(result)

        usage = await self._consume(
            result,
            student_id=student_id,
            course_id=course_id,
            enrollment_id=enrollment_id,
            applied_by_id=applied_by_id,
            payment_id=payment_id,
        )

        await self.audit.log(
            action=AuditAction.REDEEM_VOUCHER,
            entity_type="Voucher",
            entity_id=result.voucher.id,
            entity_identifier=result.voucher.code,
            user_id=applied_by_id,
            new_values={
                "student_id": student_id,
                "course_id": course_id,
                "enrollment_id": enrollment_id,
                "original_price": str(usage.original_price),
                "discount_amount": str(usage.discount_amount),
                "final_price": str(usage.final_price),
            },
        )
        logger.info(
            "voucher_redeemed",
            voucher_id=result.voucher.id,
            student_id=student_id,
            course_id=course_id,
            enrollment_id=enrollment_id,
        )

        if commit:
            await self.db.commit()
        return usage

    async def _consume(
        self,
        result: VoucherValidation,
        student_id: int,
        course_id: int,
        enrollment_id: int,
        applied_by_id: int,
        payment_id: int | None,
    ) -> VoucherUsage:
        voucher = result.voucher
        now = utc_now()
        usage = VoucherUsage(
            voucher=voucher,
            student_id=student_id,
            course_id=course_id,
            enrollment_id=enrollment_id,
            payment_id=payment_id,
            original_price=result.original_price,
            discount_amount=result.discount_amount,
            final_price=result.final_price,
            applied_by_id=applied_by_id,
            used_at=now,
        )
        try:
            async with self.db.begin_nested():
                # Usage row first: a concurrent redemption by the same student
                # blocks on the unique index and then fails here.
                self.db.add(usage)
                await self.db.flush()

                stmt = (
                    update(Voucher)
                    .where(
                        Voucher.id == voucher.id,
                        Voucher.is_active.is_(True),
                        Voucher.used_count < Voucher.usage_limit,
                        Voucher.valid_from <= now,
                        Voucher.valid_until >= now,
                    )
                    .values(used_count=Voucher.used_count + 1)
                    .execution_options(synchronize_session=False)
                )
                updated = await self.db.execute(stmt)
                if updated.rowcount != 1:
                    await self.db.refresh(voucher)
                    reason = self._availability_reason(voucher, now) or VoucherReason.EXHAUSTED
                    raise VoucherUnavailableError(REASON_MESSAGES[reason], code=reason.value)
        except IntegrityError as exc:
            raise ConflictError(
                REASON_MESSAGES[VoucherReason.ALREADY_USED],
                code=VoucherReason.ALREADY_USED.value,
            ) from exc

        await self.db.refresh(voucher)
        return usage

    def _redeem_error(self, result: VoucherValidation) -> Exception:
        if result.reason == VoucherReason.NOT_FOUND:
            return NotFoundError("Voucher")
        if result.reason == VoucherReason.ALREADY_USED:
            return ConflictError(result.message, code=result.reason.value)
        return VoucherUnavailableError(result.message, code=result.reason.value)

    @staticmethod
    def _availability_reason(voucher: Voucher, now=None) -> VoucherReason | None:
        now = now or utc_now()
        if not voucher.is_active:
            return VoucherReason.INACTIVE
        if now < as_utc(voucher.valid_from):
            return VoucherReason.NOT_YET_VALID
        if now > as_utc(voucher.valid_until):
            return VoucherReason.EXPIRED
        if voucher.used_count >= voucher.usage_limit:
            return VoucherReason.EXHAUSTED
        return None

    async def _has_usage(self, voucher_id: int, student_id: int) -> bool:
        result = await self.db.execute(
            select(VoucherUsage.id).where(
                VoucherUsage.voucher_id == voucher_id,
                VoucherUsage.student_id == student_id,
            )
        )
        return result.scalar_one_or_none() is not None

    async def apply_retroactive(self, enrollment_id: int, code: str, applied_by_id: int) -> VoucherUsage:
        """Administrator applies a voucher to an existing enrollment."""
        result = await self.db.execute(select(Enrollment).where(Enrollment.id == enrollment_id))
        enrollment = result.scalar_one_or_none()
        if not enrollment:
            raise NotFoundError("Enrollment", enrollment_id)

        existing = await self.get_usage_for_enrollment(enrollment_id)
        if existing is not None:
            raise ConflictError(
                f"Enrollment already has voucher {existing.voucher_code} applied",
                code="voucher_already_applied",
            )

        payment_result = await self.db.execute(
            select(Payment.id).where(Payment.enrollment_id == enrollment_id)
        )
        payment_id = payment_result.scalar_one_or_none()

        usage = await self.redeem(
            code,
            student_id=enrollment.student_id,
            course_id=enrollment.course_id,
            enrollment_id=enrollment.id,
            applied_by_id=applied_by_id,
            payment_id=payment_id,
            commit=False,
        )
        enrollment.voucher_code = usage.voucher_code

        await self.audit.log(
            action=AuditAction.APPLY_VOUCHER_RETROACTIVE,
            entity_type="Enrollment",
            entity_id=enrollment.id,
            user_id=applied_by_id,
            new_values={
                "voucher_code": usage.voucher_code,
                "discount_amount": str(usage.discount_amount),
                "final_price": str(usage.final_price),
            },
        )
        await self.db.commit()

        await send_notification(
            self.notifier,
            enrollment.student_id,
            "Voucher applied",
            f"Voucher {usage.voucher_code} was applied to your enrollment: "
            f"discount {usage.discount_amount}, final price {usage.final_price}.",
        )
        return usage

    # --- Administration ---

    async def create_voucher(self, data: VoucherCreate, created_by_id: int) -> Voucher:
        """Create a new voucher."""
        if await self.get_voucher_by_code(data.code) is not None:
            raise DuplicateError("Voucher", "code", data.code)

        courses = await self._load_courses(data.course_ids)
        voucher = Voucher(
            code=data.code,
            description=data.description.strip() if data.description else None,
            discount_percentage=data.discount_percentage,
            usage_limit=data.usage_limit,
            used_count=0,
            valid_from=data.valid_from,
            valid_until=data.valid_until,
            is_active=True,
            created_by_id=created_by_id,
        )
        voucher.courses = courses
        self.db.add(voucher)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            await self.db.rollback()
            raise DuplicateError("Voucher", "code", data.code) from exc

        await self.audit.log(
            action=AuditAction.CREATE,
            entity_type="Voucher",
            entity_id=voucher.id,
            entity_identifier=voucher.code,
            user_id=created_by_id,
            new_values={
                "discount_percentage": str(data.discount_percentage),
                "course_ids": sorted(data.course_ids),
                "usage_limit": data.usage_limit,
            },
        )
        await self.db.commit()
        return await self.get_voucher_by_id(voucher.id)

    async def update_voucher(self, voucher_id: int, data: VoucherUpdate, updated_by_id: int) -> Voucher:
        """Update voucher fields; usage limit may not drop below uses already made."""
        voucher = await self.get_voucher_by_id(voucher_id)
        old_values: dict = {}
        new_values: dict = {}

        if data.code is not None and data.code != voucher.code:
            if await self.get_voucher_by_code(data.code) is not None:
                raise DuplicateError("Voucher", "code", data.code)
            old_values["code"] = voucher.code
            voucher.code = data.code
            new_values["code"] = data.code

        if data.description is not None:
            voucher.description = data.description.strip() or None

        if data.discount_percentage is not None:
            old_values["discount_percentage"] = str(voucher.discount_percentage)
            voucher.discount_percentage = data.discount_percentage
            new_values["discount_percentage"] = str(data.discount_percentage)

        if data.course_ids is not None:
            old_values["course_ids"] = voucher.applicable_course_ids
            voucher.courses = await self._load_courses(data.course_ids)
            new_values["course_ids"] = sorted(data.course_ids)

        if data.usage_limit is not None:
            if data.usage_limit < voucher.used_count:
                raise ValidationError(
                    f"Usage limit cannot be lower than current usage count ({voucher.used_count})",
                    field="usage_limit",
                )
            old_values["usage_limit"] = voucher.usage_limit
            voucher.usage_limit = data.usage_limit
            new_values["usage_limit"] = data.usage_limit

        valid_from = data.valid_from or voucher.valid_from
        valid_until = data.valid_until or voucher.valid_until
        if as_utc(valid_until) <= as_utc(valid_from):
            raise ValidationError("valid_until must be after valid_from", field="valid_until")
        if data.valid_from is not None:
            voucher.valid_from = data.valid_from
            new_values["valid_from"] = data.valid_from.isoformat()
        if data.valid_until is not None:
            voucher.valid_until = data.valid_until
            new_values["valid_until"] = data.valid_until.isoformat()

        if data.is_active is not None:
            old_values["is_active"] = voucher.is_active
            voucher.is_active = data.is_active
            new_values["is_active"] = data.is_active

        await self.audit.log(
            action=AuditAction.UPDATE,
            entity_type="Voucher",
            entity_id=voucher.id,
            entity_identifier=voucher.code,
            user_id=updated_by_id,
            old_values=old_values,
            new_values=new_values,
        )
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictError("Voucher was changed concurrently, reload and retry") from exc
        return await self.get_voucher_by_id(voucher_id)

    async def delete_voucher(self, voucher_id: int, deleted_by_id: int) -> tuple[bool, bool]:
        """
        Delete an unused voucher, or deactivate one that has usages.

        Returns (deleted, deactivated).
        """
        voucher = await self.get_voucher_by_id(voucher_id)
        usage_count = await self._usage_count(voucher_id)

        if usage_count == 0 and voucher.used_count == 0:
            await self.audit.log(
                action=AuditAction.DELETE,
                entity_type="Voucher",
                entity_id=voucher.id,
                entity_identifier=voucher.code,
                user_id=deleted_by_id,
            )
            await self.db.delete(voucher)
            await self.db.commit()
            logger.info("voucher_deleted", voucher_id=voucher_id)
            return True, False

        voucher.is_active = False
        await self.audit.log(
            action=AuditAction.DEACTIVATE,
            entity_type="Voucher",
            entity_id=voucher.id,
            entity_identifier=voucher.code,
            user_id=deleted_by_id,
            comment=f"{usage_count} usage(s) exist; deactivated instead of deleted",
        )
        await self.db.commit()
        logger.info("voucher_deactivated", voucher_id=voucher_id, usage_count=usage_count)
        return False, True

    async def get_voucher_by_id(self, voucher_id: int) -> Voucher:
        result = await self.db.execute(
            select(Voucher)
            .where(Voucher.id == voucher_id)
            .execution_options(populate_existing=True)
        )
        voucher = result.scalar_one_or_none()
        if not voucher:
            raise NotFoundError("Voucher", voucher_id)
        return voucher

    async def get_voucher_by_code(self, code: str) -> Voucher | None:
        result = await self.db.execute(
            select(Voucher)
            .where(Voucher.code == canonical_code(code))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_voucher_detail(self, voucher_id: int) -> tuple[Voucher, int, list[VoucherUsage]]:
        """Voucher with its usage count and the 10 most recent usages."""
        voucher = await self.get_voucher_by_id(voucher_id)
        usage_count = await self._usage_count(voucher_id)
        result = await self.db.execute(
            select(VoucherUsage)
            .where(VoucherUsage.voucher_id == voucher_id)
            .order_by(VoucherUsage.used_at.desc(), VoucherUsage.id.desc())
            .limit(10)
        )
        return voucher, usage_count, list(result.scalars().all())

    async def list_vouchers(self, filters: VoucherFilters) -> tuple[list[Voucher], int]:
        """List vouchers with filters."""
        query = select(Voucher)

        if filters.is_active is not None:
            query = query.where(Voucher.is_active == filters.is_active)
        if filters.course_id:
            query = query.where(
                Voucher.id.in_(
                    select(voucher_courses.c.voucher_id).where(
                        voucher_courses.c.course_id == filters.course_id
                    )
                )
            )
        if filters.search:
            term = f"%{filters.search.strip()}%"
            query = query.where(or_(Voucher.code.ilike(term), Voucher.description.ilike(term)))

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = query.order_by(Voucher.created_at.desc(), Voucher.id.desc())
        query = query.offset((filters.page - 1) * filters.limit).limit(filters.limit)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def list_usages(
        self,
        voucher_id: int | None = None,
        student_id: int | None = None,
    ) -> list[VoucherUsage]:
        """Usage history, newest first."""
        query = select(VoucherUsage)
        if voucher_id:
            query = query.where(VoucherUsage.voucher_id == voucher_id)
        if student_id:
            query = query.where(VoucherUsage.student_id == student_id)
        query = query.order_by(VoucherUsage.used_at.desc(), VoucherUsage.id.desc())
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_usage_for_enrollment(self, enrollment_id: int) -> VoucherUsage | None:
        result = await self.db.execute(
            select(VoucherUsage).where(VoucherUsage.enrollment_id == enrollment_id)
        )
        return result.scalars().first()

    async def _usage_count(self, voucher_id: int) -> int:
        result = await self.db.execute(
            select(func.count(VoucherUsage.id)).where(VoucherUsage.voucher_id == voucher_id)
        )
        return result.scalar() or 0

    async def _load_courses(self, course_ids: list[int]) -> list[Course]:
        wanted = set(course_ids)
        result = await self.db.execute(select(Course).where(Course.id.in_(wanted)))
        courses = list(result.scalars().all())
        missing = wanted - {c.id for c in courses}
        if missing:
            raise NotFoundError("Course", ", ".join(str(i) for i in sorted(missing)))
        return courses


# Import at the end to avoid circular imports
from src.modules.enrollments.models import Enrollment
from src.modules.payments.models import Payment
