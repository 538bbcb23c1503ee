"""Status changes shared by the enrollment and payment services.

Both the administrator's SetStatus and the payment rejection cascade move an
enrollment through the same table and keep the same side effects (approval
date, expiry flag, catalog membership), so they live here.
"""

from datetime import datetime, timedelta

from src.modules.courses.service import CatalogAccess
from src.modules.enrollments.models import ENROLLMENT_TRANSITIONS, Enrollment, EnrollmentStatus
from src.shared.utils.dates import utc_now


async def approve_enrollment(
    enrollment: Enrollment,
    access: CatalogAccess,
    term_days: int,
    now: datetime | None = None,
) -> bool:
    """
    Approve and grant catalog access. Returns False if already approved.

    Re-approval is a no-op and keeps the original approval date.
    """
    if enrollment.is_approved:
        return False
    ENROLLMENT_TRANSITIONS.ensure_transition(enrollment.status, EnrollmentStatus.APPROVED)
    now = now or utc_now()
    enrollment.status = EnrollmentStatus.APPROVED.value
    enrollment.approval_date = now
    enrollment.rejection_reason = None
    enrollment.is_expired = False
    if enrollment.expiration_date is None:
        enrollment.expiration_date = now + timedelta(days=term_days)
    await access.grant(enrollment.student_id, enrollment.course_id)
    return True


async def reject_enrollment(
    enrollment: Enrollment,
    reason: str,
    access: CatalogAccess,
) -> bool:
    """
    Reject and revoke access if it had been granted. Returns False if already rejected.

    A repeated rejection only refreshes the reason.
    """
    if enrollment.is_rejected:
        enrollment.rejection_reason = reason
        return False
    ENROLLMENT_TRANSITIONS.ensure_transition(enrollment.status, EnrollmentStatus.REJECTED)
    was_approved = enrollment.is_approved
    enrollment.status = EnrollmentStatus.REJECTED.value
    enrollment.rejection_reason = reason
    enrollment.approval_date = None
    enrollment.is_expired = False
    if was_approved:
        await access.revoke(enrollment.student_id, enrollment.course_id)
    return True
