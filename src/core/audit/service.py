from enum import StrEnum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.models import AuditLog


class AuditAction(StrEnum):
    """Standard audit actions."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    DEACTIVATE = "DEACTIVATE"
    APPROVE = "APPROVE"
    REJECT = "REJECT"

    # Domain-specific actions
    REQUEST_ENROLLMENT = "REQUEST_ENROLLMENT"
    RESUBMIT_ENROLLMENT = "RESUBMIT_ENROLLMENT"
    BULK_ENROLL = "BULK_ENROLL"
    SET_EXPIRATION = "SET_EXPIRATION"
    EXPIRE_ENROLLMENT = "EXPIRE_ENROLLMENT"
    RECORD_PAYMENT = "RECORD_PAYMENT"
    PAYMENT_STATUS = "PAYMENT_STATUS"
    REUPLOAD_EVIDENCE = "REUPLOAD_EVIDENCE"
    CAPTURE_CARD_PAYMENT = "CAPTURE_CARD_PAYMENT"
    REDEEM_VOUCHER = "REDEEM_VOUCHER"
    APPLY_VOUCHER_RETROACTIVE = "APPLY_VOUCHER_RETROACTIVE"


class AuditService:
    """Service for creating audit logs."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        action: str | AuditAction,
        entity_type: str,
        entity_id: int,
        user_id: int | None = None,
        entity_identifier: str | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        comment: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditLog:
        """Create an audit log entry."""
        audit_log = AuditLog(
            user_id=user_id,
            action=str(action),
            entity_type=entity_type,
            entity_id=entity_id,
            entity_identifier=entity_identifier,
            old_values=old_values,
            new_values=new_values,
            comment=comment,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        self.db.add(audit_log)
        await self.db.flush()

        return audit_log

    async def list_for_entity(self, entity_type: str, entity_id: int) -> list[AuditLog]:
        """Audit trail for one entity, oldest first."""
        result = await self.db.execute(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.id)
        )
        return list(result.scalars().all())
