"""Evidence storage: upload receipts, hand back an opaque reference."""

import uuid
from pathlib import Path

import aioboto3
from fastapi import UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.attachments.models import Attachment
from src.core.config import settings
from src.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from src.core.logging import get_logger

logger = get_logger(__name__)

RECEIPT_TYPES = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WebP",
    "application/pdf": "PDF",
}
MAX_RECEIPT_BYTES = 10 * 1024 * 1024


def _bucket_client():
    return aioboto3.Session().client(
        "s3",
        endpoint_url=settings.s3_endpoint_url,
        aws_access_key_id=settings.s3_access_key,
        aws_secret_access_key=settings.s3_secret_key,
        region_name=settings.s3_region,
    )


def _receipt_key(file_name: str) -> str:
    """``receipts/<random>_<sanitized name>``; the key is the evidence reference."""
    path = Path(file_name)
    stem = path.stem[:100] or "receipt"
    clean = f"{stem}{path.suffix[:20]}".replace("..", "").replace("/", "_").replace("\\", "_")
    return f"receipts/{uuid.uuid4().hex[:12]}_{clean}"


class EvidenceStorage:
    """Stores payment receipts locally (development) or in an S3/R2 bucket."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def store(self, file: UploadFile, uploaded_by_id: int) -> Attachment:
        """Validate and persist an uploaded receipt. Does not commit."""
        name = (file.filename or "").strip()
        if not name:
            raise ValidationError("File name is required", field="file")

        content_type = file.content_type or ""
        if content_type not in RECEIPT_TYPES:
            allowed = ", ".join(RECEIPT_TYPES.values())
            raise ValidationError(f"Receipt must be one of {allowed}; got {content_type!r}", field="file")

        content = await file.read()
        if not content:
            raise ValidationError("File is empty", field="file")
        if len(content) > MAX_RECEIPT_BYTES:
            raise ValidationError(
                f"File size must not exceed {MAX_RECEIPT_BYTES // (1024 * 1024)} MB", field="file"
            )

        key = _receipt_key(name)
        await self._write(key, content)

        attachment = Attachment(
            file_name=name[:255],
            content_type=content_type,
            storage_path=key,
            file_size=len(content),
            created_by_id=uploaded_by_id,
        )
        self.db.add(attachment)
        await self.db.flush()
        await self.db.refresh(attachment)
        logger.info(
            "evidence_stored",
            attachment_id=attachment.id,
            size=len(content),
            user_id=uploaded_by_id,
            backend="s3" if settings.use_s3 else "local",
        )
        return attachment

    async def get_for_user(self, attachment_id: int, user_id: int, is_admin: bool) -> Attachment:
        result = await self.db.execute(select(Attachment).where(Attachment.id == attachment_id))
        attachment = result.scalar_one_or_none()
        if attachment is None:
            raise NotFoundError("Attachment", attachment_id)
        if not is_admin and attachment.created_by_id != user_id:
            raise AuthorizationError("Not authorized to view this file")
        return attachment

    async def read(self, attachment: Attachment) -> bytes:
        if settings.use_s3:
            async with _bucket_client() as s3:
                response = await s3.get_object(Bucket=settings.s3_bucket, Key=attachment.storage_path)
                async with response["Body"] as stream:
                    return await stream.read()
        path = Path(settings.storage_path) / attachment.storage_path
        if not path.is_file():
            raise NotFoundError("Stored file", attachment.reference)
        return path.read_bytes()

    async def _write(self, key: str, content: bytes) -> None:
        if settings.use_s3:
            async with _bucket_client() as s3:
                await s3.put_object(Bucket=settings.s3_bucket, Key=key, Body=content)
            return
        path = Path(settings.storage_path) / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
