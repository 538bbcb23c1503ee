"""API for uploading and downloading payment evidence."""

import io

from fastapi import APIRouter, Depends, File, status, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.attachments.schemas import AttachmentResponse
from src.core.attachments.service import EvidenceStorage
from src.core.auth.dependencies import CurrentUser
from src.core.database.session import get_db
from src.shared.schemas.base import ApiResponse

router = APIRouter(prefix="/attachments", tags=["Attachments"])


@router.post("", response_model=ApiResponse[AttachmentResponse], status_code=status.HTTP_201_CREATED)
async def upload_attachment(
    current_user: CurrentUser,
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
):
    """Upload a receipt (image or PDF). Returns the reference to submit with a payment."""
    attachment = await EvidenceStorage(db).store(file, current_user.id)
    await db.commit()
    return ApiResponse(
        message="File uploaded",
        data=AttachmentResponse.model_validate(attachment),
    )


@router.get("/{attachment_id}", response_model=ApiResponse[AttachmentResponse])
async def get_attachment_info(
    attachment_id: int,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
):
    storage = EvidenceStorage(db)
    attachment = await storage.get_for_user(attachment_id, current_user.id, current_user.is_admin)
    return ApiResponse(data=AttachmentResponse.model_validate(attachment))


@router.get("/{attachment_id}/download")
async def download_attachment(
    attachment_id: int,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
):
    """Download the evidence file (owner or admin)."""
    storage = EvidenceStorage(db)
    attachment = await storage.get_for_user(attachment_id, current_user.id, current_user.is_admin)
    content = await storage.read(attachment)
    return StreamingResponse(
        io.BytesIO(content),
        media_type=attachment.content_type,
        headers={"Content-Disposition": f'attachment; filename="{attachment.file_name}"'},
    )
