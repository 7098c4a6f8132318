from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
import logging
from ..core.deps import get_services
from ..services.container import MobileServices
from ..services.file_transfer import AttachmentFile
from ..services.interaction_validator import ValidationResult
from ..services.offline_sync import ActionKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/interactions", tags=["interactions"])


class IssueResponse(BaseModel):
    field: str
    message: str
    code: str


class ValidationResponse(BaseModel):
    is_valid: bool
    errors: List[IssueResponse]
    warnings: List[IssueResponse]


class QueuedInteractionResponse(BaseModel):
    action_id: str
    kind: str
    pending_actions: int
    warnings: List[IssueResponse]


class QueueRequest(BaseModel):
    kind: ActionKind = ActionKind.CREATE
    interaction: Dict[str, Any]


class AttachmentCheckResponse(BaseModel):
    file_name: str
    content_type: str
    size: int
    size_label: str
    icon: str
    is_valid: bool
    errors: List[IssueResponse]
    warnings: List[IssueResponse]
    preview_data_uri: Optional[str] = None


class UploadResponse(BaseModel):
    success: bool
    upload_id: Optional[str]
    file_name: Optional[str]
    url: Optional[str]
    error: Optional[str]


def _validation_response(result: ValidationResult) -> ValidationResponse:
    return ValidationResponse(
        is_valid=result.is_valid,
        errors=[IssueResponse(**vars(i)) for i in result.errors],
        warnings=[IssueResponse(**vars(i)) for i in result.warnings],
    )


async def _read_attachment(file: UploadFile) -> AttachmentFile:
    data = await file.read()
    return AttachmentFile(
        name=file.filename or "",
        content_type=file.content_type or "application/octet-stream",
        data=data,
    )


@router.post("/validate", response_model=ValidationResponse)
async def validate_interaction(
    interaction: Dict[str, Any],
    services: MobileServices = Depends(get_services),
):
    """Run the full rule set against an interaction without queueing it."""
    return _validation_response(services.validator.validate_interaction(interaction))


@router.post("/sanitize")
async def sanitize_interaction(
    interaction: Dict[str, Any],
    services: MobileServices = Depends(get_services),
):
    return services.validator.sanitize_interaction(interaction)


@router.post("/", response_model=QueuedInteractionResponse, status_code=status.HTTP_202_ACCEPTED)
async def queue_interaction(
    body: QueueRequest,
    services: MobileServices = Depends(get_services),
):
    """
    Sanitize, validate and queue an interaction for sync.
    Deletes skip validation; they only need the record id.
    """
    engine = services.sync_engine
    payload = body.interaction
    warnings: List[IssueResponse] = []

    if body.kind == ActionKind.DELETE:
        if payload.get("id") is None:
            raise HTTPException(status_code=422, detail="Record id is required for delete")
    else:
        payload = services.validator.sanitize_interaction(payload)
        result = services.validator.validate_interaction(payload)
        if body.kind == ActionKind.UPDATE and payload.get("id") is None:
            raise HTTPException(status_code=422, detail="Record id is required for update")
        if not result.is_valid:
            raise HTTPException(
                status_code=422,
                detail=_validation_response(result).model_dump(),
            )
        warnings = _validation_response(result).warnings

    action_id = await engine.queue_interaction(body.kind, payload)
    logger.info("Queued %s interaction as %s", body.kind.value, action_id)
    return QueuedInteractionResponse(
        action_id=action_id,
        kind=body.kind.value,
        pending_actions=engine.get_pending_count(),
        warnings=warnings,
    )


@router.get("/offline")
async def list_offline_interactions(services: MobileServices = Depends(get_services)):
    """Interactions captured locally that have not reached the record store yet."""
    return services.sync_engine.get_offline_interactions()


@router.post("/attachments/validate", response_model=AttachmentCheckResponse)
async def validate_attachment(
    file: UploadFile = File(...),
    services: MobileServices = Depends(get_services),
):
    attachment = await _read_attachment(file)
    result = services.validator.validate_attachment(attachment)

    preview = None
    if result.is_valid and attachment.is_image:
        try:
            thumb = services.file_transfer.create_thumbnail(attachment)
            preview = thumb.preview_data_uri if thumb else None
        except ValueError as exc:
            logger.info("No preview for %s: %s", attachment.name, exc)

    checked = _validation_response(result)
    return AttachmentCheckResponse(
        file_name=attachment.name,
        content_type=attachment.content_type,
        size=attachment.size,
        size_label=services.file_transfer.format_file_size(attachment.size),
        icon=services.file_transfer.file_type_icon(attachment),
        is_valid=checked.is_valid,
        errors=checked.errors,
        warnings=checked.warnings,
        preview_data_uri=preview,
    )


@router.post("/attachments", response_model=UploadResponse)
async def upload_attachment(
    file: UploadFile = File(...),
    services: MobileServices = Depends(get_services),
):
    """Compress (images) and forward an attachment to the configured upload endpoint."""
    if not services.upload_endpoint:
        raise HTTPException(status_code=503, detail="Upload endpoint is not configured")
    attachment = await _read_attachment(file)
    result = await services.file_transfer.upload_file(attachment, services.upload_endpoint)
    return UploadResponse(**vars(result))


@router.delete("/attachments/{upload_id}")
async def cancel_attachment_upload(
    upload_id: str,
    services: MobileServices = Depends(get_services),
):
    if not services.file_transfer.cancel_upload(upload_id):
        raise HTTPException(status_code=404, detail="Upload not found")
    return {"cancelled": upload_id}
