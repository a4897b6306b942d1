"""
Letters Router

Letter generation and email dispatch per tab (letter type).

Endpoints:
- POST /api/tabs/{tab_id}/send-email - Queue one employee's letter for email (202)
- POST /api/tabs/{tab_id}/generate-preview - Render one letter as PDF
- POST /api/tabs/{tab_id}/generate-letters - Render many letters into a ZIP of DOCX files
- GET /api/tabs/{tab_id}/email-history - Email jobs for the tab, newest first
- GET /api/tabs/{tab_id}/email-stats - Email job counts by status
- GET /api/templates/{template_id}/placeholders - Scan a template's tokens
- POST /api/signatures/{signature_id}/reprocess - Re-run signature cleanup
"""

import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database import get_db
from email_integration.dispatch import EmailDispatchEngine
from email_integration.email_schema import (
    DispatchResponse,
    GenerateLettersRequest,
    GeneratePreviewRequest,
    SendEmailRequest,
)
from email_integration.job_store import EmailHistoryLog, EmailJobRepository
from letters.document_renderer import PDF_MIME_TYPE
from letters.letter_service import LetterService
from routers.deps import get_current_user_id, get_dispatch_submit, get_history, get_hub
from services.notification_hub import NotificationHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Letters"])


def _attachment_headers(filename: str) -> dict:
    return {"Content-Disposition": f'attachment; filename="{filename}"'}


# ==================== DISPATCH ====================

@router.post(
    "/tabs/{tab_id}/send-email",
    response_model=DispatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
    response_model_by_alias=True,
)
async def send_email(
    tab_id: str,
    request: SendEmailRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    hub: NotificationHub = Depends(get_hub),
    submit: Callable[[str], bool] = Depends(get_dispatch_submit),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    """
    Queue a letter email. Returns as soon as the job exists; delivery
    progress arrives as EmailStatusUpdate notifications.
    """
    engine = EmailDispatchEngine(db, settings, hub, submit)
    job = await engine.dispatch(
        tab_id,
        employee_id=request.employee_id,
        template_id=request.template_id,
        subject=request.subject,
        content=request.content,
        sent_by=user_id,
        signature_path=request.signature_path,
        cc=request.cc,
        extra_attachments=[a.to_job_dict() for a in request.extra_attachments or []],
    )
    return DispatchResponse(job_id=job.id, status=job.status)


# ==================== GENERATION ====================

@router.post("/tabs/{tab_id}/generate-preview")
async def generate_preview(
    tab_id: str,
    request: GeneratePreviewRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    service = LetterService(db, settings)
    filename, pdf = await service.generate_preview(
        tab_id,
        request.employee_id,
        request.template_id,
        signature_token=request.signature_path,
        overrides=request.overrides,
    )
    return Response(content=pdf, media_type=PDF_MIME_TYPE, headers=_attachment_headers(filename))


@router.post("/tabs/{tab_id}/generate-letters")
async def generate_letters(
    tab_id: str,
    request: GenerateLettersRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    service = LetterService(db, settings)
    zip_name, content, skipped = await service.generate_letters_zip(
        tab_id,
        request.template_id,
        employee_keys=request.employee_ids,
        signature_token=request.signature_path,
    )
    headers = _attachment_headers(zip_name)
    if skipped:
        headers["X-Skipped-Employees"] = ",".join(skipped)
    return Response(content=content, media_type="application/zip", headers=headers)


# ==================== HISTORY ====================

@router.get("/tabs/{tab_id}/email-history")
async def email_history(
    tab_id: str,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    history: EmailHistoryLog = Depends(get_history),
):
    """Email jobs for a tab; served from the flat-file history when the database is unavailable."""
    try:
        jobs = await EmailJobRepository(db).list_for_tab(tab_id, limit)
        return {"source": "database", "jobs": [job.to_dict() for job in jobs]}
    except SQLAlchemyError as e:
        logger.error(f"Email history query failed for tab {tab_id}; using history files: {e}")
        return {"source": "history_files", "jobs": history.read_for_tab(tab_id, limit)}


@router.get("/tabs/{tab_id}/email-stats")
async def email_stats(tab_id: str, db: AsyncSession = Depends(get_db)):
    counts = await EmailJobRepository(db).status_counts(tab_id)
    return {"tabId": tab_id, "total": sum(counts.values()), "byStatus": counts}


# ==================== TEMPLATES & SIGNATURES ====================

@router.get("/templates/{template_id}/placeholders")
async def template_placeholders(
    template_id: str,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    tokens = await LetterService(db, settings).template_placeholders(template_id)
    return {"templateId": template_id, "placeholders": tokens}


@router.post("/signatures/{signature_id}/reprocess")
async def reprocess_signature(
    signature_id: str,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    signature = await LetterService(db, settings).reprocess_signature(signature_id)
    return {
        "signatureId": signature.id,
        "isProcessed": signature.is_processed,
        "processedAt": signature.processed_at.isoformat() if signature.processed_at else None,
    }
