"""
Email Schema - API request/response models

Request bodies use the camelCase names the letter UI sends; Python code
reads the snake_case attributes.
"""

import base64
import binascii
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from email_integration.email_client import is_valid_email


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ==================== DISPATCH ====================

class AttachmentPayload(CamelModel):
    file_name: str = Field(..., alias="fileName", min_length=1, max_length=255)
    mime_type: str = Field("application/octet-stream", alias="mimeType")
    content: str = Field(..., description="Base64 encoded file content")

    @field_validator("content")
    @classmethod
    def validate_base64(cls, v):
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("Attachment content must be base64 encoded")
        return v

    def to_job_dict(self) -> Dict[str, Any]:
        return {"fileName": self.file_name, "mimeType": self.mime_type, "content": self.content}


class SendEmailRequest(CamelModel):
    """Request model for emailing one employee's letter"""
    employee_id: str = Field(..., alias="employeeId", min_length=1)
    template_id: str = Field(..., alias="templateId", min_length=1)
    subject: str = Field(..., max_length=500)
    content: str = Field(..., description="Email body (HTML); may contain {Placeholder} tokens")
    signature_path: Optional[str] = Field(None, alias="signaturePath")
    cc: Optional[List[str]] = None
    extra_attachments: Optional[List[AttachmentPayload]] = Field(None, alias="extraAttachments")

    @field_validator("cc")
    @classmethod
    def validate_cc(cls, v):
        if not v:
            return v
        cleaned = [address.strip() for address in v if address and address.strip()]
        for address in cleaned:
            if not is_valid_email(address):
                raise ValueError(f"Invalid cc address: {address}")
        return cleaned


class DispatchResponse(CamelModel):
    job_id: str = Field(..., serialization_alias="jobId")
    status: str
    message: str = "Email queued for delivery"


class GeneratePreviewRequest(CamelModel):
    employee_id: str = Field(..., alias="employeeId", min_length=1)
    template_id: str = Field(..., alias="templateId", min_length=1)
    signature_path: Optional[str] = Field(None, alias="signaturePath")
    overrides: Optional[Dict[str, str]] = None


class GenerateLettersRequest(CamelModel):
    template_id: str = Field(..., alias="templateId", min_length=1)
    employee_ids: Optional[List[str]] = Field(None, alias="employeeIds")
    signature_path: Optional[str] = Field(None, alias="signaturePath")


# ==================== STATUS ====================

class WebhookEventPayload(BaseModel):
    """One provider delivery event"""
    event_type: str = Field(..., min_length=1)
    email_job_id: str = Field(..., min_length=1)
    timestamp: Optional[Union[int, float, str]] = None
    reason: Optional[str] = None


class WebhookResponse(BaseModel):
    received: int
    applied: int
    ignored: int


class PollResponse(BaseModel):
    checked: int
    updated: int
    errors: List[str] = []
    resubmitted: int = 0
