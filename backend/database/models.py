"""
Letter Dispatch Core - Database Models

Tables:
- letter_types: Tenant-defined letter categories (tabs)
- letter_type_fields: Placeholder vocabulary per letter type
- employees: Canonical employee records
- file_references: Stored assets (templates, signatures)
- signatures: Signature images and their processing state
- document_templates: DOCX templates with discovered placeholders
- email_jobs: One outbound letter email and its delivery lifecycle

The per-tab employee tables are not modelled here; their columns are chosen by
end users at import time and are read through letters.row_store.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict

from sqlalchemy import (
    Column, String, Text, Boolean, Integer, Date, DateTime, ForeignKey, Index, JSON
)
from sqlalchemy.orm import relationship

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== ENUMS ====================

class DataSource(str, PyEnum):
    """Where a letter type's employee rows come from"""
    EXCEL = "excel"
    DATABASE = "database"


class FieldType(str, PyEnum):
    TEXT = "Text"
    NUMBER = "Number"
    DATE = "Date"
    EMAIL = "Email"
    BOOLEAN = "Boolean"


class EmailJobStatus(str, PyEnum):
    """Email job delivery status"""
    PENDING = "pending"
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    DROPPED = "dropped"
    SPAM_REPORTED = "spam_reported"
    UNSUBSCRIBED = "unsubscribed"
    FAILED = "failed"


# ==================== DATABASE MODELS ====================

class LetterTypeDB(Base):
    """
    A letter category ("tab"). Owns ordered fields and one dynamic employee table.
    """
    __tablename__ = "letter_types"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    display_name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    data_source = Column(String(20), nullable=False, default=DataSource.EXCEL.value)
    # Explicit table name recorded at import time; derived from display_name when empty
    table_name = Column(String(128), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    owner_user_id = Column(String(36), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    fields = relationship(
        "LetterTypeFieldDB",
        back_populates="letter_type",
        cascade="all, delete-orphan",
        order_by="LetterTypeFieldDB.order_index",
        lazy="selectin",
    )


class LetterTypeFieldDB(Base):
    """A named, typed placeholder slot of a letter type."""
    __tablename__ = "letter_type_fields"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    letter_type_id = Column(String(36), ForeignKey("letter_types.id", ondelete="CASCADE"), nullable=False, index=True)
    field_key = Column(String(100), nullable=False)
    # Raw source column name as seen in the uploaded sheet
    field_name = Column(String(200), nullable=True)
    display_name = Column(String(200), nullable=True)
    data_type = Column(String(20), nullable=False, default=FieldType.TEXT.value)
    is_required = Column(Boolean, nullable=False, default=False)
    order_index = Column(Integer, nullable=False, default=0)
    default_value = Column(Text, nullable=True)

    letter_type = relationship("LetterTypeDB", back_populates="fields")


class EmployeeDB(Base):
    """Canonical employee attributes shared by every letter type."""
    __tablename__ = "employees"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    employee_id = Column(String(50), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    date_of_joining = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class FileReferenceDB(Base):
    """A stored asset on local disk (relative to UPLOADS_DIR unless absolute)."""
    __tablename__ = "file_references"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    storage_path = Column(Text, nullable=False)
    original_name = Column(String(255), nullable=True)
    mime_type = Column(String(100), nullable=True)
    size_bytes = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class SignatureDB(Base):
    __tablename__ = "signatures"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(200), nullable=False)
    file_reference_id = Column(String(36), ForeignKey("file_references.id"), nullable=True)
    is_processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    file_reference = relationship("FileReferenceDB", lazy="selectin")


class DocumentTemplateDB(Base):
    __tablename__ = "document_templates"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    letter_type_id = Column(String(36), ForeignKey("letter_types.id", ondelete="CASCADE"), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    file_reference_id = Column(String(36), ForeignKey("file_references.id"), nullable=False)
    # Tokens discovered in the template body, refreshed on upload
    placeholders = Column(JSON, nullable=True, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    file_reference = relationship("FileReferenceDB", lazy="selectin")


class EmailJobDB(Base):
    """
    One outbound letter email.

    Created by the dispatch engine in 'pending'; every later change goes
    through the delivery status tracker. Rows are never deleted.
    """
    __tablename__ = "email_jobs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    letter_type_id = Column(String(36), ForeignKey("letter_types.id"), nullable=False, index=True)
    employee_id = Column(String(50), nullable=True, index=True)
    template_id = Column(String(36), nullable=True)
    # Signature id, path or filename fragment; resolved when the letter is rendered
    signature_token = Column(String(255), nullable=True)

    recipient_email = Column(String(255), nullable=False)
    recipient_name = Column(String(200), nullable=True)
    subject = Column(Text, nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    cc = Column(JSON, nullable=True, default=list)
    # [{"fileName": ..., "mimeType": ..., "content": <base64>}]
    attachments = Column(JSON, nullable=True, default=list)

    status = Column(String(20), nullable=False, default=EmailJobStatus.PENDING.value, index=True)
    sent_by = Column(String(36), nullable=True, index=True)
    tracking_id = Column(String(36), nullable=True, default=generate_uuid)
    provider_message_id = Column(String(255), nullable=True, index=True)
    error_message = Column(Text, nullable=True)
    bounce_reason = Column(Text, nullable=True)
    drop_reason = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    clicked_at = Column(DateTime(timezone=True), nullable=True)
    bounced_at = Column(DateTime(timezone=True), nullable=True)
    dropped_at = Column(DateTime(timezone=True), nullable=True)
    spam_reported_at = Column(DateTime(timezone=True), nullable=True)
    unsubscribed_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_email_jobs_letter_type_created', 'letter_type_id', 'created_at'),
        Index('ix_email_jobs_status_sent', 'status', 'sent_at'),
    )

    def to_dict(self, include_attachments: bool = False) -> Dict[str, Any]:
        data = {}
        for column in self.__table__.columns:
            if column.name == "attachments" and not include_attachments:
                data["attachment_names"] = [a.get("fileName") for a in (self.attachments or [])]
                continue
            value = getattr(self, column.name)
            data[column.name] = value.isoformat() if isinstance(value, datetime) else value
        return data
