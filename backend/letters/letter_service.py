"""
Letter Service

Entry point for letter generation used by the HTTP routers and the dispatch
workers. Looks up the letter type, template and employee, resolves
placeholders, locates and cleans the signature, and renders the DOCX.

Features:
- Single letter generation (DOCX bytes + placeholder map)
- PDF preview (pure derivation from the rendered DOCX)
- Bulk generation into a ZIP archive, skipping employees that fail
- Template placeholder discovery
- Signature cleanup re-run for stored signatures
"""

import io
import logging
import re
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database.models import DocumentTemplateDB, EmployeeDB, LetterTypeDB, SignatureDB, utc_now
from letters.document_renderer import DocumentRenderer, RenderedDocument, extract_placeholders, render_preview_pdf
from letters.placeholder_resolver import EmployeeProfile, PlaceholderMap, PlaceholderResolver
from letters.row_store import RowStore, SqlRowStore, table_name_for
from letters.signature_cleanup import clean_signature
from letters.signature_locator import AssetStore, SignatureLocator
from utils.errors import LetterServiceError, NotFoundError

logger = logging.getLogger(__name__)


def _file_token(value: str) -> str:
    return re.sub(r"\s+", "_", (value or "").strip())


@dataclass
class GeneratedLetter:
    """A rendered letter and the data that went into it"""
    letter_type: LetterTypeDB
    employee: EmployeeProfile
    placeholders: PlaceholderMap
    document: RenderedDocument

    @property
    def recipient_email(self) -> str:
        return self.placeholders.lookup("Email") or self.employee.email

    @property
    def recipient_name(self) -> str:
        return self.placeholders.lookup("EmpName") or self.employee.name or self.employee.employee_id

    @property
    def docx_filename(self) -> str:
        return f"{self.employee.employee_id}_{_file_token(self.letter_type.display_name)}.docx"

    @property
    def preview_filename(self) -> str:
        return f"{self.employee.employee_id}_{_file_token(self.letter_type.display_name)}_Preview.pdf"

    @property
    def attachment_filename(self) -> str:
        return f"{_file_token(self.recipient_name)}_Document.pdf"


class LetterService:
    """
    Letter generation over one database session.

    Usage:
        service = LetterService(db)
        letter = await service.generate(tab_id, "E100", template_id, signature_token="hr-head")
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        row_store: Optional[RowStore] = None,
        renderer: Optional[DocumentRenderer] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        uploads_dir = Path(self.settings.UPLOADS_DIR)
        self.asset_store = AssetStore(db, uploads_dir)
        self.row_store = row_store or SqlRowStore(db)
        self.resolver = PlaceholderResolver(self.row_store, self.settings.ORGANIZATION_NAME)
        self.locator = SignatureLocator.default(self.asset_store, uploads_dir, self.settings.signature_dir)
        self.renderer = renderer or DocumentRenderer()

    # ==================== LOOKUPS ====================

    async def get_letter_type(self, tab_id: str) -> LetterTypeDB:
        letter_type = await self.db.get(LetterTypeDB, tab_id)
        if letter_type is None or not letter_type.is_active:
            raise NotFoundError(f"Tab {tab_id} not found", parameter="tabId")
        return letter_type

    async def get_template(self, template_id: str) -> DocumentTemplateDB:
        template = await self.db.get(DocumentTemplateDB, template_id)
        if template is None or not template.is_active:
            raise NotFoundError(f"Template {template_id} not found", parameter="templateId")
        return template

    async def load_template_bytes(self, template: DocumentTemplateDB) -> bytes:
        return await self.asset_store.download_bytes(template.file_reference_id)

    async def get_employee(self, employee_key: str) -> Optional[EmployeeProfile]:
        """Canonical employee by business key, then by row id."""
        result = await self.db.execute(
            select(EmployeeDB).where(EmployeeDB.employee_id == employee_key)
        )
        employee = result.scalar_one_or_none()
        if employee is None:
            employee = await self.db.get(EmployeeDB, employee_key)
        return EmployeeProfile.from_model(employee) if employee is not None else None

    async def load_signature(self, token: Optional[str]) -> Optional[bytes]:
        raw = await self.locator.locate(token)
        if raw is None:
            return None
        return clean_signature(raw)

    # ==================== GENERATION ====================

    async def generate(
        self,
        tab_id: str,
        employee_key: str,
        template_id: str,
        signature_token: Optional[str] = None,
        overrides: Optional[Dict[str, str]] = None,
        template_bytes: Optional[bytes] = None,
        letter_type: Optional[LetterTypeDB] = None,
    ) -> GeneratedLetter:
        """
        Render one letter.

        Raises:
            NotFoundError: tab, template, template file or employee row missing
        """
        letter_type = letter_type or await self.get_letter_type(tab_id)
        if template_bytes is None:
            template = await self.get_template(template_id)
            template_bytes = await self.load_template_bytes(template)

        employee = await self.get_employee(employee_key)
        placeholders = await self.resolver.resolve(employee_key, letter_type, employee=employee, overrides=overrides)
        if employee is None:
            employee = EmployeeProfile(
                employee_id=str(employee_key),
                name=placeholders.lookup("EmpName") or "",
                email=placeholders.lookup("Email") or "",
            )

        signature = await self.load_signature(signature_token)
        document = self.renderer.render(template_bytes, placeholders, signature)
        return GeneratedLetter(letter_type, employee, placeholders, document)

    async def generate_preview(
        self,
        tab_id: str,
        employee_key: str,
        template_id: str,
        signature_token: Optional[str] = None,
        overrides: Optional[Dict[str, str]] = None,
    ) -> Tuple[str, bytes]:
        letter = await self.generate(tab_id, employee_key, template_id, signature_token, overrides)
        pdf = render_preview_pdf(letter.document.content, title=letter.preview_filename)
        return letter.preview_filename, pdf

    async def generate_letters_zip(
        self,
        tab_id: str,
        template_id: str,
        employee_keys: Optional[List[str]] = None,
        signature_token: Optional[str] = None,
    ) -> Tuple[str, bytes, List[str]]:
        """
        Render letters for many employees into one ZIP.

        Employees whose letters fail are skipped and reported back; the
        batch only fails when nothing could be generated.

        Returns:
            (zip filename, zip bytes, skipped employee keys)
        """
        letter_type = await self.get_letter_type(tab_id)
        template = await self.get_template(template_id)
        template_bytes = await self.load_template_bytes(template)

        if not employee_keys:
            table_name = table_name_for(letter_type.display_name, letter_type.table_name)
            employee_keys = await self.row_store.list_keys(table_name)

        buffer = io.BytesIO()
        skipped: List[str] = []
        generated = 0
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for employee_key in employee_keys:
                try:
                    letter = await self.generate(
                        tab_id, employee_key, template_id, signature_token,
                        template_bytes=template_bytes, letter_type=letter_type,
                    )
                except LetterServiceError as e:
                    logger.warning(f"Skipping letter for {employee_key}: {e}")
                    skipped.append(employee_key)
                    continue
                archive.writestr(letter.docx_filename, letter.document.content)
                generated += 1

        if generated == 0:
            raise NotFoundError("No letters could be generated for the requested employees", parameter="employeeIds")

        logger.info(f"Generated {generated} letters for tab {tab_id} ({len(skipped)} skipped)")
        zip_name = f"{_file_token(letter_type.display_name)}_Letters.zip"
        return zip_name, buffer.getvalue(), skipped

    # ==================== TEMPLATES & SIGNATURES ====================

    async def template_placeholders(self, template_id: str) -> List[str]:
        """Scan a template and store the discovered tokens on it."""
        template = await self.get_template(template_id)
        tokens = extract_placeholders(await self.load_template_bytes(template))
        template.placeholders = tokens
        await self.db.commit()
        return tokens

    async def reprocess_signature(self, signature_id: str) -> SignatureDB:
        """
        Re-run cleanup on a stored signature and write the result as PNG
        next to the original. Safe to repeat.
        """
        signature = await self.db.get(SignatureDB, signature_id)
        if signature is None or signature.file_reference is None:
            raise NotFoundError(f"Signature {signature_id} not found", parameter="signatureId")

        source = await self.asset_store.get_asset_path(signature.file_reference_id)
        cleaned = clean_signature(source.read_bytes())
        target = source.with_suffix(".png")
        target.write_bytes(cleaned)

        reference = signature.file_reference
        if Path(reference.storage_path).is_absolute():
            reference.storage_path = str(target)
        else:
            reference.storage_path = str(Path(reference.storage_path).with_suffix(".png"))
        reference.mime_type = "image/png"
        reference.size_bytes = len(cleaned)
        signature.is_processed = True
        signature.processed_at = utc_now()
        await self.db.commit()

        logger.info(f"Signature {signature_id} reprocessed -> {target.name}")
        return signature
