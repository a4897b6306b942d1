"""
Letters Module

Letter generation from per-tab employee data:
- Dynamic row access for user-defined employee tables
- Placeholder resolution with column aliases
- Signature lookup and cleanup
- DOCX rendering and PDF preview
"""

from .row_store import RowStore, SqlRowStore, table_name_for, validate_identifier
from .placeholder_resolver import (
    PlaceholderResolver,
    PlaceholderMap,
    EmployeeProfile,
    COMMON_ALIASES,
    fill_text,
    extract_tokens,
)
from .signature_locator import SignatureLocator, AssetStore
from .signature_cleanup import clean_signature
from .document_renderer import (
    DocumentRenderer,
    RenderedDocument,
    extract_placeholders,
    render_preview_pdf,
    DOCX_MIME_TYPE,
    PDF_MIME_TYPE,
)
from .letter_service import LetterService, GeneratedLetter

__all__ = [
    'RowStore',
    'SqlRowStore',
    'table_name_for',
    'validate_identifier',
    'PlaceholderResolver',
    'PlaceholderMap',
    'EmployeeProfile',
    'COMMON_ALIASES',
    'fill_text',
    'extract_tokens',
    'SignatureLocator',
    'AssetStore',
    'clean_signature',
    'DocumentRenderer',
    'RenderedDocument',
    'extract_placeholders',
    'render_preview_pdf',
    'DOCX_MIME_TYPE',
    'PDF_MIME_TYPE',
    'LetterService',
    'GeneratedLetter',
]
