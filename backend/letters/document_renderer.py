"""
Document Renderer

Fills DOCX letter templates and derives PDF previews.

Templates can carry placeholders two ways:
- Content controls (w:sdt) whose tag names a token; filled by tag lookup,
  exact first and then case-insensitive
- Inline {Token} text in paragraphs, tables, headers and footers

The signature goes into a picture content control tagged "Signature"
(replacing its image or inserting one), or failing that at a {Signature}
text anchor. A template with neither gets no signature.

Preview generation reads its own copy of the rendered bytes, so it can never
alter the document that was (or will be) emailed.
"""

import io
import zipfile
import logging
import re
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Set, Tuple
from xml.sax.saxutils import escape

from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from docx.oxml import OxmlElement
from docx.oxml.ns import qn
from docx.shared import Inches
from docx.table import Table as DocxTable
from docx.text.paragraph import Paragraph

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.platypus import Image as PdfImage, Paragraph as PdfParagraph, SimpleDocTemplate, Spacer, Table, TableStyle

from letters.placeholder_resolver import PlaceholderMap, extract_tokens, fill_text
from utils.errors import InternalError, ValidationError

logger = logging.getLogger(__name__)

SIGNATURE_TAG = "Signature"
SIGNATURE_TEXT_ANCHOR = re.compile(r"\{\s*signature\s*\}", re.IGNORECASE)
SIGNATURE_WIDTH = Inches(1.6)

DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PDF_MIME_TYPE = "application/pdf"


@dataclass
class RenderedDocument:
    """Result of filling one template"""
    content: bytes
    filled_tags: List[str] = field(default_factory=list)
    unmatched: List[str] = field(default_factory=list)
    signature_placed: bool = False


def load_document(content: bytes):
    try:
        return Document(io.BytesIO(content))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as e:
        raise ValidationError(f"Template is not a valid DOCX file: {e}", parameter="templateId")


def _stories(doc) -> Iterator[Tuple[object, object]]:
    """
    Yield (owner, root element) for the body and every header/footer that
    has its own definition. The owner provides .part for relationships.
    """
    yield doc, doc.element.body
    for section in doc.sections:
        for hf in (section.header, section.first_page_header, section.even_page_header,
                   section.footer, section.first_page_footer, section.even_page_footer):
            if not hf.is_linked_to_previous:
                yield hf, hf._element


def _sdt_tag(sdt) -> Optional[str]:
    sdt_pr = sdt.find(qn("w:sdtPr"))
    if sdt_pr is None:
        return None
    for child_tag in ("w:tag", "w:alias"):
        node = sdt_pr.find(qn(child_tag))
        if node is not None and node.get(qn("w:val")):
            return node.get(qn("w:val"))
    return None


def _is_signature(token: Optional[str]) -> bool:
    return bool(token) and token.strip().lower() == SIGNATURE_TAG.lower()


def _iter_paragraphs(owner, root) -> Iterator[Paragraph]:
    for p in root.iter(qn("w:p")):
        yield Paragraph(p, owner)


# ==================== CONTENT CONTROLS ====================

def _set_sdt_text(sdt, value: str):
    content = sdt.find(qn("w:sdtContent"))
    if content is None:
        return

    sdt_pr = sdt.find(qn("w:sdtPr"))
    if sdt_pr is not None:
        placeholder_flag = sdt_pr.find(qn("w:showingPlcHdr"))
        if placeholder_flag is not None:
            sdt_pr.remove(placeholder_flag)

    texts = list(content.iter(qn("w:t")))
    if texts:
        texts[0].text = value
        for t in texts[1:]:
            t.text = ""
        return

    run = OxmlElement("w:r")
    t = OxmlElement("w:t")
    t.text = value
    t.set(qn("xml:space"), "preserve")
    run.append(t)
    paragraph = content.find(qn("w:p"))
    (paragraph if paragraph is not None else content).append(run)


def _fit_extent(frame: Tuple[int, int], image_size: Tuple[int, int]) -> Tuple[int, int]:
    frame_cx, frame_cy = frame
    image_cx, image_cy = image_size
    if not (frame_cx and frame_cy and image_cx and image_cy):
        return image_cx, image_cy
    scale = min(frame_cx / image_cx, frame_cy / image_cy)
    return int(image_cx * scale), int(image_cy * scale)


def _place_signature_in_sdt(owner, sdt, signature: bytes) -> bool:
    content = sdt.find(qn("w:sdtContent"))
    if content is None:
        return False

    part = owner.part
    blips = list(content.iter(qn("a:blip")))
    if blips:
        rId, image = part.get_or_add_image(io.BytesIO(signature))
        blips[0].set(qn("r:embed"), rId)

        extent = next(content.iter(qn("wp:extent")), None)
        if extent is not None:
            frame = (int(extent.get("cx", 0)), int(extent.get("cy", 0)))
            cx, cy = _fit_extent(frame, (image.width, image.height))
            extent.set("cx", str(cx))
            extent.set("cy", str(cy))
            for ext in content.iter(qn("a:ext")):
                if ext.get("cx") is not None:
                    ext.set("cx", str(cx))
                    ext.set("cy", str(cy))
        return True

    for t in content.iter(qn("w:t")):
        t.text = ""

    inline = part.new_pic_inline(io.BytesIO(signature), SIGNATURE_WIDTH, None)
    run = OxmlElement("w:r")
    drawing = OxmlElement("w:drawing")
    drawing.append(inline)
    run.append(drawing)
    paragraph = content.find(qn("w:p"))
    (paragraph if paragraph is not None else content).append(run)
    return True


# ==================== INLINE TEXT ====================

# Run children that carry text; everything else (drawings, fields, ...) is kept
TEXT_CHILD_TAGS = {
    qn("w:t"), qn("w:tab"), qn("w:br"), qn("w:cr"),
    qn("w:noBreakHyphen"), qn("w:softHyphen"), qn("w:ptab"),
}


def _set_run_text(run, value: str):
    """Replace the text of a run without dropping inline images or other non-text content."""
    r = run._r
    children = [child for child in r if child.tag != qn("w:rPr")]
    first_text = next((i for i, child in enumerate(children) if child.tag in TEXT_CHILD_TAGS), len(children))
    kept = [(i < first_text, child) for i, child in enumerate(children) if child.tag not in TEXT_CHILD_TAGS]

    run.text = value

    anchor = r.find(qn("w:rPr"))
    for before_text, child in kept:
        if not before_text:
            r.append(child)
        elif anchor is None:
            r.insert(0, child)
            anchor = child
        else:
            anchor.addnext(child)
            anchor = child


def _replace_in_paragraph(paragraph: Paragraph, mapping: PlaceholderMap, unmatched: Set[str]):
    text = paragraph.text
    if "{" not in text:
        return

    tokens = [t for t in extract_tokens(text) if not _is_signature(t)]
    known = [t for t in tokens if mapping.lookup(t) is not None]
    unmatched.update(t for t in tokens if mapping.lookup(t) is None)
    if not known:
        return

    # Run-level replacement keeps formatting when a token sits inside one run
    for run in paragraph.runs:
        if "{" in run.text:
            filled = fill_text(run.text, mapping)
            if filled != run.text:
                _set_run_text(run, filled)

    remaining = [t for t in extract_tokens(paragraph.text) if t in known]
    if not remaining:
        return

    # Token split across runs: collapse the paragraph text into the first run
    runs = paragraph.runs
    if not runs:
        return
    _set_run_text(runs[0], fill_text(paragraph.text, mapping))
    for run in runs[1:]:
        if run.text:
            _set_run_text(run, "")


def _place_signature_at_anchor(paragraph: Paragraph, signature: bytes) -> bool:
    if not SIGNATURE_TEXT_ANCHOR.search(paragraph.text):
        return False

    runs = paragraph.runs
    if any(SIGNATURE_TEXT_ANCHOR.search(r.text) for r in runs):
        for run in runs:
            if SIGNATURE_TEXT_ANCHOR.search(run.text):
                _set_run_text(run, SIGNATURE_TEXT_ANCHOR.sub("", run.text))
    elif runs:
        _set_run_text(runs[0], SIGNATURE_TEXT_ANCHOR.sub("", paragraph.text))
        for run in runs[1:]:
            if run.text:
                _set_run_text(run, "")

    paragraph.add_run().add_picture(io.BytesIO(signature), width=SIGNATURE_WIDTH)
    return True


# ==================== RENDERER ====================

class DocumentRenderer:
    """
    Fills DOCX templates from a placeholder map.

    Usage:
        renderer = DocumentRenderer()
        rendered = renderer.render(template_bytes, mapping, signature=cleaned_png)
        pdf = render_preview_pdf(rendered.content)
    """

    def render(
        self,
        template: bytes,
        mapping: PlaceholderMap,
        signature: Optional[bytes] = None,
    ) -> RenderedDocument:
        doc = load_document(template)
        fill_map = PlaceholderMap({k: v for k, v in mapping.items() if not _is_signature(k)})

        filled: List[str] = []
        unmatched: Set[str] = set()
        signature_placed = False

        for owner, root in _stories(doc):
            for sdt in list(root.iter(qn("w:sdt"))):
                tag = _sdt_tag(sdt)
                if not tag:
                    continue
                if _is_signature(tag):
                    if signature and not signature_placed:
                        signature_placed = _place_signature_in_sdt(owner, sdt, signature)
                    continue
                value = fill_map.lookup(tag)
                if value is None:
                    unmatched.add(tag)
                    continue
                _set_sdt_text(sdt, value)
                filled.append(tag)

            for paragraph in _iter_paragraphs(owner, root):
                _replace_in_paragraph(paragraph, fill_map, unmatched)

        if signature and not signature_placed:
            for owner, root in _stories(doc):
                for paragraph in _iter_paragraphs(owner, root):
                    if _place_signature_at_anchor(paragraph, signature):
                        signature_placed = True
                        break
                if signature_placed:
                    break
            if not signature_placed:
                logger.info("Template has no signature anchor; signature dropped")

        if unmatched:
            logger.warning(f"Unmatched template placeholders left as-is: {sorted(unmatched)}")

        output = io.BytesIO()
        try:
            doc.save(output)
        except (OSError, ValueError) as e:
            raise InternalError(f"Failed to serialize rendered document: {e}")

        logger.info(f"Rendered document: {len(filled)} content controls filled, signature={signature_placed}")
        return RenderedDocument(
            content=output.getvalue(),
            filled_tags=filled,
            unmatched=sorted(unmatched),
            signature_placed=signature_placed,
        )


def extract_placeholders(template: bytes) -> List[str]:
    """Content-control tags and {Token} names found anywhere in a template."""
    doc = load_document(template)
    found: dict = {}
    for owner, root in _stories(doc):
        for sdt in root.iter(qn("w:sdt")):
            tag = _sdt_tag(sdt)
            if tag:
                found.setdefault(tag, None)
        for paragraph in _iter_paragraphs(owner, root):
            for token in extract_tokens(paragraph.text):
                found.setdefault(token, None)
    return list(found)


# ==================== PDF PREVIEW ====================

def _paragraph_images(doc, p_element) -> List[bytes]:
    images = []
    for blip in p_element.iter(qn("a:blip")):
        rId = blip.get(qn("r:embed"))
        part = doc.part.related_parts.get(rId) if rId else None
        if part is not None:
            images.append(part.blob)
    return images


def _pdf_image(blob: bytes, max_width: float) -> Optional[PdfImage]:
    try:
        width, height = ImageReader(io.BytesIO(blob)).getSize()
    except (OSError, ValueError) as e:
        logger.warning(f"Skipping unreadable image in preview: {e}")
        return None
    scale = min(1.0, max_width / width) if width else 1.0
    return PdfImage(io.BytesIO(blob), width=width * scale, height=height * scale, hAlign="LEFT")


def _preview_flowables(doc, styles, max_width: float) -> list:
    flowables = []
    body = doc.element.body

    def walk(container):
        for child in container.iterchildren():
            if child.tag == qn("w:p"):
                paragraph = Paragraph(child, doc)
                style_name = paragraph.style.name if paragraph.style is not None else ""
                style = styles["Heading2"] if style_name.startswith(("Heading", "Title")) else styles["BodyText"]
                if paragraph.text.strip():
                    flowables.append(PdfParagraph(escape(paragraph.text), style))
                else:
                    flowables.append(Spacer(1, 4 * mm))
                for blob in _paragraph_images(doc, child):
                    image = _pdf_image(blob, max_width / 3)
                    if image is not None:
                        flowables.append(image)
            elif child.tag == qn("w:tbl"):
                table = DocxTable(child, doc)
                data = [
                    [PdfParagraph(escape(cell.text), styles["BodyText"]) for cell in row.cells]
                    for row in table.rows
                ]
                if data and data[0]:
                    pdf_table = Table(data, colWidths=[max_width / len(data[0])] * len(data[0]))
                    pdf_table.setStyle(TableStyle([
                        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                        ("VALIGN", (0, 0), (-1, -1), "TOP"),
                    ]))
                    flowables.append(pdf_table)
            elif child.tag == qn("w:sdt"):
                content = child.find(qn("w:sdtContent"))
                if content is not None:
                    walk(content)

    walk(body)
    return flowables


def render_preview_pdf(document: bytes, title: str = "Letter Preview") -> bytes:
    """
    Lay out a rendered DOCX as an A4 PDF.

    Text, tables and embedded images (including the signature) are carried
    over; fonts and exact positioning are not.
    """
    doc = load_document(document)
    styles = getSampleStyleSheet()
    buffer = io.BytesIO()
    pdf = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=20 * mm,
        rightMargin=20 * mm,
        topMargin=20 * mm,
        bottomMargin=20 * mm,
        title=title,
    )
    flowables = _preview_flowables(doc, styles, pdf.width)
    if not flowables:
        flowables = [Spacer(1, 1)]
    try:
        pdf.build(flowables)
    except (ValueError, IndexError) as e:
        raise InternalError(f"Failed to build PDF preview: {e}")
    return buffer.getvalue()
