"""
Unit Tests for the Document Renderer

Templates are built in memory with python-docx; content controls are added
with raw WordprocessingML.

Run with: pytest tests/test_document_renderer.py -v
"""

import io

import pytest
from docx import Document
from docx.oxml import parse_xml
from docx.oxml.ns import nsdecls, qn

from letters.document_renderer import (
    DocumentRenderer,
    extract_placeholders,
    load_document,
    render_preview_pdf,
)
from letters.placeholder_resolver import PlaceholderMap
from utils.errors import ValidationError


def sdt_paragraph(tag: str, placeholder_text: str = "Click here"):
    return parse_xml(
        f'<w:p {nsdecls("w")}>'
        f'<w:sdt><w:sdtPr><w:tag w:val="{tag}"/><w:showingPlcHdr/></w:sdtPr>'
        f'<w:sdtContent><w:r><w:t>{placeholder_text}</w:t></w:r></w:sdtContent></w:sdt>'
        f'</w:p>'
    )


def save(doc) -> bytes:
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


def body_text(content: bytes) -> str:
    return "\n".join(p.text for p in Document(io.BytesIO(content)).paragraphs)


def image_count(content: bytes) -> int:
    doc = Document(io.BytesIO(content))
    return len(doc.element.body.findall(".//" + qn("pic:pic")))


MAPPING = PlaceholderMap({"EmpName": "Jane Doe", "EmpID": "E100", "CTC": "50000", "LWD": ""})


class TestTokenReplacement:

    @pytest.fixture
    def renderer(self):
        return DocumentRenderer()

    def test_tokens_in_body_are_replaced(self, renderer, template_builder):
        template = template_builder(["Dear {EmpName},", "ID: {EmpID}"])
        rendered = renderer.render(template, MAPPING)
        text = body_text(rendered.content)
        assert "Dear Jane Doe," in text
        assert "ID: E100" in text

    def test_empty_value_clears_token(self, renderer, template_builder):
        rendered = renderer.render(template_builder(["Last day: {LWD}."]), MAPPING)
        assert "Last day: ." in body_text(rendered.content)

    def test_unknown_tokens_are_left_and_reported(self, renderer, template_builder):
        rendered = renderer.render(template_builder(["Grade {Grade}"]), MAPPING)
        assert "Grade {Grade}" in body_text(rendered.content)
        assert rendered.unmatched == ["Grade"]

    def test_inline_image_in_token_run_is_kept(self, renderer, signature_png):
        doc = Document()
        run = doc.add_paragraph().add_run("Dear {EmpName} ")
        run.add_picture(io.BytesIO(signature_png))

        rendered = renderer.render(save(doc), MAPPING)

        paragraph = Document(io.BytesIO(rendered.content)).paragraphs[0]
        assert paragraph.text == "Dear Jane Doe "
        assert len(paragraph.runs) == 1
        assert paragraph.runs[0]._r.find(qn("w:drawing")) is not None
        assert image_count(rendered.content) == 1

    def test_image_before_token_keeps_its_position(self, renderer, signature_png):
        doc = Document()
        run = doc.add_paragraph().add_run()
        run.add_picture(io.BytesIO(signature_png))
        run.add_text("{EmpID}")

        rendered = renderer.render(save(doc), MAPPING)

        children = [child.tag for child in Document(io.BytesIO(rendered.content)).paragraphs[0].runs[0]._r]
        assert children.index(qn("w:drawing")) < children.index(qn("w:t"))

    def test_token_split_across_runs(self, renderer):
        doc = Document()
        paragraph = doc.add_paragraph()
        paragraph.add_run("Dear {Emp")
        paragraph.add_run("Name}, welcome")
        rendered = renderer.render(save(doc), MAPPING)
        assert "Dear Jane Doe, welcome" in body_text(rendered.content)

    def test_tokens_in_tables_are_replaced(self, renderer):
        doc = Document()
        table = doc.add_table(rows=1, cols=2)
        table.cell(0, 0).text = "CTC"
        table.cell(0, 1).text = "{CTC}"
        rendered = renderer.render(save(doc), MAPPING)
        result = Document(io.BytesIO(rendered.content))
        assert result.tables[0].cell(0, 1).text == "50000"

    def test_tokens_in_header_are_replaced(self, renderer):
        doc = Document()
        doc.sections[0].header.paragraphs[0].text = "Employee {EmpID}"
        doc.add_paragraph("Body")
        rendered = renderer.render(save(doc), MAPPING)
        result = Document(io.BytesIO(rendered.content))
        assert result.sections[0].header.paragraphs[0].text == "Employee E100"


class TestContentControls:

    def test_tagged_control_is_filled(self):
        doc = Document()
        doc.element.body.insert(0, sdt_paragraph("EmpName"))
        rendered = DocumentRenderer().render(save(doc), MAPPING)

        assert rendered.filled_tags == ["EmpName"]
        result = Document(io.BytesIO(rendered.content))
        sdt = result.element.body.find(".//" + qn("w:sdt"))
        texts = "".join(t.text for t in sdt.iter(qn("w:t")))
        assert texts == "Jane Doe"
        assert sdt.find(".//" + qn("w:showingPlcHdr")) is None

    def test_unknown_control_is_reported(self):
        doc = Document()
        doc.element.body.insert(0, sdt_paragraph("Grade"))
        rendered = DocumentRenderer().render(save(doc), MAPPING)
        assert rendered.filled_tags == []
        assert rendered.unmatched == ["Grade"]


class TestSignaturePlacement:

    def test_signature_anchor_gets_image(self, template_builder, signature_png):
        template = template_builder(["Regards,", "{Signature}"])
        rendered = DocumentRenderer().render(template, MAPPING, signature=signature_png)

        assert rendered.signature_placed
        assert "{Signature}" not in body_text(rendered.content)
        assert image_count(rendered.content) == 1

    def test_signature_control_gets_image(self, signature_png):
        doc = Document()
        doc.element.body.insert(0, sdt_paragraph("Signature", "Sign here"))
        rendered = DocumentRenderer().render(save(doc), MAPPING, signature=signature_png)

        assert rendered.signature_placed
        assert image_count(rendered.content) == 1

    def test_without_anchor_signature_is_dropped(self, template_builder, signature_png):
        rendered = DocumentRenderer().render(template_builder(["No anchor"]), MAPPING, signature=signature_png)
        assert not rendered.signature_placed
        assert image_count(rendered.content) == 0

    def test_no_signature_leaves_anchor(self, template_builder):
        rendered = DocumentRenderer().render(template_builder(["{Signature}"]), MAPPING)
        assert not rendered.signature_placed
        assert "{Signature}" in body_text(rendered.content)


class TestTemplatesAndPreview:

    def test_extract_placeholders(self):
        doc = Document()
        doc.element.body.insert(0, sdt_paragraph("Designation"))
        doc.add_paragraph("Dear {EmpName}, id {EmpID}")
        assert extract_placeholders(save(doc)) == ["Designation", "EmpName", "EmpID"]

    def test_invalid_template_raises_validation_error(self):
        with pytest.raises(ValidationError):
            load_document(b"definitely not a docx")

    def test_preview_pdf(self, template_builder, signature_png):
        rendered = DocumentRenderer().render(
            template_builder(["Dear {EmpName},", "{Signature}"]), MAPPING, signature=signature_png
        )
        pdf = render_preview_pdf(rendered.content, title="E100_Offer_Letter_Preview.pdf")
        assert pdf.startswith(b"%PDF")
