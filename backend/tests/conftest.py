"""
Shared fixtures.

Environment is pinned before any application module is imported, because
config.get_settings() and database.connection build their globals at import.
"""

import io
import os
import tempfile

_TEST_ROOT = tempfile.mkdtemp(prefix="letter-dispatch-tests-")
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_ROOT}/app.db"
os.environ["UPLOADS_DIR"] = os.path.join(_TEST_ROOT, "uploads")
os.environ["EMAIL_API_KEY"] = ""
os.environ["EMAIL_WEBHOOK_SECRET"] = ""
os.environ["POLL_INTERVAL_SECONDS"] = "0"
os.environ["SENTRY_DSN"] = ""

import pytest
import pytest_asyncio
from docx import Document
from PIL import Image
from sqlalchemy import text

from config import Settings
from database.connection import Base, build_engine, build_session_factory
from database.models import (
    DocumentTemplateDB,
    FileReferenceDB,
    LetterTypeDB,
    LetterTypeFieldDB,
)
from services.notification_hub import NotificationHub

TAB_ID = "tab-offer"
TEMPLATE_ID = "tpl-offer"


@pytest.fixture
def settings(tmp_path):
    uploads = tmp_path / "uploads"
    (uploads / "signature").mkdir(parents=True)
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/letters.db",
        UPLOADS_DIR=str(uploads),
        EMAIL_HISTORY_DIR=str(tmp_path / "history"),
        ORGANIZATION_NAME="Acme Staffing",
        DISPATCH_WORKERS=2,
        DISPATCH_QUEUE_SIZE=10,
        DISPATCH_TIMEOUT_SECONDS=5.0,
        POLL_INTERVAL_SECONDS=0,
    )


@pytest_asyncio.fixture
async def db_engine(settings):
    engine = build_engine(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def hub():
    return NotificationHub(queue_size=10)


def make_template(paragraphs) -> bytes:
    """Build a DOCX template with one paragraph per entry."""
    doc = Document()
    for text_value in paragraphs:
        doc.add_paragraph(text_value)
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


def make_signature_image(size=(60, 30)) -> bytes:
    """White canvas with a dark stroke and a red stamp mark."""
    image = Image.new("RGB", size, (255, 255, 255))
    for x in range(10, 50):
        image.putpixel((x, 15), (20, 20, 20))
        image.putpixel((x, 16), (90, 90, 90))
    for x in range(5, 9):
        image.putpixel((x, 5), (220, 40, 40))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest_asyncio.fixture
async def seeded(db, settings):
    """
    One tab ("Offer Letter") with an employee table, and one template:

    EMP ID | EMP NAME | EMAIL            | CTC
    E100   | Jane Doe | jane@example.com | 50000
    E200   | No Mail  |                  | 40000
    """
    await db.execute(text(
        'CREATE TABLE "Offer_Letter" ("EMP ID" TEXT, "EMP NAME" TEXT, "EMAIL" TEXT, "CTC" TEXT)'
    ))
    await db.execute(text(
        'INSERT INTO "Offer_Letter" VALUES '
        "('E100', 'Jane Doe', 'jane@example.com', '50000'), "
        "('E200', 'No Mail', '', '40000')"
    ))

    letter_type = LetterTypeDB(id=TAB_ID, display_name="Offer Letter")
    letter_type.fields = [
        LetterTypeFieldDB(field_key="EmpID", field_name="EMP ID", order_index=0),
        LetterTypeFieldDB(field_key="Salary", field_name="Salary", order_index=1),
        LetterTypeFieldDB(field_key="CTC", field_name="CTC", order_index=2),
    ]
    db.add(letter_type)

    template_path = "templates/offer.docx"
    (settings.signature_dir.parent / "templates").mkdir(parents=True, exist_ok=True)
    (settings.signature_dir.parent / template_path).write_bytes(make_template([
        "Dear {EmpName},",
        "Your employee id is {EmpID} and your CTC is {CTC}.",
        "{Signature}",
    ]))
    reference = FileReferenceDB(id="file-offer", storage_path=template_path, original_name="offer.docx")
    db.add(reference)
    db.add(DocumentTemplateDB(
        id=TEMPLATE_ID, letter_type_id=TAB_ID, name="Offer", file_reference_id=reference.id,
    ))
    await db.commit()
    return letter_type


@pytest.fixture
def template_builder():
    return make_template


@pytest.fixture
def signature_png():
    return make_signature_image()
