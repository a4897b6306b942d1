"""
Unit Tests for Signature Lookup and Cleanup

Run with: pytest tests/test_signature.py -v
"""

import io
import uuid

import pytest
from PIL import Image

from database.models import FileReferenceDB, SignatureDB
from letters.signature_cleanup import TRANSPARENT, clean_pixel, clean_signature
from letters.signature_locator import (
    AssetStore,
    DirectoryMatchStrategy,
    LiteralPathStrategy,
    SignatureLocator,
    SignatureStrategy,
)
from utils.errors import ValidationError


def pixels(png: bytes):
    image = Image.open(io.BytesIO(png))
    return image.mode, image.size, list(image.getdata())


class TestCleanPixel:

    def test_white_background_becomes_transparent(self):
        assert clean_pixel((255, 255, 255, 255)) == TRANSPARENT

    def test_light_grey_paper_becomes_transparent(self):
        assert clean_pixel((215, 210, 205, 255)) == TRANSPARENT

    def test_red_watermark_becomes_transparent(self):
        assert clean_pixel((220, 40, 40, 255)) == TRANSPARENT

    def test_dark_ink_is_opaque_black(self):
        assert clean_pixel((20, 20, 20, 255)) == (0, 0, 0, 255)

    def test_mid_ink_is_partially_transparent(self):
        r, g, b, a = clean_pixel((150, 150, 150, 255))
        assert (r, g, b) == (0, 0, 0)
        assert 16 < a < 255

    def test_transparent_input_stays_transparent(self):
        assert clean_pixel((0, 0, 0, 10)) == TRANSPARENT


class TestCleanSignature:

    def test_output_is_cropped_rgba_png(self, signature_png):
        mode, size, data = pixels(clean_signature(signature_png))
        assert mode == "RGBA"
        # Stroke spans x 10..49 on rows 15..16; the red stamp is removed
        assert size == (40, 2)
        assert all(p[:3] == (0, 0, 0) for p in data)

    def test_cleanup_is_idempotent(self, signature_png):
        once = clean_signature(signature_png)
        twice = clean_signature(once)
        assert pixels(once) == pixels(twice)

    def test_invalid_image_raises(self):
        with pytest.raises(ValidationError):
            clean_signature(b"not an image")


class StubStrategy(SignatureStrategy):

    def __init__(self, name, result=None, error=None):
        self.name = name
        self.result = result
        self.error = error
        self.calls = 0

    async def locate(self, token):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


class TestSignatureLocator:

    @pytest.mark.asyncio
    async def test_empty_token_returns_none(self):
        first = StubStrategy("first", b"x")
        locator = SignatureLocator([first])
        assert await locator.locate("") is None
        assert await locator.locate(None) is None
        assert first.calls == 0

    @pytest.mark.asyncio
    async def test_first_success_wins(self):
        miss = StubStrategy("miss")
        hit = StubStrategy("hit", b"found")
        later = StubStrategy("later", b"other")
        locator = SignatureLocator([miss, hit, later])

        assert await locator.locate("hr-head") == b"found"
        assert later.calls == 0

    @pytest.mark.asyncio
    async def test_failing_strategy_is_skipped(self):
        broken = StubStrategy("broken", error=PermissionError("denied"))
        hit = StubStrategy("hit", b"found")
        locator = SignatureLocator([broken, hit])

        assert await locator.locate("hr-head") == b"found"

    @pytest.mark.asyncio
    async def test_nothing_found(self):
        locator = SignatureLocator([StubStrategy("a"), StubStrategy("b")])
        assert await locator.locate("hr-head") is None


class TestStrategies:

    @pytest.mark.asyncio
    async def test_directory_match_probes_extensions(self, tmp_path):
        (tmp_path / "hr-head.png").write_bytes(b"png")
        strategy = DirectoryMatchStrategy(tmp_path)
        assert await strategy.locate("hr-head") == b"png"

    @pytest.mark.asyncio
    async def test_directory_match_is_case_insensitive(self, tmp_path):
        (tmp_path / "HR-Head.JPG").write_bytes(b"jpg")
        strategy = DirectoryMatchStrategy(tmp_path)
        assert await strategy.locate("hr-head") == b"jpg"

    @pytest.mark.asyncio
    async def test_directory_match_normalizes_uuid(self, tmp_path):
        signature_id = uuid.uuid4()
        (tmp_path / f"{signature_id}.png").write_bytes(b"uuid")
        strategy = DirectoryMatchStrategy(tmp_path)
        assert await strategy.locate(signature_id.hex.upper()) == b"uuid"

    @pytest.mark.asyncio
    async def test_directory_match_substring(self, tmp_path):
        (tmp_path / "signature_john_smith.png").write_bytes(b"sub")
        strategy = DirectoryMatchStrategy(tmp_path)
        assert await strategy.locate("john_smith") == b"sub"

    @pytest.mark.asyncio
    async def test_literal_path_confined_to_uploads(self, tmp_path):
        uploads = tmp_path / "uploads"
        uploads.mkdir()
        (uploads / "sig.png").write_bytes(b"inside")
        (tmp_path / "secret.png").write_bytes(b"outside")
        strategy = LiteralPathStrategy(uploads)

        assert await strategy.locate("sig.png") == b"inside"
        assert await strategy.locate("../secret.png") is None
        assert await strategy.locate(str(tmp_path / "secret.png")) is None

    @pytest.mark.asyncio
    async def test_default_locator_resolves_signature_id(self, db, settings):
        path = settings.signature_dir / "stored.png"
        path.write_bytes(b"stored")
        reference = FileReferenceDB(storage_path=str(path))
        db.add(reference)
        await db.flush()
        signature = SignatureDB(name="HR Head", file_reference_id=reference.id)
        db.add(signature)
        await db.commit()

        locator = SignatureLocator.default(
            AssetStore(db, settings.UPLOADS_DIR), settings.UPLOADS_DIR, settings.signature_dir
        )
        assert await locator.locate(signature.id) == b"stored"

    @pytest.mark.asyncio
    async def test_default_locator_falls_back_to_first_image(self, db, settings):
        (settings.signature_dir / "a_default.png").write_bytes(b"fallback")
        locator = SignatureLocator.default(
            AssetStore(db, settings.UPLOADS_DIR), settings.UPLOADS_DIR, settings.signature_dir
        )
        assert await locator.locate("nobody") == b"fallback"
