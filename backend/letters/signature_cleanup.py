"""
Signature Cleanup

Turns a scanned or photographed signature into a transparent PNG:
- near-white paper background becomes transparent
- red/pink watermark strokes (PDF signing stamps) become transparent
- remaining ink is rendered black, with opacity following its darkness
- the result is cropped to the ink's bounding box

Every output pixel is either fully transparent or black, so running the
cleanup on its own output changes nothing.
"""

import io
import logging
from typing import Tuple

from PIL import Image, UnidentifiedImageError

from utils.errors import ValidationError

logger = logging.getLogger(__name__)

LIGHT_BRIGHTNESS = 230
SOFT_LIGHT_BRIGHTNESS = 200
SOFT_LIGHT_SPREAD = 30
# Ink at or below this brightness is fully opaque
INK_FLOOR = 100
ALPHA_CUTOFF = 16

TRANSPARENT = (0, 0, 0, 0)

Pixel = Tuple[int, int, int, int]


def _is_background(r: int, g: int, b: int) -> bool:
    brightness = (r + g + b) // 3
    spread = max(r, g, b) - min(r, g, b)
    return brightness > LIGHT_BRIGHTNESS or (brightness > SOFT_LIGHT_BRIGHTNESS and spread < SOFT_LIGHT_SPREAD)


def _is_watermark(r: int, g: int, b: int) -> bool:
    return r > 150 and r - g > 50 and r - b > 50


def clean_pixel(pixel: Pixel) -> Pixel:
    r, g, b, a = pixel
    if a <= ALPHA_CUTOFF or _is_background(r, g, b) or _is_watermark(r, g, b):
        return TRANSPARENT

    brightness = (r + g + b) // 3
    darkness = min(255, max(0, (LIGHT_BRIGHTNESS - brightness) * 255 // (LIGHT_BRIGHTNESS - INK_FLOOR)))
    alpha = min(a, darkness)
    if alpha <= ALPHA_CUTOFF:
        return TRANSPARENT
    return (0, 0, 0, alpha)


def clean_signature(image_bytes: bytes) -> bytes:
    """
    Normalize signature image bytes to a cropped, transparent PNG.

    Raises:
        ValidationError: bytes are not a readable image
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as source:
            image = source.convert("RGBA")
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Signature is not a readable image: {e}", parameter="signature")

    image.putdata([clean_pixel(p) for p in image.getdata()])

    bbox = image.getchannel("A").getbbox()
    if bbox is None:
        logger.warning("Signature cleanup removed every pixel; keeping blank image")
    elif bbox != (0, 0, image.width, image.height):
        image = image.crop(bbox)

    # Source metadata (ICC, EXIF) must not leak into the output
    image.info = {}
    output = io.BytesIO()
    image.save(output, format="PNG")
    logger.debug(f"Cleaned signature {len(image_bytes)} -> {output.tell()} bytes, size {image.size}")
    return output.getvalue()
