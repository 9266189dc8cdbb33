"""
Credit cost estimation.

Cost is one credit per started megapixel of output:
ceil(width * height * scale^2 / 1,000,000), never below 1.
"""
import io
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

PIXELS_PER_CREDIT = 1_000_000

UNREADABLE_IMAGE_ERRORS = (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError)


def image_dimensions(data: bytes):
    """Return (width, height) without decoding the full image."""
    with Image.open(io.BytesIO(data)) as img:
        return img.size


def read_dimensions(data: bytes) -> Optional[Tuple[int, int]]:
    """Like ``image_dimensions`` but None for anything that is not a readable image."""
    try:
        return image_dimensions(data)
    except UNREADABLE_IMAGE_ERRORS:
        return None


def credits_for_pixels(width: int, height: int, scale: int) -> int:
    output_pixels = width * height * scale * scale
    return max(1, -(-output_pixels // PIXELS_PER_CREDIT))


def estimate_credits(data: bytes, scale: int) -> int:
    """Estimate the credit cost of upscaling ``data`` by ``scale``.

    Falls back to ``scale`` itself when the dimensions cannot be read.
    """
    dimensions = read_dimensions(data)
    if dimensions is None:
        return max(1, scale)
    return credits_for_pixels(*dimensions, scale)
