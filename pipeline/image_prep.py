"""
Prepare an uploaded worksheet for the vision model.

PDFs are rendered (first page) with PyMuPDF, unsupported image formats are
converted to PNG, and anything above the size ceiling is compressed. The
result is also what the teacher can download as the "processed" file.
"""

import io
import logging
from typing import Tuple

from pipeline.errors import ContentError
from pipeline.schema import ProcessedImage

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_FORMATS = {"image/png", "image/jpeg", "image/gif", "image/webp"}

# Provider limit is ~5MB after base64; keep headroom.
MAX_IMAGE_BYTES = 4 * 1024 * 1024
PDF_RENDER_DPI = 200

MIN_PNG_WIDTH = 800
MIN_JPEG_QUALITY = 70
MIN_AGGRESSIVE_WIDTH = 600


def render_pdf_first_page(pdf_bytes: bytes) -> bytes:
    """Render page 1 of a PDF to PNG bytes."""
    import fitz  # PyMuPDF

    try:
        document = fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as e:
        raise ContentError(f"Failed to convert PDF to image: {e}")
    try:
        if len(document) == 0:
            raise ContentError("Failed to convert PDF to image: PDF has no pages")
        pixmap = document[0].get_pixmap(dpi=PDF_RENDER_DPI)
        return pixmap.tobytes("png")
    finally:
        document.close()


def _to_png(image_bytes: bytes) -> bytes:
    from PIL import Image

    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            out = io.BytesIO()
            image.save(out, format="PNG")
            return out.getvalue()
    except OSError as e:
        raise ContentError(f"Failed to read image: {e}")


def _encode(image, width: int, fmt: str, quality: int = 90) -> bytes:
    """Resize to ``width`` (never enlarge) and encode."""
    from PIL import Image

    if width < image.width:
        height = max(1, round(image.height * width / image.width))
        image = image.resize((width, height), Image.LANCZOS)
    out = io.BytesIO()
    if fmt == "PNG":
        image.save(out, format="PNG", optimize=True, compress_level=9)
    else:
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        image.save(out, format="JPEG", quality=quality)
    return out.getvalue()


def compress_if_needed(image_bytes: bytes, mime_type: str, max_bytes: int = MAX_IMAGE_BYTES) -> Tuple[bytes, str]:
    """
    Shrink an image below ``max_bytes`` while keeping text readable.

    Strategy, in order:
        1. PNG, shrinking width in 10% steps down to 800px
        2. JPEG at the last width, quality 90 down to 70
        3. JPEG at quality 70, shrinking width by 20% down to 600px
    Returns the best effort even if the ceiling could not be reached.
    """
    if len(image_bytes) <= max_bytes:
        return image_bytes, mime_type

    from PIL import Image

    logger.info(f"Image size {len(image_bytes) / 1024 / 1024:.2f}MB exceeds limit, compressing...")

    try:
        source = Image.open(io.BytesIO(image_bytes))
        source.load()
    except OSError as e:
        raise ContentError(f"Failed to read image: {e}")

    with source:
        original_width = source.width
        compressed = image_bytes
        final_mime = mime_type

        scale = 1.0
        width = original_width
        while len(compressed) > max_bytes and width > MIN_PNG_WIDTH:
            scale -= 0.1
            width = int(original_width * scale)
            compressed = _encode(source, width, "PNG")
            logger.debug(f"PNG at {width}px: {len(compressed) / 1024 / 1024:.2f}MB")
            if len(compressed) <= max_bytes:
                return compressed, "image/png"

        quality = 90
        while len(compressed) > max_bytes and quality >= MIN_JPEG_QUALITY:
            compressed = _encode(source, width, "JPEG", quality)
            final_mime = "image/jpeg"
            if len(compressed) <= max_bytes:
                return compressed, final_mime
            quality -= 5

        while len(compressed) > max_bytes and width > MIN_AGGRESSIVE_WIDTH:
            width = int(width * 0.8)
            compressed = _encode(source, width, "JPEG", MIN_JPEG_QUALITY)
            final_mime = "image/jpeg"

    if len(compressed) > max_bytes:
        logger.warning(f"Could not compress image below limit. Final size: {len(compressed) / 1024 / 1024:.2f}MB")
    return compressed, final_mime


def prepare_image(file_bytes: bytes, mime_type: str) -> ProcessedImage:
    """Turn raw upload bytes into the single image sent to the vision model."""
    data, current_mime = file_bytes, mime_type

    if mime_type == "application/pdf":
        data, current_mime = render_pdf_first_page(file_bytes), "image/png"

    if current_mime not in SUPPORTED_IMAGE_FORMATS:
        data, current_mime = _to_png(data), "image/png"

    data, current_mime = compress_if_needed(data, current_mime)
    return ProcessedImage(data=data, mime_type=current_mime)
