from io import BytesIO
from typing import Optional, Tuple

import pdfplumber

from ..exceptions import UnsupportedSheetFormat

IMAGE_MIME_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
}
PDF_RESOLUTION = 200


def _extension(filename: Optional[str]) -> str:
    if not filename or "." not in filename:
        return ""
    return filename.rsplit(".", 1)[1].lower()


def rasterize_first_page(file_bytes: bytes, resolution: int = PDF_RESOLUTION) -> bytes:
    """Render the first page of a scanned PDF sheet to PNG bytes."""
    with pdfplumber.open(BytesIO(file_bytes)) as pdf:
        if not pdf.pages:
            raise UnsupportedSheetFormat("PDF sheet has no pages")
        page_image = pdf.pages[0].to_image(resolution=resolution)
        buffer = BytesIO()
        page_image.original.save(buffer, format="PNG")
    return buffer.getvalue()


def load_sheet_image(
    filename: Optional[str],
    content_type: Optional[str],
    data: bytes,
) -> Tuple[bytes, str]:
    """Return ``(image_bytes, mime_type)`` ready for the vision service."""
    if not data:
        raise UnsupportedSheetFormat("Empty sheet upload")

    ext = _extension(filename)
    if ext == "pdf" or content_type == "application/pdf":
        return rasterize_first_page(data), "image/png"
    if ext in IMAGE_MIME_TYPES:
        return data, IMAGE_MIME_TYPES[ext]
    if content_type in IMAGE_MIME_TYPES.values():
        return data, content_type
    raise UnsupportedSheetFormat()
