"""PDF inspection and page rendering for exam templates."""

from __future__ import annotations

import contextlib
import io
import logging
from pathlib import Path
from typing import Any, Iterator, Sequence, Union

from PIL import Image


LOGGER = logging.getLogger(__name__)

PdfSource = Union[Path, bytes]


class PdfProcessingError(RuntimeError):
    """Base class for PDF processing errors."""


class PdfDependencyError(PdfProcessingError):
    """Raised when PyMuPDF is not available."""


@contextlib.contextmanager
def _open_document(source: PdfSource) -> Iterator[Any]:
    try:
        import fitz  # type: ignore
    except ImportError as exc:  # pragma: no cover - runtime check
        raise PdfDependencyError("PyMuPDF (fitz) is not installed") from exc

    try:
        if isinstance(source, Path):
            document = fitz.open(str(source))
        else:
            document = fitz.open(stream=source, filetype="pdf")
    except Exception as error:  # noqa: BLE001 - PyMuPDF raises several error types
        raise PdfProcessingError("Unable to open PDF document") from error
    try:
        yield document
    finally:
        document.close()


def get_pdf_page_count(source: PdfSource) -> int:
    """Return the number of pages contained in a PDF document."""

    with _open_document(source) as document:
        return int(document.page_count)


def render_pdf_page(source: PdfSource, page_number: int, *, dpi: int = 150) -> bytes:
    """Render a single 1-based PDF page to PNG bytes."""

    if page_number < 1:
        raise PdfProcessingError("Invalid PDF page index")

    with _open_document(source) as document:
        import fitz  # type: ignore

        if page_number > int(document.page_count):
            raise PdfProcessingError("PDF page is out of range")
        scale = float(dpi) / 72.0
        try:
            page = document.load_page(page_number - 1)
            pixmap = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
            return pixmap.tobytes("png")
        except Exception as error:  # noqa: BLE001 - PyMuPDF raises several error types
            raise PdfProcessingError("Unable to render PDF page") from error


def crop_png(image_bytes: bytes, box: Sequence[float]) -> bytes:
    """Crop a PNG to the normalised ``(x, y, width, height)`` *box*."""

    x, y, width, height = (float(value) for value in box)
    with Image.open(io.BytesIO(image_bytes)) as image:
        image_width, image_height = image.size
        left = round(x * image_width)
        top = round(y * image_height)
        right = max(left + 1, round((x + width) * image_width))
        bottom = max(top + 1, round((y + height) * image_height))
        cropped = image.crop(
            (left, top, min(right, image_width), min(bottom, image_height))
        )
        output = io.BytesIO()
        cropped.save(output, format="PNG")
    LOGGER.debug("Cropped %sx%s image to %s", image_width, image_height, cropped.size)
    return output.getvalue()


__all__ = [
    "PdfDependencyError",
    "PdfProcessingError",
    "crop_png",
    "get_pdf_page_count",
    "render_pdf_page",
]
