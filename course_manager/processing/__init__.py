"""Document processing backends."""

from .pdf import (
    PdfDependencyError,
    PdfProcessingError,
    crop_png,
    get_pdf_page_count,
    render_pdf_page,
)

__all__ = [
    "PdfDependencyError",
    "PdfProcessingError",
    "crop_png",
    "get_pdf_page_count",
    "render_pdf_page",
]
