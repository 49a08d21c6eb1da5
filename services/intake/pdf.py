"""PDF rasterization for vision extraction.

Vision models take images, so a PDF is reduced to its first page rendered as
PNG. Rendering is delegated to pdf2image (poppler) behind a narrow protocol so
the normalizer can be tested without poppler installed.
"""

import io
import logging
from typing import Protocol

from pdf2image import convert_from_bytes
from pdf2image.exceptions import (
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFPopplerTimeoutError,
    PDFSyntaxError,
)

from services.shared.errors import ConversionFailure

logger = logging.getLogger(__name__)


class PdfRasterizer(Protocol):
    def render_first_page(self, pdf_bytes: bytes) -> bytes:
        """Render page one as PNG bytes.

        Raises:
            ConversionFailure: If the document cannot be rendered
        """
        ...


class Pdf2ImageRasterizer:
    """Renders PDFs with poppler through pdf2image."""

    def __init__(self, dpi: int = 144, timeout_seconds: int = 30) -> None:
        self.dpi = dpi
        self.timeout_seconds = timeout_seconds

    def render_first_page(self, pdf_bytes: bytes) -> bytes:
        if not pdf_bytes.startswith(b"%PDF"):
            raise ConversionFailure("Document is not a valid PDF")

        try:
            pages = convert_from_bytes(
                pdf_bytes,
                dpi=self.dpi,
                first_page=1,
                last_page=1,
                fmt="png",
                timeout=self.timeout_seconds,
            )
        except PDFInfoNotInstalledError as e:
            logger.error("poppler is not installed; PDF documents cannot be converted")
            raise ConversionFailure("PDF conversion is not available on this server") from e
        except (PDFPageCountError, PDFSyntaxError, PDFPopplerTimeoutError) as e:
            logger.warning(f"PDF conversion failed: {e}")
            raise ConversionFailure("Failed to convert PDF to image", details=str(e)) from e

        if not pages:
            raise ConversionFailure("PDF has no pages")

        buffer = io.BytesIO()
        pages[0].save(buffer, format="PNG")
        logger.info(
            "Converted PDF first page to PNG",
            extra={"width": pages[0].width, "height": pages[0].height, "dpi": self.dpi},
        )
        return buffer.getvalue()
