"""
PDF text extraction for uploaded resumes, using pypdf.
"""

import logging
from pathlib import Path

from pypdf import PdfReader
from pypdf.errors import PyPdfError

logger = logging.getLogger(__name__)


class PDFParseError(Exception):
    pass


def extract_text(file_path: str | Path) -> str:
    """
    Extract text from every page of the PDF at *file_path*.

    Pages without a text layer are skipped. Raises PDFParseError when the
    file is missing or is not a readable PDF.
    """
    try:
        reader = PdfReader(str(file_path))
        parts = []
        for page in reader.pages:
            page_text = page.extract_text()
            if page_text:
                parts.append(page_text)
    except (OSError, PyPdfError) as exc:
        logger.error("PDF parsing failed", extra={"path": str(file_path), "error": str(exc)})
        raise PDFParseError(f"Failed to parse PDF: {exc}") from exc

    return "\n\n".join(parts)
