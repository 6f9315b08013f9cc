"""
PDF parsing plugin using pdfplumber.

Extracts page text and tables from in-memory PDF documents, both for
native PDF attachments and for PDFs produced by the conversion service.
"""

import io
import re

import pdfplumber
import structlog

from ..core.errors import CorruptDocumentError

logger = structlog.get_logger(__name__)


def extract_text_from_pdf(content: bytes, include_tables: bool = True) -> str:
    """
    Extract all text from a PDF.

    Args:
        content: Raw PDF bytes
        include_tables: Append table rows (pipe-separated) after each page

    Returns:
        Extracted text, possibly empty for scanned documents

    Raises:
        CorruptDocumentError: If pdfplumber cannot open or read the document
    """
    try:
        text_parts = []

        with pdfplumber.open(io.BytesIO(content)) as pdf:
            for page in pdf.pages:
                page_text = page.extract_text()
                if page_text:
                    text_parts.append(_cleanup_pdf_text(page_text))

                if include_tables:
                    for table in page.extract_tables():
                        rendered = _table_to_text(table)
                        if rendered:
                            text_parts.append(rendered)

    except Exception as e:
        raise CorruptDocumentError(f"PDF parse failed: {e}") from e

    full_text = "\n\n".join(text_parts)
    logger.debug("pdf_extracted", parts=len(text_parts), chars=len(full_text))
    return full_text


def _cleanup_pdf_text(text: str) -> str:
    """Clean up extracted PDF text."""
    # Normalize whitespace
    text = re.sub(r"[ \t]+", " ", text)
    # Remove page numbers
    text = re.sub(r"\n-?\s*\d+\s*-?\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)

    return text.strip()


def _table_to_text(table: list[list]) -> str:
    rows = []
    for row in table or []:
        cells = [re.sub(r"\s+", " ", str(cell)).strip() if cell else "" for cell in row]
        if any(cells):
            rows.append(" | ".join(cells))
    return "\n".join(rows)
