"""
Document format plugins.

- pdf: PDF text and tables with pdfplumber
- hwp: HWP 5.0 compound documents with olefile
- hwpx: HWPX (OWPML zip) documents with lxml
- hancom: Hancom Docs conversion service driven by Playwright
  (import ``funding_ingest.plugins.hancom`` directly; it needs a browser)
"""

from .hwp import extract_text_from_hwp
from .hwpx import extract_text_from_hwpx
from .pdf import extract_text_from_pdf

__all__ = [
    "extract_text_from_hwp",
    "extract_text_from_hwpx",
    "extract_text_from_pdf",
]
