"""
Text and field extraction.

Components:
- attachments: Native parsing with a conversion-service fallback
- conversion: Conversion service contract and session lease
- fields: Independent heuristic field extractors
"""

from .attachments import AttachmentTextExtractor, is_application_form
from .conversion import (
    ConversionService,
    ConversionSessionLease,
    ConversionStatus,
    ConversionTicket,
)
from .fields import ExtractedFields, FieldExtractor

__all__ = [
    "AttachmentTextExtractor",
    "is_application_form",
    "ConversionService",
    "ConversionSessionLease",
    "ConversionStatus",
    "ConversionTicket",
    "ExtractedFields",
    "FieldExtractor",
]
