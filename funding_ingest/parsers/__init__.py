"""
Detail page parsing.

Turns a fetched announcement page into DetailPageData.
"""

from .detail_page import extract_attachments, find_labelled_value, parse_detail_page

__all__ = [
    "extract_attachments",
    "find_labelled_value",
    "parse_detail_page",
]
