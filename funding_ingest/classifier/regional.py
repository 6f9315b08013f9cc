"""
Region-exclusivity pass.

Independent of the industry pass: it only sets the regional flag and the
matched markers, never the category.
"""

import re
from typing import Optional

import structlog

from ..core.models import RegionalResult

logger = structlog.get_logger(__name__)


class RegionalClassifier:
    """Detects local-venture, region-specialized and region-led programs."""

    def __init__(self, keywords: list[str], patterns: Optional[list[re.Pattern]] = None):
        self.keywords = list(keywords)
        self.patterns = list(patterns or [])

    def detect(self, title: str, description: Optional[str] = None) -> RegionalResult:
        """
        Scan title and description for region-restriction markers.

        Args:
            title: Announcement title
            description: Detail-page description

        Returns:
            RegionalResult with every matched marker in table order
        """
        text = f"{title or ''}\n{description or ''}"
        found: list[str] = []

        for keyword in self.keywords:
            if keyword in text and keyword not in found:
                found.append(keyword)

        for pattern in self.patterns:
            for match in pattern.finditer(text):
                marker = re.sub(r"\s+", " ", match.group(0)).strip()
                if marker not in found:
                    found.append(marker)

        if found:
            logger.debug("regional_markers_found", markers=found)

        return RegionalResult(requires_regional_filter=bool(found), keywords=found)
