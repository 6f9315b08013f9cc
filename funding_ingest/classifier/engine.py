"""
Classifier facade combining the industry and regional passes.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from ..core.models import AnnouncementType, ClassificationResult, RegionalResult
from .announcement import classify_announcement
from .industry import IndustryClassifier
from .regional import RegionalClassifier
from .rules import RuleSet

logger = structlog.get_logger(__name__)


@dataclass
class Classification:
    """Both passes over one announcement."""
    industry: ClassificationResult
    regional: RegionalResult


class Classifier:
    """
    Two orthogonal passes over (title, ministry, agency, description).

    Neither pass raises; on internal failure the safe defaults are returned
    (GENERAL/LOW and an unflagged regional result).
    """

    def __init__(self, rule_set: RuleSet):
        self.industry = IndustryClassifier(rule_set)
        self.regional = RegionalClassifier(rule_set.regional_keywords, rule_set.regional_patterns)

    @classmethod
    def from_config(cls, taxonomy_path: Optional[str] = None) -> "Classifier":
        from ..config.loader import load_rule_set

        return cls(load_rule_set(taxonomy_path))

    def classify(
        self,
        title: str,
        description: Optional[str] = None,
        ministry: Optional[str] = None,
        agency: Optional[str] = None,
    ) -> Classification:
        try:
            industry = self.industry.classify(title, description, ministry, agency)
        except Exception as e:
            logger.warning("industry_classification_failed", title=(title or "")[:50], error=str(e))
            industry = ClassificationResult()

        try:
            regional = self.regional.detect(title, description)
        except Exception as e:
            logger.warning("regional_detection_failed", title=(title or "")[:50], error=str(e))
            regional = RegionalResult()

        return Classification(industry=industry, regional=regional)

    def announcement_type(self, title: str, body: Optional[str] = None) -> AnnouncementType:
        return classify_announcement(title, body)
