"""
Classification layer.

Components:
- rules: ClassificationRule tables built from taxonomy.yml
- industry: Tiered industry taxonomy pass
- regional: Region-exclusivity pass
- announcement: R&D vs survey/event/notice gate
- engine: Classifier facade
"""

from .announcement import classify_announcement
from .engine import Classification, Classifier
from .industry import IndustryClassifier
from .regional import RegionalClassifier
from .rules import ClassificationRule, RuleSet, build_rule_set

__all__ = [
    "classify_announcement",
    "Classification",
    "Classifier",
    "IndustryClassifier",
    "RegionalClassifier",
    "ClassificationRule",
    "RuleSet",
    "build_rule_set",
]
