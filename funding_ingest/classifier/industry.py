"""
Industry taxonomy pass.

Tiers, strongest first:
1. Domain keywords in title/description
2. Generic keywords (need several matches, or one plus ministry context)
3. Ministry default category
4. Agency default category
5. GENERAL fallback

A lower tier is consulted only when every higher tier produced nothing,
so a specific domain keyword always beats an agency's usual category.
"""

from typing import Optional

import structlog

from ..core.models import ClassificationResult, Confidence, IndustryCategory
from .rules import AGENCY, DOMAIN, GENERIC, MINISTRY, ClassificationRule, RuleSet

logger = structlog.get_logger(__name__)


def _pick_winner(
    matched: list[tuple[int, ClassificationRule]],
) -> tuple[IndustryCategory, list[str]]:
    """
    Choose the winning category among matched rules of one tier.

    Ordering: highest rule priority, then most distinct keywords, then the
    earliest rule in evaluation order.

    Args:
        matched: (rule index, rule) pairs

    Returns:
        (category, keywords matched for that category)
    """
    by_category: dict[IndustryCategory, dict] = {}
    for index, rule in matched:
        entry = by_category.setdefault(
            rule.category, {"priority": rule.priority, "keywords": [], "first": index}
        )
        entry["priority"] = max(entry["priority"], rule.priority)
        entry["first"] = min(entry["first"], index)
        if rule.keyword not in entry["keywords"]:
            entry["keywords"].append(rule.keyword)

    category, entry = max(
        by_category.items(),
        key=lambda item: (item[1]["priority"], len(item[1]["keywords"]), -item[1]["first"]),
    )
    return category, entry["keywords"]


class IndustryClassifier:
    """
    Rule-driven industry classifier.

    Never returns a null category: unmatched programs fall back to GENERAL
    with LOW confidence.
    """

    def __init__(self, rule_set: RuleSet):
        self.rule_set = rule_set

    def _is_cross_domain(self, agency: Optional[str]) -> bool:
        return bool(agency) and any(name in agency for name in self.rule_set.cross_domain_agencies)

    def classify(
        self,
        title: str,
        description: Optional[str] = None,
        ministry: Optional[str] = None,
        agency: Optional[str] = None,
    ) -> ClassificationResult:
        """
        Classify a program into an industry category.

        Args:
            title: Announcement title
            description: Detail-page description text
            ministry: Announcing ministry (부처명)
            agency: Managing agency (전문기관)

        Returns:
            ClassificationResult
        """
        text = f"{title or ''}\n{description or ''}"
        targets = {"text": text, MINISTRY: ministry, AGENCY: agency}

        matched: dict[str, list[tuple[int, ClassificationRule]]] = {
            DOMAIN: [], GENERIC: [], MINISTRY: [], AGENCY: [],
        }
        for index, rule in enumerate(self.rule_set.rules):
            if rule.matches(targets.get(rule.target)):
                matched[rule.kind].append((index, rule))

        ministry_categories = [rule.category for _, rule in matched[MINISTRY]]
        agency_categories = [rule.category for _, rule in matched[AGENCY]]

        if matched[DOMAIN]:
            category, keywords = _pick_winner(matched[DOMAIN])
            confidence = Confidence.HIGH if len(keywords) >= 2 else Confidence.MEDIUM
            if confidence == Confidence.MEDIUM and category in ministry_categories + agency_categories:
                confidence = Confidence.HIGH

            # A specialized agency that disagrees is worth a human look, but
            # the keyword evidence still decides the category.
            review = bool(agency_categories) and not self._is_cross_domain(agency) \
                and category not in agency_categories

            result = ClassificationResult(
                category=category,
                confidence=confidence,
                matched_keywords=keywords,
                source=DOMAIN,
                manual_review_required=review,
            )
            logger.debug("industry_classified", category=category.value, source=DOMAIN, keywords=keywords)
            return result

        if matched[GENERIC]:
            category, keywords = _pick_winner(matched[GENERIC])
            if len(keywords) >= self.rule_set.min_generic_matches or category in ministry_categories:
                logger.debug("industry_classified", category=category.value, source=GENERIC, keywords=keywords)
                return ClassificationResult(
                    category=category,
                    confidence=Confidence.MEDIUM,
                    matched_keywords=keywords,
                    source=GENERIC,
                )

        for kind in (MINISTRY, AGENCY):
            if matched[kind]:
                category, keywords = _pick_winner(matched[kind])
                logger.debug("industry_classified", category=category.value, source=kind)
                return ClassificationResult(
                    category=category,
                    confidence=Confidence.LOW,
                    matched_keywords=keywords,
                    source=kind,
                )

        return ClassificationResult()
