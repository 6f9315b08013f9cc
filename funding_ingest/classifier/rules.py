"""
Classification rule tables.

A rule set is an explicit ordered list of ClassificationRule objects,
sorted by descending priority with declaration order as the final
tie-break, so evaluation order is deterministic and testable.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from ..core.models import IndustryCategory

# Rule kinds, strongest first
DOMAIN = "domain"
GENERIC = "generic"
MINISTRY = "ministry"
AGENCY = "agency"

DEFAULT_PRIORITIES = {
    DOMAIN: 300,
    GENERIC: 200,
    MINISTRY: 100,
    AGENCY: 50,
}

_ASCII_KEYWORD = re.compile(r"^[A-Za-z0-9\-]+$")


def keyword_pattern(keyword: str) -> re.Pattern:
    """
    Compile a keyword into a search pattern.

    ASCII keywords ("AI", "5G") need word boundaries so they do not match
    inside longer Latin words; Hangul keywords match as substrings.
    """
    escaped = re.escape(keyword)
    if _ASCII_KEYWORD.match(keyword):
        return re.compile(rf"(?<![A-Za-z0-9]){escaped}(?![A-Za-z0-9])")
    return re.compile(escaped)


@dataclass(frozen=True)
class ClassificationRule:
    """
    One keyword-to-category mapping.

    ``target`` selects what the pattern is matched against: the announcement
    text, the ministry name or the agency name.
    """
    pattern: re.Pattern
    category: IndustryCategory
    priority: int
    kind: str = DOMAIN
    keyword: str = ""
    target: str = "text"  # text, ministry, agency

    def matches(self, text: Optional[str]) -> bool:
        return bool(text) and self.pattern.search(text) is not None


@dataclass
class RuleSet:
    """Industry rules plus the regional marker tables."""
    rules: list[ClassificationRule] = field(default_factory=list)
    cross_domain_agencies: list[str] = field(default_factory=list)
    regional_keywords: list[str] = field(default_factory=list)
    regional_patterns: list[re.Pattern] = field(default_factory=list)
    min_generic_matches: int = 2

    def __post_init__(self):
        self.rules = sort_rules(self.rules)

    def of_kind(self, kind: str) -> list[ClassificationRule]:
        return [r for r in self.rules if r.kind == kind]

    def __len__(self) -> int:
        return len(self.rules)


def sort_rules(rules: list[ClassificationRule]) -> list[ClassificationRule]:
    """Order by descending priority; stable, so declaration order breaks ties."""
    return sorted(rules, key=lambda r: -r.priority)


def build_rule_set(config: dict) -> RuleSet:
    """
    Build a RuleSet from the parsed taxonomy mapping.

    Args:
        config: Parsed taxonomy.yml

    Returns:
        RuleSet

    Raises:
        ValueError: On an unknown category name
    """
    priorities = {**DEFAULT_PRIORITIES, **(config.get("priorities") or {})}
    overrides = config.get("priority_overrides") or {}
    rules: list[ClassificationRule] = []

    def category_of(name: str) -> IndustryCategory:
        try:
            return IndustryCategory(str(name).upper())
        except ValueError:
            raise ValueError(f"Unknown industry category: {name}") from None

    for kind in (DOMAIN, GENERIC):
        for category_name, keywords in (config.get(f"{kind}_keywords") or {}).items():
            category = category_of(category_name)
            for keyword in keywords or []:
                keyword = str(keyword)
                rules.append(ClassificationRule(
                    pattern=keyword_pattern(keyword),
                    category=category,
                    priority=int(overrides.get(keyword, priorities[kind])),
                    kind=kind,
                    keyword=keyword,
                ))

    for ministry, categories in (config.get("ministry_defaults") or {}).items():
        # Earlier categories of a ministry rank ahead of later ones
        for offset, category_name in enumerate(categories or []):
            rules.append(ClassificationRule(
                pattern=re.compile(re.escape(str(ministry))),
                category=category_of(category_name),
                priority=int(priorities[MINISTRY]) - offset,
                kind=MINISTRY,
                keyword=str(ministry),
                target=MINISTRY,
            ))

    for agency, category_name in (config.get("agency_defaults") or {}).items():
        rules.append(ClassificationRule(
            pattern=keyword_pattern(str(agency)),
            category=category_of(category_name),
            priority=int(priorities[AGENCY]),
            kind=AGENCY,
            keyword=str(agency),
            target=AGENCY,
        ))

    regional = config.get("regional") or {}
    return RuleSet(
        rules=rules,
        cross_domain_agencies=[str(a) for a in config.get("cross_domain_agencies") or []],
        regional_keywords=[str(k) for k in regional.get("keywords") or []],
        regional_patterns=[re.compile(p) for p in regional.get("patterns") or []],
        min_generic_matches=int(config.get("min_generic_matches", 2)),
    )
