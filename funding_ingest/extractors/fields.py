"""
Heuristic field extractors for Korean funding announcements.

Each extractor takes the combined detail + attachment text and returns a
FieldResult tagged EXACT or INFERRED. Extractors are independent: one
failing never stops another, and none of them raises.

Handles:
- Budget amounts near anchor phrases, with Korean magnitude units
- TRL ranges, explicit or inferred from research-stage wording
- Deadline / published / application-start dates
- Business structures, certifications, target applicant types
"""

import calendar
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Optional

import structlog

from ..core.models import (
    BusinessStructure,
    Confidence,
    FieldResult,
    TargetType,
    TrlRange,
)
from ..core.normalizer import (
    DATE_PATTERNS,
    find_amounts,
    parse_korean_date,
    parse_korean_year_month,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# Budget
# =============================================================================

# (anchor, strength); stronger anchors are consulted first
BUDGET_ANCHORS = [
    (re.compile(r"정부\s*출연금|정부\s*지원금|정부\s*출연|국고\s*보조금"), 5),
    (re.compile(r"지원\s*규모|지원\s*예산|지원\s*금액|공고\s*금액|사업\s*예산"), 4),
    (re.compile(r"총\s*사업비|총\s*연구비|연구개발비|연구비"), 3),
    (re.compile(r"과제당|최대"), 2),
    (re.compile(r"금\s*액"), 1),
]

BUDGET_WINDOW_AFTER = 120
BUDGET_WINDOW_BEFORE = 30


def extract_budget(text: str) -> FieldResult[int]:
    """
    Extract the announced budget in won.

    Among currency amounts near the strongest anchor phrase present, the
    one closest to the anchor wins. Amounts with no anchor nearby are
    ignored, so text without budget wording yields an absent result.

    Args:
        text: Combined announcement text

    Returns:
        FieldResult with the amount in won
    """
    amounts = find_amounts(text)
    if not amounts:
        return FieldResult.absent()

    for strength in sorted({s for _, s in BUDGET_ANCHORS}, reverse=True):
        best: Optional[tuple[int, int, int, str]] = None  # (distance, position, amount, snippet)
        for pattern, anchor_strength in BUDGET_ANCHORS:
            if anchor_strength != strength:
                continue
            for anchor in pattern.finditer(text):
                for start, end, amount in amounts:
                    if start >= anchor.end():
                        distance = start - anchor.end()
                        if distance > BUDGET_WINDOW_AFTER:
                            continue
                    elif end <= anchor.start():
                        distance = anchor.start() - end
                        if distance > BUDGET_WINDOW_BEFORE:
                            continue
                    else:
                        continue
                    candidate = (distance, start, amount, text[min(anchor.start(), start):max(anchor.end(), end)])
                    if best is None or candidate[:2] < best[:2]:
                        best = candidate
        if best is not None:
            return FieldResult.exact(best[2], matched_text=best[3])

    return FieldResult.absent()


# =============================================================================
# Technology readiness level
# =============================================================================

EXPLICIT_TRL = re.compile(
    r"(?:TRL|기술\s*성숙도|기술\s*준비\s*수준)(?:\s*[(（][^)）]{0,12}[)）])?\s*[:：]?\s*(\d)\s*(?:단계)?\s*"
    r"(?:[-~∼〜–—]|에서|부터)\s*(?:TRL\s*)?(\d)",
    re.IGNORECASE,
)
MINIMUM_TRL = re.compile(
    r"(?:TRL|기술\s*성숙도)(?:\s*[(（][^)）]{0,12}[)）])?\s*[:：]?\s*(\d)\s*(?:단계)?\s*이상",
    re.IGNORECASE,
)

# (range, patterns) per research stage
STAGE_KEYWORDS = [
    ((1, 3), [r"기초\s*연구", r"원천\s*기술", r"이론\s*연구", r"기본\s*원리", r"개념\s*정립", r"아이디어\s*검증"]),
    ((4, 6), [r"응용\s*연구", r"개발\s*연구", r"시제품", r"프로토타입", r"실험실\s*검증", r"파일럿", r"개념\s*실증", r"\bPOC\b"]),
    ((7, 9), [r"실용화", r"사업화", r"상용화", r"시장\s*진입", r"양산", r"제품화", r"(?<!개념)(?<!개념\s)실증"]),
]
_STAGE_PATTERNS = [
    (stage, [re.compile(p, re.IGNORECASE) for p in patterns]) for stage, patterns in STAGE_KEYWORDS
]


def _valid_trl(low: int, high: int) -> bool:
    return 1 <= low <= high <= 9


def extract_trl(text: str) -> FieldResult[TrlRange]:
    """
    Extract the technology readiness range.

    An explicit "TRL n~m" statement wins. Otherwise research-stage wording
    yields a coarse inferred range (basic research 1-3, applied 4-6,
    commercialization 7-9, spanning every stage mentioned). No signal at
    all yields an absent result rather than a default midpoint.

    Args:
        text: Combined announcement text

    Returns:
        FieldResult with a TrlRange
    """
    for match in EXPLICIT_TRL.finditer(text):
        low, high = int(match.group(1)), int(match.group(2))
        if _valid_trl(low, high):
            return FieldResult.exact(TrlRange(low, high), matched_text=match.group(0))

    for match in MINIMUM_TRL.finditer(text):
        low = int(match.group(1))
        if _valid_trl(low, 9):
            return FieldResult.exact(TrlRange(low, 9), matched_text=match.group(0))

    lows: list[int] = []
    highs: list[int] = []
    hits: list[str] = []
    for (low, high), patterns in _STAGE_PATTERNS:
        for pattern in patterns:
            match = pattern.search(text)
            if match:
                lows.append(low)
                highs.append(high)
                hits.append(match.group(0))
                break

    if hits:
        return FieldResult.inferred(TrlRange(min(lows), max(highs)), matched_text=", ".join(hits))

    return FieldResult.absent()


# =============================================================================
# Dates
# =============================================================================

DEADLINE_ANCHOR = re.compile(
    r"(?:신청|지원|모집|접수|제출)?\s*마감\s*(?:일시|일자|일)?|(?:신청|접수|제출)\s*기한"
)
PERIOD_ANCHOR = re.compile(r"(?:접수|신청|모집|공모|제출)\s*기간")
PUBLISHED_ANCHOR = re.compile(r"공고\s*일(?:자)?|게시\s*일(?:자)?")
START_ANCHOR = re.compile(r"(?:접수|신청)\s*(?:시작|개시)\s*일|(?:접수|신청|모집)\s*일(?!정|자리)")
RELATIVE_DEADLINE = re.compile(r"공고\s*일\s*(?:로)?\s*부터\s*(\d{1,3})\s*일")
RANGE_SEPARATOR = re.compile(r"[~∼〜]|부터|까지")

DATE_WINDOW = 60
PERIOD_WINDOW = 100


def _segments(anchor: re.Pattern, text: str, window: int):
    for match in anchor.finditer(text):
        yield match.group(0), text[match.end():match.end() + window]


def _dates_in(segment: str) -> list[tuple[int, date]]:
    """Every full date in a segment, in text order."""
    found: dict[int, date] = {}
    for pattern in DATE_PATTERNS:
        for match in pattern.finditer(segment):
            parsed = parse_korean_date(match.group(0))
            if parsed and match.start() not in found:
                found[match.start()] = parsed
    return sorted(found.items())


def _period_bounds(text: str) -> tuple[Optional[tuple[date, str]], Optional[tuple[date, str]]]:
    """
    Find the first application period "a ~ b".

    Returns:
        (start, end) each as (date, matched snippet) or None
    """
    for label, segment in _segments(PERIOD_ANCHOR, text, PERIOD_WINDOW):
        dates = _dates_in(segment)
        if len(dates) >= 2:
            snippet = f"{label}{segment[:dates[1][0] + 12]}"
            return (dates[0][1], snippet), (dates[1][1], snippet)
        if len(dates) == 1:
            position, value = dates[0]
            snippet = f"{label}{segment[:position + 12]}"
            if RANGE_SEPARATOR.search(segment[:position]):
                return None, (value, snippet)
            return (value, snippet), None
    return None, None


def _last_day(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def extract_published_at(text: str, today: Optional[date] = None) -> FieldResult[date]:
    """
    Extract the announcement publication date.

    A publication date after ``today`` is rejected as a mis-parse.
    """
    today = today or date.today()

    for label, segment in _segments(PUBLISHED_ANCHOR, text, DATE_WINDOW):
        for _, parsed in _dates_in(segment)[:1]:
            if parsed <= today:
                return FieldResult.exact(parsed, matched_text=f"{label}{segment[:20]}")

    for label, segment in _segments(PUBLISHED_ANCHOR, text, DATE_WINDOW):
        year_month = parse_korean_year_month(segment)
        if year_month:
            parsed = date(year_month[0], year_month[1], 1)
            if parsed <= today:
                return FieldResult.inferred(parsed, matched_text=f"{label}{segment[:20]}")

    return FieldResult.absent()


def extract_deadline(text: str, today: Optional[date] = None) -> FieldResult[date]:
    """
    Extract the application deadline.

    Formats are tried in order, first success wins:
    1. Full date after a deadline phrase, or the end of an application period
    2. Year-month after a deadline phrase (last day of month, inferred)
    3. "공고일로부터 N일" relative to the published date (inferred)

    Args:
        text: Combined announcement text
        today: Reference date for the published-date sanity check

    Returns:
        FieldResult with the deadline date
    """
    for label, segment in _segments(DEADLINE_ANCHOR, text, DATE_WINDOW):
        dates = _dates_in(segment)
        if dates:
            return FieldResult.exact(dates[0][1], matched_text=f"{label}{segment[:dates[0][0] + 12]}")

    _, end = _period_bounds(text)
    if end:
        return FieldResult.exact(end[0], matched_text=end[1])

    for label, segment in _segments(DEADLINE_ANCHOR, text, DATE_WINDOW):
        year_month = parse_korean_year_month(segment)
        if year_month:
            return FieldResult.inferred(_last_day(*year_month), matched_text=f"{label}{segment[:20]}")

    relative = RELATIVE_DEADLINE.search(text)
    if relative:
        published = extract_published_at(text, today)
        if published.found:
            deadline = published.value + timedelta(days=int(relative.group(1)))
            return FieldResult.inferred(deadline, matched_text=relative.group(0))

    return FieldResult.absent()


def extract_application_start(text: str) -> FieldResult[date]:
    """Extract the first day applications are accepted."""
    for label, segment in _segments(START_ANCHOR, text, DATE_WINDOW):
        dates = _dates_in(segment)
        if dates:
            return FieldResult.exact(dates[0][1], matched_text=f"{label}{segment[:dates[0][0] + 12]}")

    start, _ = _period_bounds(text)
    if start:
        return FieldResult.exact(start[0], matched_text=start[1])

    return FieldResult.absent()


# =============================================================================
# Eligibility
# =============================================================================

EXCLUDE_SOLE_PROPRIETOR = ["개인사업자 제외", "개인사업자 불가", "개인사업자는 제외", "법인만 가능", "개인 제외"]
SOLE_PROPRIETOR_ALLOWED = ["개인사업자 가능", "개인 가능", "법인 및 개인", "개인/법인", "법인/개인", "개인사업자 포함", "개인사업자"]
CORPORATION_ONLY = ["법인사업자만", "법인사업자", "법인만", "법인에 한함", "법인기업", "법인 한정", "주식회사", "유한회사"]

CERTIFICATIONS = [
    ("VENTURE", re.compile(r"(?<!중소)벤처\s*기업(?!부)")),
    ("INNO_BIZ", re.compile(r"이노비즈|INNO-?BIZ", re.IGNORECASE)),
    ("MAIN_BIZ", re.compile(r"메인비즈|MAIN-?BIZ|경영혁신형\s*(?:중소)?기업", re.IGNORECASE)),
    ("CORPORATE_RESEARCH_LAB", re.compile(r"기업\s*부설\s*연구소")),
    ("RND_DEPARTMENT", re.compile(r"연구개발\s*전담\s*부서")),
]

TARGET_TYPES = [
    (TargetType.COMPANY, re.compile(r"중소기업|중견기업|기업체|스타트업|창업기업|(?<!중소)벤처기업")),
    (TargetType.RESEARCH_INSTITUTE, re.compile(r"연구기관|출연연|정부출연연구|연구소")),
    (TargetType.UNIVERSITY, re.compile(r"대학|산학협력단")),
    (TargetType.PUBLIC_INSTITUTION, re.compile(r"공공기관|지방자치단체|지자체|공기업")),
]

SUBMISSION_SYSTEMS = [
    ("IRIS", re.compile(r"\bIRIS\b|범부처\s*통합\s*연구\s*지원\s*시스템|iris\.go\.kr", re.IGNORECASE)),
    ("SMTECH", re.compile(r"SMTECH|smtech\.go\.kr", re.IGNORECASE)),
    ("K-STARTUP", re.compile(r"K-?Startup|k-startup\.go\.kr", re.IGNORECASE)),
    ("EZBARO", re.compile(r"이지바로|ezbaro", re.IGNORECASE)),
    ("NTIS", re.compile(r"\bNTIS\b")),
]

RESEARCH_INSTITUTE_REQUIRED = [
    re.compile(r"대학.{0,40}?연구기관.{0,40}?의무.{0,20}?참여"),
    re.compile(r"연구기관.{0,40}?참여.{0,20}?필수"),
    re.compile(r"연구기관.{0,20}?의무"),
    re.compile(r"산학연.{0,20}?컨소시엄"),
    re.compile(r"협동\s*연구\s*기관"),
]
RESEARCH_INSTITUTE_MENTION = re.compile(r"연구기관|출연연|대학")


def extract_business_structures(text: str) -> FieldResult[list[BusinessStructure]]:
    """
    Extract allowed business structures.

    Exclusion wording beats everything; explicit sole-proprietor allowance
    beats incidental corporation wording such as "주식회사" in a contact
    block.
    """
    for phrase in EXCLUDE_SOLE_PROPRIETOR:
        if phrase in text:
            return FieldResult.exact([BusinessStructure.CORPORATION], matched_text=phrase)

    for phrase in SOLE_PROPRIETOR_ALLOWED:
        if phrase in text:
            return FieldResult.exact(
                [BusinessStructure.CORPORATION, BusinessStructure.SOLE_PROPRIETOR],
                matched_text=phrase,
            )

    for phrase in CORPORATION_ONLY:
        if phrase in text:
            return FieldResult.exact([BusinessStructure.CORPORATION], matched_text=phrase)

    return FieldResult.absent()


def _tag_matches(table: list[tuple[Any, re.Pattern]], text: str) -> tuple[list, list[str]]:
    tags, snippets = [], []
    for tag, pattern in table:
        match = pattern.search(text)
        if match and tag not in tags:
            tags.append(tag)
            snippets.append(match.group(0))
    return tags, snippets


def extract_certifications(text: str) -> FieldResult[list[str]]:
    """Every required certification mentioned, in table order."""
    tags, snippets = _tag_matches(CERTIFICATIONS, text)
    if not tags:
        return FieldResult.absent()
    return FieldResult.exact(tags, matched_text=", ".join(snippets))


def extract_target_types(text: str) -> FieldResult[list[TargetType]]:
    """Every applicant type mentioned, in enum order."""
    tags, snippets = _tag_matches(TARGET_TYPES, text)
    if not tags:
        return FieldResult.absent()
    return FieldResult.exact(tags, matched_text=", ".join(snippets))


def extract_submission_system(text: str) -> FieldResult[str]:
    tags, snippets = _tag_matches(SUBMISSION_SYSTEMS, text)
    if not tags:
        return FieldResult.absent()
    return FieldResult.exact(tags[0], matched_text=snippets[0])


def extract_research_institute_requirement(text: str) -> FieldResult[bool]:
    """Explicit mandatory research-institute participation."""
    for pattern in RESEARCH_INSTITUTE_REQUIRED:
        match = pattern.search(text)
        if match:
            return FieldResult.exact(True, matched_text=match.group(0))
    return FieldResult.absent()


def extract_research_institute_mention(text: str) -> FieldResult[bool]:
    """
    Research institutes or universities are mentioned as applicants.

    Inclusive and informational only: a mention never restricts
    eligibility to research institutes.
    """
    match = RESEARCH_INSTITUTE_MENTION.search(text)
    if match:
        return FieldResult.inferred(True, matched_text=match.group(0))
    return FieldResult.absent()


# =============================================================================
# Extractor family
# =============================================================================

ELIGIBILITY_TEXT_THRESHOLD = 1000


@dataclass
class ExtractedFields:
    """Results of every field extractor over one text."""
    budget: FieldResult[int] = field(default_factory=FieldResult.absent)
    trl: FieldResult[TrlRange] = field(default_factory=FieldResult.absent)
    deadline: FieldResult[date] = field(default_factory=FieldResult.absent)
    published_at: FieldResult[date] = field(default_factory=FieldResult.absent)
    application_start: FieldResult[date] = field(default_factory=FieldResult.absent)
    business_structures: FieldResult[list[BusinessStructure]] = field(default_factory=FieldResult.absent)
    certifications: FieldResult[list[str]] = field(default_factory=FieldResult.absent)
    target_types: FieldResult[list[TargetType]] = field(default_factory=FieldResult.absent)
    submission_system: FieldResult[str] = field(default_factory=FieldResult.absent)
    requires_research_institute: FieldResult[bool] = field(default_factory=FieldResult.absent)
    includes_research_institutes: FieldResult[bool] = field(default_factory=FieldResult.absent)
    text_length: int = 0

    def provenance(self) -> dict[str, str]:
        """Field name -> provenance value for every found field."""
        result = {}
        for name in FieldExtractor.EXTRACTORS:
            value: FieldResult = getattr(self, name)
            if value.found and value.provenance:
                result[name] = value.provenance.value
        return result

    @property
    def eligibility_confidence(self) -> Confidence:
        """
        HIGH when any eligibility signal was found, MEDIUM when the text is
        long enough that silence is meaningful, LOW otherwise.
        """
        if (
            self.certifications.found
            or self.business_structures.found
            or self.requires_research_institute.found
        ):
            return Confidence.HIGH
        if self.text_length > ELIGIBILITY_TEXT_THRESHOLD:
            return Confidence.MEDIUM
        return Confidence.LOW


class FieldExtractor:
    """
    Runs every field extractor over a text, isolating failures.

    Usage:
        fields = FieldExtractor().extract(combined_text, today=date.today())
        if fields.budget.found:
            ...
    """

    # Field name -> (extractor, needs reference date)
    EXTRACTORS: dict[str, tuple[Callable[..., FieldResult], bool]] = {
        "budget": (extract_budget, False),
        "trl": (extract_trl, False),
        "deadline": (extract_deadline, True),
        "published_at": (extract_published_at, True),
        "application_start": (extract_application_start, False),
        "business_structures": (extract_business_structures, False),
        "certifications": (extract_certifications, False),
        "target_types": (extract_target_types, False),
        "submission_system": (extract_submission_system, False),
        "requires_research_institute": (extract_research_institute_requirement, False),
        "includes_research_institutes": (extract_research_institute_mention, False),
    }

    def _run(self, name: str, func: Callable[..., FieldResult], *args) -> FieldResult:
        try:
            result = func(*args)
        except Exception as e:
            logger.warning("field_extraction_failed", field=name, error=str(e))
            return FieldResult.absent()

        logger.debug(
            "field_extracted",
            field=name,
            found=result.found,
            provenance=result.provenance.value if result.provenance else None,
        )
        return result

    def extract(self, text: Optional[str], today: Optional[date] = None) -> ExtractedFields:
        """
        Run every extractor.

        Args:
            text: Combined detail + attachment text
            today: Reference date (defaults to the current date)

        Returns:
            ExtractedFields; any subset of fields may be absent
        """
        text = text or ""
        today = today or date.today()
        results: dict[str, Any] = {}

        for name, (func, needs_today) in self.EXTRACTORS.items():
            args = (text, today) if needs_today else (text,)
            results[name] = self._run(name, func, *args)

        return ExtractedFields(text_length=len(text), **results)
