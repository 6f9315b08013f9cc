"""
Announcement-type gate.

Separates R&D funding calls from demand surveys, events and notices so
that only the former reach field extraction. R&D phrasing in the title
wins over anything found in the body; a false negative hides a real call.
"""

import re
from typing import Optional

from ..core.models import AnnouncementType

RD_PROJECT_PATTERNS = [
    re.compile(r"연구과제"),
    re.compile(r"과제\s*공고"),
    re.compile(r"과제선정"),
    re.compile(r"신규\s*과제"),
    re.compile(r"연구개발"),
    re.compile(r"r&d"),
    re.compile(r"\brd\b"),
    re.compile(r"지원사업"),
    re.compile(r"기술개발"),
    re.compile(r"개발과제"),
    re.compile(r"연구지원"),
    re.compile(r"사업화\s*지원"),
    re.compile(r"프로젝트.*공고"),
    re.compile(r"연구.*사업"),
    re.compile(r"과학.*연구"),
    re.compile(r"신규\s*지원"),
    re.compile(r"연구센터.*조성"),
    re.compile(r"창업기업.*지원"),
]

# Checked against the body only, before the combined R&D check
BODY_EXCLUSIONS = [
    (re.compile(r"인력.*파견|파견.*인력"), AnnouncementType.NOTICE),
    (re.compile(r"(우수성과|시상|수상|포상).*(모집|선정)"), AnnouncementType.EVENT),
    (re.compile(r"(연합|컨소시엄).*(구성원|참여기업|참여기관).*(모집|선정)"), AnnouncementType.NOTICE),
    (re.compile(r"추천기업.*모집|추천.*모집"), AnnouncementType.NOTICE),
]

SURVEY_PATTERNS = [
    re.compile(r"수요조사"),
    re.compile(r"설문"),
    re.compile(r"의견수렴"),
    re.compile(r"참여기업\s*모집"),
    re.compile(r"기술수요"),
]

EVENT_PATTERNS = [
    re.compile(r"설명회"),
    re.compile(r"세미나"),
    re.compile(r"행사"),
    re.compile(r"워크샵"),
    re.compile(r"컨퍼런스"),
    re.compile(r"간담회"),
    re.compile(r"발표회"),
]

NOTICE_PATTERNS = [
    re.compile(r"^공지"),
    re.compile(r"시행계획\s*(?:안내|공고)"),
    re.compile(r"추진계획"),
    re.compile(r"실행계획"),
    re.compile(r"과제\s*추진"),
    re.compile(r"변경사항"),
    re.compile(r"일정변경"),
    re.compile(r"연기"),
    re.compile(r"온라인.*시스템.*안내"),
    re.compile(r"제출.*시스템"),
    re.compile(r"입찰.*공고"),
    re.compile(r"용역.*입찰"),
]

STRONG_RD = re.compile(r"연구과제|과제공고|r&d\s*지원사업|기술개발\s*지원")


def classify_announcement(title: str, body: Optional[str] = None) -> AnnouncementType:
    """
    Classify an announcement by type.

    Args:
        title: Announcement title from the listing page
        body: Combined detail and attachment text

    Returns:
        AnnouncementType (R_D_PROJECT when nothing else applies)
    """
    title_lower = (title or "").lower()
    body_lower = (body or "").lower()

    if any(p.search(title_lower) for p in RD_PROJECT_PATTERNS):
        return AnnouncementType.R_D_PROJECT

    for pattern, kind in BODY_EXCLUSIONS:
        if pattern.search(body_lower):
            return kind

    combined = f"{title_lower} {body_lower}"
    if any(p.search(combined) for p in RD_PROJECT_PATTERNS):
        return AnnouncementType.R_D_PROJECT

    if any(p.search(combined) for p in SURVEY_PATTERNS):
        return AnnouncementType.SURVEY

    if any(p.search(combined) for p in EVENT_PATTERNS):
        return AnnouncementType.EVENT

    if title_lower.strip().endswith("안내") and not STRONG_RD.search(combined):
        return AnnouncementType.NOTICE

    if any(p.search(combined) for p in NOTICE_PATTERNS):
        return AnnouncementType.NOTICE

    return AnnouncementType.R_D_PROJECT
