"""
Normalization utilities for Korean announcement text.

Handles:
- Korean date formats (2024년 1월 15일, 2024.01.15, 2024-01-15, 2024/01/15)
- Korean currency amounts (5억원, 3억 5천만원, 1,500만원, 50,000,000원)
- Text sanitization and HTML-to-text conversion
"""

import re
import unicodedata
from datetime import date
from typing import Optional

import structlog
from bs4 import BeautifulSoup

logger = structlog.get_logger(__name__)


# Korean magnitude units, longest first so "천만" wins over "천"
KOREAN_UNITS = {
    "조": 1_000_000_000_000,
    "억": 100_000_000,
    "천만": 10_000_000,
    "백만": 1_000_000,
    "십만": 100_000,
    "만": 10_000,
    "천": 1_000,
}

_NUMBER = r"\d[\d,]*(?:\.\d+)?"
_UNIT = r"(?:조|억|천만|백만|십만|만|천)"

# Currency expressions. A trailing 원 is required unless the amount is in 억/조,
# which are never used for anything but money in announcements.
AMOUNT_PATTERN = re.compile(
    rf"₩\s*{_NUMBER}"
    rf"|(?:{_NUMBER}\s*{_UNIT}\s*)+(?:{_NUMBER}\s*)?원"
    rf"|{_NUMBER}\s*원"
    rf"|{_NUMBER}\s*(?:조|억)(?:\s*{_NUMBER}\s*(?:천만|백만|만))?"
)

_AMOUNT_TOKEN = re.compile(rf"(\d+(?:\.\d+)?)\s*({_UNIT})?")

DATE_PATTERNS = [
    # 2024년 1월 15일
    re.compile(r"(\d{4})\s*년\s*(\d{1,2})\s*월\s*(\d{1,2})\s*일"),
    # 2024.01.15 / 2024-01-15 / 2024/01/15 (optionally "2024. 1. 15.")
    re.compile(r"(\d{4})\s*[.\-/]\s*(\d{1,2})\s*[.\-/]\s*(\d{1,2})(?!\d)"),
]

YEAR_MONTH_PATTERNS = [
    re.compile(r"(\d{4})\s*년\s*(\d{1,2})\s*월(?!\s*\d{1,2}\s*일)"),
    re.compile(r"(\d{4})\s*[.\-/]\s*(\d{1,2})(?!\s*[.\-/]?\s*\d)"),
]

# C0/C1 control characters except tab and newline, plus the replacement char
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\ufffd]")


def _valid_year(year: int) -> bool:
    return 1990 <= year <= 2100


def parse_korean_date(text: str) -> Optional[date]:
    """
    Parse the first full Korean date in text.

    Supported formats:
    - "2024년 1월 15일"
    - "2024.01.15", "2024. 1. 15."
    - "2024-01-15"
    - "2024/01/15"

    Args:
        text: String containing a date

    Returns:
        date object or None if no valid date was found
    """
    if not text:
        return None

    for pattern in DATE_PATTERNS:
        for match in pattern.finditer(text):
            year, month, day = (int(g) for g in match.groups())
            if not _valid_year(year):
                continue
            try:
                return date(year, month, day)
            except ValueError as e:
                logger.debug("invalid_date", text=match.group(0), error=str(e))

    return None


def parse_korean_year_month(text: str) -> Optional[tuple[int, int]]:
    """
    Parse a year-month expression without a day ("2024년 3월", "2024.03").

    Returns:
        (year, month) tuple or None
    """
    if not text:
        return None

    for pattern in YEAR_MONTH_PATTERNS:
        for match in pattern.finditer(text):
            year, month = int(match.group(1)), int(match.group(2))
            if _valid_year(year) and 1 <= month <= 12:
                return year, month

    return None


def parse_korean_amount(text: str) -> Optional[int]:
    """
    Parse a Korean currency amount into whole won.

    Supported formats:
    - "5억원" -> 500000000
    - "3억 5천만원" -> 350000000
    - "1,500만원" -> 15000000
    - "500백만원" -> 500000000
    - "50,000,000원" -> 50000000
    - "0원" -> 0

    Args:
        text: String containing a single currency expression

    Returns:
        Integer amount or None if no number was found
    """
    if not text:
        return None

    cleaned = text.replace(",", "").replace("\u20a9", "").replace("\u00a0", " ")
    tokens = _AMOUNT_TOKEN.findall(cleaned)
    if not tokens:
        return None

    total = 0.0
    for number, unit in tokens:
        try:
            value = float(number)
        except ValueError:
            return None
        total += value * KOREAN_UNITS.get(unit, 1)

    return int(round(total))


def find_amounts(text: str) -> list[tuple[int, int, int]]:
    """
    Find every currency expression in text.

    Returns:
        List of (start, end, amount) tuples in text order
    """
    results = []
    for match in AMOUNT_PATTERN.finditer(text or ""):
        amount = parse_korean_amount(match.group(0))
        if amount is not None:
            results.append((match.start(), match.end(), amount))
    return results


def normalize_whitespace(text: str) -> str:
    """Collapse runs of spaces/tabs and blank lines."""
    if not text:
        return ""
    cleaned = re.sub(r"[ \t\u00a0\u3000]+", " ", text)
    cleaned = re.sub(r" *\n[ \n]*", "\n", cleaned)
    return cleaned.strip()


def normalize_title(title: str) -> str:
    """
    Normalize announcement title for hashing and display.

    - NFC-normalizes Hangul
    - Removes extra whitespace
    """
    if not title:
        return ""
    normalized = unicodedata.normalize("NFC", title)
    return re.sub(r"\s+", " ", normalized).strip()


def sanitize_text(text: Optional[str]) -> str:
    """
    Strip characters that break storage or downstream regexes.

    Removes NUL and other control characters and U+FFFD left behind by
    lossy decoding, then normalizes whitespace.
    """
    if not text:
        return ""
    cleaned = unicodedata.normalize("NFC", text)
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    return normalize_whitespace(cleaned)


def html_to_text(html: Optional[str]) -> str:
    """
    Convert detail-page HTML into plain text.

    Script, style and noscript blocks are dropped; entities are decoded by
    the parser.
    """
    if not html:
        return ""

    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()

    return sanitize_text(soup.get_text("\n"))
