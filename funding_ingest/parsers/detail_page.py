"""
Announcement detail page parser.

Turns a fetched detail page into DetailPageData: title, ministry and
agency from labelled table cells, the body text of the main container,
and the attachment links.
"""

import re
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import unquote, urljoin, urlparse

import structlog
from bs4 import BeautifulSoup, Tag

from ..core.models import Attachment, DetailPageData
from ..core.normalizer import normalize_title, normalize_whitespace

logger = structlog.get_logger(__name__)


# Common selectors for finding main content
MAIN_SELECTORS = [
    ".view_cont",
    ".board_view",
    ".bbs_view",
    "#content",
    ".content",
    "main",
    "article",
]

ATTACHMENT_EXTENSIONS = [".hwp", ".hwpx", ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".zip", ".txt"]

# Download handlers that hide the file name in the link text
DOWNLOAD_HREF = re.compile(r"download|fileDown|file_down|atchFile|getFile", re.IGNORECASE)

MINISTRY_LABELS = ["부처명", "소관부처", "주관부처", "부처"]
AGENCY_LABELS = ["전문기관", "공고기관", "주관기관", "담당기관", "수행기관"]


def cleanup_navigation(soup: BeautifulSoup) -> None:
    """Remove navigation, footer and scripts from soup in place."""
    for elem in soup.select("nav, footer, script, style, header, aside, .gnb, .lnb, .sidebar, .menu"):
        elem.decompose()


def get_main_container(soup: BeautifulSoup) -> Tag:
    for selector in MAIN_SELECTORS:
        container = soup.select_one(selector)
        if container:
            return container
    return soup.body or soup


def extract_page_title(soup: BeautifulSoup) -> Optional[str]:
    """Extract page title from h1/h2 or the title tag."""
    for tag in ("h1", "h2"):
        heading = soup.find(tag)
        if heading and heading.get_text(strip=True):
            return heading.get_text(" ", strip=True)
    if soup.title:
        return soup.title.get_text(strip=True)
    return None


def find_labelled_value(soup: BeautifulSoup, labels: list[str]) -> Optional[str]:
    """
    Value of the first th/td or dt/dd pair whose label matches.

    Args:
        soup: Parsed HTML
        labels: Label texts in preference order

    Returns:
        Cell text or None
    """
    cells = soup.find_all(["th", "dt"])
    for label in labels:
        for cell in cells:
            text = re.sub(r"\s+", "", cell.get_text())
            if text != label:
                continue
            value = cell.find_next_sibling(["td", "dd"])
            if value:
                value_text = normalize_whitespace(value.get_text(" ", strip=True))
                if value_text:
                    return value_text
    return None


def _filename_for(link: Tag, url: str) -> str:
    text = normalize_whitespace(link.get_text(" ", strip=True))
    # Link text often carries a size suffix: "공고문.hwp (120KB)"
    match = re.search(r"[^\s/\\]+\.(?:hwpx?|pdf|docx?|xlsx?|zip|txt)\b", text, re.IGNORECASE)
    if match:
        return match.group(0)
    if text and PurePosixPath(text.lower()).suffix:
        return text
    name = PurePosixPath(unquote(urlparse(url).path)).name
    if PurePosixPath(name.lower()).suffix in ATTACHMENT_EXTENSIONS:
        return name
    return text or name


def extract_attachments(soup: BeautifulSoup, base_url: str) -> list[Attachment]:
    """
    Extract every attachment link.

    A link counts when its URL or its text ends in a document extension,
    or when it goes through a download handler.

    Args:
        soup: Parsed HTML
        base_url: Base URL for resolving relative links

    Returns:
        Attachments in page order, without duplicate URLs
    """
    attachments = []
    seen_urls = set()

    for link in soup.find_all("a", href=True):
        href = link["href"].strip()
        if not href or href.startswith(("#", "mailto:")):
            continue

        url = urljoin(base_url, href)
        filename = _filename_for(link, url)
        lowered = (urlparse(url).path + " " + filename).lower()
        is_document = any(ext in lowered for ext in ATTACHMENT_EXTENSIONS)
        if not is_document and not DOWNLOAD_HREF.search(href):
            continue
        if url in seen_urls:
            continue
        seen_urls.add(url)

        attachments.append(Attachment(url=url, filename=filename))

    return attachments


def parse_detail_page(html: str, url: str) -> DetailPageData:
    """
    Parse detail page HTML.

    Args:
        html: Raw HTML
        url: Page URL, for resolving attachment links

    Returns:
        DetailPageData; missing fields are None
    """
    soup = BeautifulSoup(html, "lxml")
    attachments = extract_attachments(soup, url)

    cleanup_navigation(soup)
    ministry = find_labelled_value(soup, MINISTRY_LABELS)
    agency = find_labelled_value(soup, AGENCY_LABELS)
    title = extract_page_title(soup)

    container = get_main_container(soup)
    description = normalize_whitespace(container.get_text("\n", strip=True)) or None

    logger.debug(
        "detail_page_parsed",
        url=url,
        ministry=ministry,
        agency=agency,
        attachments=len(attachments),
        chars=len(description or ""),
    )

    return DetailPageData(
        title=normalize_title(title) if title else None,
        ministry=ministry,
        agency=agency,
        description=description,
        raw_html=html,
        attachments=attachments,
    )
