"""
HWPX parsing plugin.

HWPX is a zip of OWPML XML parts; body text lives in
``Contents/sectionN.xml`` as ``hp:t`` runs inside ``hp:p`` paragraphs.
"""

import io
import re
import zipfile

import structlog
from lxml import etree

from ..core.errors import CorruptDocumentError

logger = structlog.get_logger(__name__)

HP_NAMESPACE = "http://www.hancom.co.kr/hwpml/2011/paragraph"

_SECTION_PART = re.compile(r"^Contents/section(\d+)\.xml$")


def _paragraph_text(paragraph: etree._Element) -> str:
    # Direct runs only; table-cell paragraphs nested below are visited on their own
    parts = []
    for run in paragraph.iterfind(f"{{{HP_NAMESPACE}}}run"):
        for text in run.iterfind(f"{{{HP_NAMESPACE}}}t"):
            parts.append("".join(text.itertext()))
    return "".join(parts)


def extract_text_from_hwpx(content: bytes) -> str:
    """
    Extract paragraph text from an HWPX document.

    Args:
        content: Raw .hwpx bytes

    Returns:
        Paragraphs from every section, in section order, joined with newlines

    Raises:
        CorruptDocumentError: Bad zip, missing sections or malformed XML
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as e:
        raise CorruptDocumentError(f"HWPX is not a zip archive: {e}") from e

    with archive:
        sections = []
        for name in archive.namelist():
            match = _SECTION_PART.match(name)
            if match:
                sections.append((int(match.group(1)), name))
        sections.sort()
        if not sections:
            raise CorruptDocumentError("HWPX has no Contents/section*.xml parts")

        paragraphs = []
        for _, name in sections:
            try:
                root = etree.fromstring(archive.read(name))
            except etree.XMLSyntaxError as e:
                raise CorruptDocumentError(f"Malformed {name}: {e}") from e

            for paragraph in root.iter(f"{{{HP_NAMESPACE}}}p"):
                text = _paragraph_text(paragraph).strip()
                if text:
                    paragraphs.append(text)

    full_text = "\n".join(paragraphs)
    logger.debug("hwpx_extracted", sections=len(sections), chars=len(full_text))
    return full_text
