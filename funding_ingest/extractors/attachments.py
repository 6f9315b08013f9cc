"""
Attachment text recovery.

Strategy chain per attachment, first success wins:
1. Native parsing of the container format (PDF, HWP, HWPX, plain text)
2. Conversion through the remote document service (HWP/HWPX only)

Native parsing runs in worker threads and is fully concurrent; the
conversion fallback goes through the worker's single session lease.
"""

import asyncio
import re
import unicodedata
from typing import Callable, Optional

import structlog

from ..core.errors import (
    ConversionTimeoutError,
    CorruptDocumentError,
    PermanentInputError,
    TransientError,
)
from ..core.models import Attachment
from ..core.normalizer import sanitize_text
from ..plugins.hwp import extract_text_from_hwp
from ..plugins.hwpx import extract_text_from_hwpx
from ..plugins.pdf import extract_text_from_pdf
from .conversion import ConversionSessionLease, ConversionStatus, ConversionTicket

logger = structlog.get_logger(__name__)


def _decode_plain_text(content: bytes) -> str:
    for encoding in ("utf-8", "cp949"):
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    return content.decode("utf-8", errors="replace")


NATIVE_PARSERS: dict[str, Callable[[bytes], str]] = {
    "pdf": extract_text_from_pdf,
    "hwp": extract_text_from_hwp,
    "hwpx": extract_text_from_hwpx,
    "txt": _decode_plain_text,
}

# Formats the conversion service accepts
CONVERTIBLE_FORMATS = frozenset(["hwp", "hwpx"])

# Blank forms carry no announcement content; never worth a conversion
APPLICATION_FORM_KEYWORDS = [
    "신청서", "지원서", "신청양식", "지원양식", "신청서류", "지원서류", "제출서류",
    "접수서", "참가신청", "응모신청", "서식", "양식", "첨부서류", "제출양식",
    "동의서", "위임장", "확약서", "이력서", "사업계획서", "자기소개서", "추천서",
]

MIN_READABLE_RATIO = 0.6
_READABLE_CHAR = re.compile(r"[가-힣ㄱ-ㆎA-Za-z0-9\s.,:;()\[\]\-~%/·'\"]")


def is_application_form(filename: str) -> bool:
    """True for filenames that look like blank application forms."""
    name = unicodedata.normalize("NFC", filename or "").replace(" ", "")
    return any(keyword in name for keyword in APPLICATION_FORM_KEYWORDS)


def readable_ratio(text: str) -> float:
    """Share of characters that are Hangul, ASCII alphanumerics, whitespace or common punctuation."""
    if not text:
        return 0.0
    return len(_READABLE_CHAR.findall(text)) / len(text)


class AttachmentTextExtractor:
    """
    Best-effort plain text for announcement attachments.

    Args:
        fetcher: Object with ``async fetch_attachment(attachment) -> bytes``
        lease: Conversion session lease, or None to disable the fallback
        min_length: Shorter text counts as a failed extraction
        max_chars: Accepted text is truncated to this length
        conversion_timeout: Seconds allowed from upload to downloaded text
        poll_interval: Seconds between conversion status polls
    """

    def __init__(
        self,
        fetcher,
        lease: Optional[ConversionSessionLease] = None,
        min_length: int = 100,
        max_chars: int = 5000,
        conversion_timeout: float = 90.0,
        poll_interval: float = 1.0,
    ):
        self.fetcher = fetcher
        self.lease = lease
        self.min_length = min_length
        self.max_chars = max_chars
        self.conversion_timeout = conversion_timeout
        self.poll_interval = poll_interval
        self.stats = {"native": 0, "converted": 0, "rejected": 0, "unsupported": 0}

    def accept(self, text: Optional[str]) -> Optional[str]:
        """
        Apply the acceptance filter.

        Returns:
            Sanitized, truncated text, or None when it is too short or mostly garbage
        """
        cleaned = sanitize_text(text)
        if len(cleaned) < self.min_length:
            return None
        if readable_ratio(cleaned) < MIN_READABLE_RATIO:
            return None
        return cleaned[:self.max_chars]

    async def extract(self, attachment: Attachment, content: Optional[bytes] = None) -> Optional[str]:
        """
        Recover text from one attachment.

        Args:
            attachment: Attachment metadata (filename decides the format)
            content: Raw bytes; fetched through the fetcher when omitted

        Returns:
            Accepted text or None when nothing usable could be recovered

        Raises:
            TransientError: Download or conversion-service failure
        """
        log = logger.bind(filename=attachment.filename)
        extension = attachment.extension

        parser = NATIVE_PARSERS.get(extension)
        if parser is None:
            self.stats["unsupported"] += 1
            log.info("attachment_unsupported", extension=extension or None)
            return None

        if content is None:
            content = await self.fetcher.fetch_attachment(attachment)

        text = await self._extract_native(parser, content, log)
        accepted = self.accept(text)
        if accepted:
            self.stats["native"] += 1
            log.debug("attachment_extracted", strategy="native", chars=len(accepted))
            return accepted

        if not self._can_convert(attachment, extension):
            self.stats["rejected"] += 1
            log.info("attachment_rejected", chars=len(text or ""), min_length=self.min_length)
            return None

        try:
            converted = await self._convert(attachment, content)
        except PermanentInputError as e:
            self.stats["rejected"] += 1
            log.warning("conversion_rejected", error=str(e))
            return None

        accepted = self.accept(converted)
        if accepted:
            self.stats["converted"] += 1
            log.info("attachment_extracted", strategy="conversion", chars=len(accepted))
        else:
            self.stats["rejected"] += 1
            log.info("attachment_rejected", strategy="conversion", chars=len(converted or ""))
        return accepted

    async def extract_all(self, attachments: list[Attachment]) -> list[Optional[str]]:
        """
        Extract every attachment concurrently.

        All attachments are given the chance to finish before the first
        transient error is re-raised.

        Returns:
            Text (or None) per attachment, in input order
        """
        results = await asyncio.gather(
            *(self.extract(attachment) for attachment in attachments),
            return_exceptions=True,
        )

        texts: list[Optional[str]] = []
        for attachment, result in zip(attachments, results):
            if isinstance(result, BaseException):
                if isinstance(result, (TransientError, asyncio.CancelledError)):
                    raise result
                if isinstance(result, PermanentInputError):
                    logger.warning("attachment_failed", filename=attachment.filename, error=str(result))
                    texts.append(None)
                    continue
                raise result
            texts.append(result)
        return texts

    def _can_convert(self, attachment: Attachment, extension: str) -> bool:
        if self.lease is None or extension not in CONVERTIBLE_FORMATS:
            return False
        if is_application_form(attachment.filename):
            logger.debug("conversion_skipped_form", filename=attachment.filename)
            return False
        return True

    async def _extract_native(self, parser: Callable[[bytes], str], content: bytes, log) -> Optional[str]:
        try:
            return await asyncio.to_thread(parser, content)
        except Exception as e:
            log.info("native_extraction_failed", error=str(e), error_type=type(e).__name__)
            return None

    async def _convert(self, attachment: Attachment, content: bytes) -> Optional[str]:
        """One conversion attempt through the leased session."""
        service = self.lease.service

        async with self.lease.acquire(attachment.filename) as session:
            ticket = await service.upload(session, attachment.filename, content)
            try:
                return await asyncio.wait_for(
                    self._await_text(session, ticket),
                    timeout=self.conversion_timeout,
                )
            except asyncio.TimeoutError as e:
                raise ConversionTimeoutError(
                    f"Conversion of {attachment.filename} exceeded {self.conversion_timeout}s"
                ) from e
            finally:
                await self._release(session, ticket)

    async def _await_text(self, session, ticket: ConversionTicket) -> str:
        service = self.lease.service
        while True:
            status = await service.poll_status(session, ticket)
            if status == ConversionStatus.DONE:
                return await service.download_text(session, ticket)
            if status == ConversionStatus.FAILED:
                raise CorruptDocumentError(f"Conversion service rejected {ticket.filename}")
            await asyncio.sleep(self.poll_interval)

    async def _release(self, session, ticket: ConversionTicket) -> None:
        try:
            await self.lease.service.release(session, ticket)
        except Exception as e:
            logger.warning("conversion_release_failed", filename=ticket.filename, error=str(e))
