"""Shared fakes for the ingestion tests."""

import asyncio
import io
import zipfile
from datetime import datetime, timezone
from typing import Optional

import pytest

from funding_ingest.core.errors import ConversionUnavailableError, SourceUnavailableError
from funding_ingest.core.models import Attachment, DetailPageData, Job
from funding_ingest.extractors.conversion import (
    ConversionService,
    ConversionStatus,
    ConversionTicket,
)

ANNOUNCEMENT_TEXT = (
    "2025년 소재부품기술개발사업 신규지원 대상과제 공고\n"
    "지원규모: 과제당 정부출연금 최대 5억원 이내\n"
    "접수기간: 2025.03.01 ~ 2025.03.31\n"
    "신청자격: 중소기업 (개인사업자 제외), 벤처기업 우대\n"
    "목표 기술성숙도 TRL 4~6 단계, IRIS를 통해 온라인 접수\n"
)

SECTION_XML = (
    '<hs:sec xmlns:hs="http://www.hancom.co.kr/hwpml/2011/section" '
    'xmlns:hp="http://www.hancom.co.kr/hwpml/2011/paragraph">{paragraphs}</hs:sec>'
)


def build_hwpx(*sections: list[str]) -> bytes:
    """HWPX archive with one Contents/sectionN.xml part per list of paragraphs."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("mimetype", "application/hwp+zip")
        for index, paragraphs in enumerate(sections):
            body = "".join(f"<hp:p><hp:run><hp:t>{text}</hp:t></hp:run></hp:p>" for text in paragraphs)
            archive.writestr(f"Contents/section{index}.xml", SECTION_XML.format(paragraphs=body))
    return buffer.getvalue()


class FakeConversionService(ConversionService):
    """
    In-memory conversion service.

    Records every call and how many documents were in flight at once.
    ``texts`` maps filename -> converted text; unknown files convert to
    ``default_text``. ``statuses`` maps filename -> forced terminal status.
    """

    name = "fake"

    def __init__(
        self,
        texts: Optional[dict] = None,
        default_text: str = ANNOUNCEMENT_TEXT,
        statuses: Optional[dict] = None,
        pending_polls: int = 1,
        fail_authentication: bool = False,
    ):
        self.texts = texts or {}
        self.default_text = default_text
        self.statuses = statuses or {}
        self.pending_polls = pending_polls
        self.fail_authentication = fail_authentication

        self.authentications = 0
        self.closed = 0
        self.uploads: list[str] = []
        self.released: list[str] = []
        self.active = 0
        self.max_active = 0
        self._polls: dict[str, int] = {}

    async def authenticate(self):
        if self.fail_authentication:
            raise ConversionUnavailableError("login rejected")
        self.authentications += 1
        return {"session": self.authentications, "open": True}

    async def upload(self, session, filename, content):
        assert session["open"], "upload on a closed session"
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.uploads.append(filename)
        await asyncio.sleep(0)
        ticket_id = f"t{len(self.uploads)}"
        self._polls[ticket_id] = 0
        return ConversionTicket(filename=filename, ticket_id=ticket_id)

    async def poll_status(self, session, ticket):
        self._polls[ticket.ticket_id] += 1
        forced = self.statuses.get(ticket.filename)
        if forced == ConversionStatus.PENDING:
            return ConversionStatus.PENDING
        if self._polls[ticket.ticket_id] <= self.pending_polls:
            return ConversionStatus.PENDING
        return forced or ConversionStatus.DONE

    async def download_text(self, session, ticket):
        return self.texts.get(ticket.filename, self.default_text)

    async def release(self, session, ticket):
        self.active -= 1
        self.released.append(ticket.filename)

    async def close(self, session):
        session["open"] = False
        self.closed += 1


class FakeFetcher:
    """Serves attachment bytes by filename; missing files are unreachable."""

    def __init__(self, files: Optional[dict] = None):
        self.files = files or {}
        self.fetched: list[str] = []

    async def fetch_attachment(self, attachment: Attachment) -> bytes:
        self.fetched.append(attachment.filename)
        await asyncio.sleep(0)
        if attachment.filename not in self.files:
            raise SourceUnavailableError(f"404 {attachment.url}")
        return self.files[attachment.filename]


class FakeHttpClient(FakeFetcher):
    """FakeFetcher that also serves detail pages and works as a context manager."""

    def __init__(self, files: Optional[dict] = None, pages: Optional[dict] = None):
        super().__init__(files)
        self.pages = pages or {}
        self.requested: list[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def get_text(self, url: str) -> str:
        self.requested.append(url)
        if url not in self.pages:
            raise SourceUnavailableError(f"404 {url}")
        return self.pages[url]


def make_job(job_id: str = "job-1", attachments=None, description=None, title=None, **changes) -> Job:
    """Job with a detail payload; attachments are given as filenames."""
    detail = DetailPageData(
        title=title or "2025년 소재부품기술개발사업 신규지원 공고",
        ministry="산업통상자원부",
        agency="한국산업기술기획평가원",
        description=description,
        attachments=[
            Attachment(url=f"https://www.example.go.kr/files/{name}", filename=name)
            for name in (attachments or [])
        ],
    )
    return Job(
        id=job_id,
        source_url=f"https://www.example.go.kr/notice/{job_id}",
        title=title or "2025년 소재부품기술개발사업 신규지원 공고",
        batch="2025-03-01_2025-03-31",
        detail_page_data=detail,
        created_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
        **changes,
    )


@pytest.fixture
def announcement_text():
    return ANNOUNCEMENT_TEXT


@pytest.fixture
def hwpx_factory():
    return build_hwpx


@pytest.fixture
def job_factory():
    return make_job


@pytest.fixture
def conversion_service():
    return FakeConversionService()


@pytest.fixture
def fake_service_class():
    return FakeConversionService


@pytest.fixture
def fetcher_class():
    return FakeFetcher


@pytest.fixture
def http_client_class():
    return FakeHttpClient
