"""Tests for the per-job extraction pipeline."""

from datetime import date

import pytest

from funding_ingest.classifier.engine import Classifier
from funding_ingest.core.errors import SourceUnavailableError
from funding_ingest.core.hasher import program_id_for_hash
from funding_ingest.core.models import FundingProgram, ProgramStatus, Provenance
from funding_ingest.extractors.attachments import AttachmentTextExtractor
from funding_ingest.extractors.fields import FieldExtractor
from funding_ingest.jobs.processor import (
    SKIP_NO_CONTENT,
    JobProcessor,
    build_combined_text,
    program_status,
)
from funding_ingest.jobs.repository import InMemoryJobRepository
from funding_ingest.jobs.transitions import Outcome

EVENT_BODY = (
    "2025년 상반기 사업설명회를 아래와 같이 개최하오니 많은 참석 바랍니다.\n"
    "일시: 2025년 3월 20일 14시\n"
    "장소: 서울 코엑스 3층 회의실\n"
    "참석 대상: 관심 있는 기업 및 기관 관계자 누구나\n"
    "사전 등록은 홈페이지에서 가능하며 당일 현장 등록도 받습니다.\n"
    "문의: 담당자 전화 02-000-0000"
)

DETAIL_HTML = """
<html><head><title>공고 상세</title></head>
<body>
  <div class="board_view">
    <h2>2025년 소재부품기술개발사업 신규지원 공고</h2>
    <table>
      <tr><th>부처명</th><td>산업통상자원부</td></tr>
      <tr><th>전문기관</th><td>한국산업기술기획평가원</td></tr>
    </table>
    <p>지원규모: 과제당 정부출연금 최대 5억원 이내</p>
    <p>접수기간: 2025.03.01 ~ 2025.03.31</p>
    <p>신청자격: 중소기업 (개인사업자 제외), 벤처기업 우대</p>
    <p>목표 기술성숙도 TRL 4~6 단계, IRIS를 통해 온라인 접수</p>
    <a href="/files/공고문.hwpx">공고문.hwpx</a>
  </div>
</body></html>
"""


@pytest.fixture
def repository():
    return InMemoryJobRepository()


@pytest.fixture
def make_processor(repository, http_client_class):
    def factory(files=None, pages=None, today=date(2025, 3, 10)):
        client = http_client_class(files=files, pages=pages)
        return JobProcessor(
            http_client=client,
            attachments=AttachmentTextExtractor(fetcher=client),
            fields=FieldExtractor(),
            classifier=Classifier.from_config(),
            repository=repository,
            min_text_length=100,
            today=lambda: today,
        )
    return factory


class TestHelpers:
    """Tests for module helpers."""

    def test_combined_text_skips_empty(self):
        """Test empty attachment texts are dropped."""
        assert build_combined_text("본문", [None, "첨부", ""]) == "본문\n\n첨부"

    def test_combined_text_without_body(self):
        """Test attachment text stands alone when the body is empty."""
        assert build_combined_text("", ["첨부"]) == "첨부"

    @pytest.mark.parametrize("deadline,expected", [
        (None, ProgramStatus.ACTIVE),
        (date(2025, 3, 10), ProgramStatus.ACTIVE),
        (date(2025, 3, 9), ProgramStatus.EXPIRED),
    ])
    def test_program_status(self, deadline, expected):
        """Test a deadline before today marks the program expired."""
        assert program_status(deadline, date(2025, 3, 10)) == expected


class TestProcess:
    """Tests for JobProcessor.process."""

    @pytest.mark.asyncio
    async def test_builds_program(self, make_processor, job_factory, announcement_text):
        """Test a complete announcement produces a program record."""
        processor = make_processor()
        job = job_factory("job-1", description=announcement_text)

        result = await processor.process(job)

        assert result.outcome == Outcome.SUCCEEDED
        program = result.program
        assert program.id == program_id_for_hash(result.job.content_hash)
        assert program.source_job_id == "job-1"
        assert program.ministry == "산업통상자원부"
        assert program.budget_amount == 500_000_000
        assert program.deadline == date(2025, 3, 31)
        assert program.status == ProgramStatus.ACTIVE
        assert program.provenance["budget"] == Provenance.EXACT.value

    @pytest.mark.asyncio
    async def test_expired_after_deadline(self, make_processor, job_factory, announcement_text):
        """Test the injected date decides program status."""
        processor = make_processor(today=date(2025, 4, 15))

        result = await processor.process(job_factory("job-1", description=announcement_text))

        assert result.program.status == ProgramStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_same_input_same_program(self, make_processor, job_factory, announcement_text):
        """Test re-processing an unchanged job gives an identical record."""
        job = job_factory("job-1", description=announcement_text)

        first = await make_processor().process(job)
        second = await make_processor().process(job)

        assert first.program == second.program

    @pytest.mark.asyncio
    async def test_no_content_skipped(self, make_processor, job_factory):
        """Test a short body without attachments is skipped."""
        result = await make_processor().process(job_factory("job-1", description="짧은 공고"))

        assert result.outcome == Outcome.SKIPPED
        assert result.reason == SKIP_NO_CONTENT
        assert result.program is None

    @pytest.mark.asyncio
    async def test_unreadable_attachments_skipped(self, make_processor, job_factory):
        """Test attachments that yield no text do not rescue a short body."""
        processor = make_processor(files={"양식.zip": b"PK\x03\x04"})
        job = job_factory("job-1", attachments=["양식.zip"], description="짧은 공고")

        result = await processor.process(job)

        assert result.reason == SKIP_NO_CONTENT

    @pytest.mark.asyncio
    async def test_attachment_text_rescues_short_body(
        self, make_processor, job_factory, hwpx_factory, announcement_text
    ):
        """Test attachment text is enough when the body is short."""
        files = {"공고문.hwpx": hwpx_factory(announcement_text.splitlines())}
        processor = make_processor(files=files)
        job = job_factory("job-1", attachments=["공고문.hwpx"], description="첨부파일 참조")

        result = await processor.process(job)

        assert result.outcome == Outcome.SUCCEEDED
        assert result.program.budget_amount == 500_000_000
        assert "정부출연금" in result.job.detail_page_data.attachments[0].text

    @pytest.mark.asyncio
    async def test_missing_attachment_is_transient(self, make_processor, job_factory, announcement_text):
        """Test an unreachable attachment propagates for retry."""
        processor = make_processor()
        job = job_factory("job-1", attachments=["공고문.hwpx"], description=announcement_text)

        with pytest.raises(SourceUnavailableError):
            await processor.process(job)

    @pytest.mark.asyncio
    async def test_event_skipped(self, make_processor, job_factory):
        """Test non-R&D announcements are skipped with their type."""
        job = job_factory("job-1", title="사업설명회 개최 안내", description=EVENT_BODY)

        result = await make_processor().process(job)

        assert result.outcome == Outcome.SKIPPED
        assert result.reason == "non_rd_announcement:EVENT"

    @pytest.mark.asyncio
    async def test_duplicate_links_existing_program(
        self, make_processor, job_factory, repository, announcement_text
    ):
        """Test a second job with the same content links to the first program."""
        first = await make_processor().process(job_factory("job-1", description=announcement_text))
        await repository.upsert_funding_program(first.program)

        copy = job_factory("job-2", description=announcement_text).evolve(source_url=first.job.source_url)
        result = await make_processor().process(copy)

        assert result.outcome == Outcome.SUCCEEDED
        assert result.program is None
        assert result.program_id == first.program.id

    @pytest.mark.asyncio
    async def test_own_program_not_duplicate(self, make_processor, job_factory, repository, announcement_text):
        """Test re-processing the job that produced a program rebuilds it."""
        job = job_factory("job-1", description=announcement_text)
        first = await make_processor().process(job)
        await repository.upsert_funding_program(first.program)

        again = await make_processor().process(job)

        assert isinstance(again.program, FundingProgram)
        assert again.program.id == first.program.id


class TestEnsureDetail:
    """Tests for detail page fetching."""

    @pytest.mark.asyncio
    async def test_fetches_missing_detail(self, make_processor, job_factory):
        """Test an empty payload is filled from the source page."""
        job = job_factory("job-1")
        processor = make_processor(pages={job.source_url: DETAIL_HTML})

        enriched = await processor.ensure_detail(job)

        assert processor.http_client.requested == [job.source_url]
        assert "정부출연금" in enriched.detail_page_data.description
        assert enriched.detail_page_data.raw_html == DETAIL_HTML

    @pytest.mark.asyncio
    async def test_parsed_attachments_used_when_none_stored(self, make_processor, job_factory):
        """Test attachments come from the page when the job has none."""
        job = job_factory("job-1")
        processor = make_processor(pages={job.source_url: DETAIL_HTML})

        enriched = await processor.ensure_detail(job)

        attachments = enriched.detail_page_data.attachments
        assert [a.filename for a in attachments] == ["공고문.hwpx"]
        assert attachments[0].url == "https://www.example.go.kr/files/공고문.hwpx"

    @pytest.mark.asyncio
    async def test_existing_detail_not_fetched(self, make_processor, job_factory, announcement_text):
        """Test a stored body is used as is."""
        processor = make_processor()
        job = job_factory("job-1", description=announcement_text)

        assert await processor.ensure_detail(job) is job
        assert processor.http_client.requested == []

    @pytest.mark.asyncio
    async def test_unreachable_page(self, make_processor, job_factory):
        """Test an unreachable page raises a transient error."""
        with pytest.raises(SourceUnavailableError):
            await make_processor().ensure_detail(job_factory("job-1"))
