"""Tests for the announcement-type gate."""

import pytest

from funding_ingest.classifier.announcement import classify_announcement
from funding_ingest.core.models import AnnouncementType


class TestClassifyAnnouncement:
    """Tests for classify_announcement."""

    @pytest.mark.parametrize("title,expected", [
        ("2025년 소재부품기술개발사업 신규지원 공고", AnnouncementType.R_D_PROJECT),
        ("2025년 기술수요조사 실시", AnnouncementType.SURVEY),
        ("사업설명회 개최 안내", AnnouncementType.EVENT),
        ("공지 - IRIS 시스템 점검 일정 안내", AnnouncementType.NOTICE),
    ])
    def test_title(self, title, expected):
        """Test classification from the title alone."""
        assert classify_announcement(title) == expected

    def test_title_rd_wins_over_body(self):
        """Test R&D wording in the title beats event wording in the body."""
        result = classify_announcement("2025년 연구개발 과제 공고", "설명회 일정: 3월 5일")

        assert result == AnnouncementType.R_D_PROJECT

    def test_body_exclusion(self):
        """Test award recruitment in the body is an event."""
        result = classify_announcement("우수성과 공모", "우수성과 시상 후보 모집")

        assert result == AnnouncementType.EVENT

    def test_default_is_rd(self):
        """Test unknown announcements are not dropped."""
        assert classify_announcement("2025년 공모", None) == AnnouncementType.R_D_PROJECT
