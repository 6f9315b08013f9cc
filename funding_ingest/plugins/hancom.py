"""
Hancom Docs conversion service driven through Playwright.

Hancom Docs opens HWP/HWPX files in its web editor and can export them as
PDF; the PDF is then read with pdfplumber. Login is the slow part, which
is why sessions are leased and reused by the attachment extractor.
"""

import asyncio
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog
from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from ..core.errors import ConversionTimeoutError, ConversionUnavailableError
from ..extractors.conversion import ConversionService, ConversionStatus, ConversionTicket
from .pdf import extract_text_from_pdf

logger = structlog.get_logger(__name__)

BASE_URL = "https://www.hancomdocs.com"
HOME_URL = f"{BASE_URL}/ko/home"
EDITOR_URL_GLOB = "**/webhwp/?mode=HWP_EDITOR**"

MIME_TYPES = {
    "hwp": "application/x-hwp",
    "hwpx": "application/hwp+zip",
}


@dataclass
class HancomSession:
    """Logged-in browser state."""
    playwright: Any
    browser: Browser
    context: BrowserContext
    page: Page


class HancomDocsConverter(ConversionService):
    """
    ConversionService backed by the Hancom Docs web editor.

    Args:
        email: Account email
        password: Account password
        headless: Run Chromium headless
        login_timeout: Seconds allowed for the OAuth login round trip
        upload_timeout: Seconds allowed for the file upload
        editor_timeout: Seconds a status poll waits for the editor to load
        download_timeout: Seconds allowed for the PDF export download
    """

    name = "hancom_docs"

    def __init__(
        self,
        email: str,
        password: str,
        headless: bool = True,
        login_timeout: float = 60,
        upload_timeout: float = 50,
        editor_timeout: float = 30,
        download_timeout: float = 60,
    ):
        self.email = email
        self.password = password
        self.headless = headless
        self.login_timeout_ms = login_timeout * 1000
        self.upload_timeout_ms = upload_timeout * 1000
        self.editor_timeout_ms = editor_timeout * 1000
        self.download_timeout_ms = download_timeout * 1000

    async def launch_browser(self, playwright) -> Browser:
        """Launch Chromium with the flags container hosts need."""
        return await playwright.chromium.launch(
            headless=self.headless,
            args=[
                "--disable-blink-features=AutomationControlled",
                "--disable-dev-shm-usage",
                "--no-sandbox",
            ],
        )

    async def authenticate(self) -> HancomSession:
        playwright = await async_playwright().start()
        try:
            browser = await self.launch_browser(playwright)
            context = await browser.new_context(accept_downloads=True, locale="ko-KR")
            page = await context.new_page()

            await page.goto(f"{BASE_URL}/ko/", wait_until="networkidle", timeout=self.login_timeout_ms)
            await page.get_by_role("button", name="로그인").click(timeout=self.login_timeout_ms)
            await page.wait_for_url("**/oauth2/authorize**", timeout=self.login_timeout_ms)

            await page.get_by_role("textbox", name="이메일").fill(self.email)
            await page.get_by_role("textbox", name="비밀번호").fill(self.password)
            await page.get_by_role("button", name="로그인", exact=True).click()
            await page.wait_for_url("**/ko/home", timeout=self.login_timeout_ms)

        except PlaywrightTimeoutError as e:
            await playwright.stop()
            raise ConversionTimeoutError(f"Hancom Docs login timed out: {e}") from e
        except PlaywrightError as e:
            await playwright.stop()
            raise ConversionUnavailableError(f"Hancom Docs login failed: {e}") from e

        logger.info("hancom_logged_in")
        return HancomSession(playwright=playwright, browser=browser, context=context, page=page)

    async def upload(self, session: HancomSession, filename: str, content: bytes) -> ConversionTicket:
        page = session.page
        extension = Path(filename).suffix.lstrip(".").lower()
        payload = {
            "name": filename,
            "mimeType": MIME_TYPES.get(extension, "application/octet-stream"),
            "buffer": content,
        }

        try:
            if not page.url.endswith("/ko/home"):
                await page.goto(HOME_URL, wait_until="networkidle", timeout=self.upload_timeout_ms)

            async with page.expect_file_chooser(timeout=self.upload_timeout_ms) as chooser_info:
                await page.get_by_role("button", name="문서 업로드").click()
            chooser = await chooser_info.value
            await chooser.set_files(payload)

        except PlaywrightTimeoutError as e:
            raise ConversionTimeoutError(f"Upload of {filename} timed out: {e}") from e
        except PlaywrightError as e:
            raise ConversionUnavailableError(f"Upload of {filename} failed: {e}") from e

        logger.debug("hancom_uploaded", filename=filename, bytes=len(content))
        return ConversionTicket(filename=filename, ticket_id=uuid.uuid4().hex, handle=page)

    async def poll_status(self, session: HancomSession, ticket: ConversionTicket) -> ConversionStatus:
        page: Page = ticket.handle
        try:
            await page.wait_for_url(EDITOR_URL_GLOB, timeout=self.editor_timeout_ms)
            menu = page.get_by_text("파일", exact=True).first
            if await menu.is_visible():
                return ConversionStatus.DONE
        except PlaywrightTimeoutError:
            return ConversionStatus.PENDING
        except PlaywrightError as e:
            raise ConversionUnavailableError(f"Editor check failed: {e}") from e

        if await page.get_by_text(re.compile("열 수 없|지원하지 않")).count():
            return ConversionStatus.FAILED
        return ConversionStatus.PENDING

    async def download_text(self, session: HancomSession, ticket: ConversionTicket) -> str:
        page: Page = ticket.handle
        try:
            await page.locator("div").filter(has_text=re.compile("^파일$")).first.click()
            async with page.expect_download(timeout=self.download_timeout_ms) as download_info:
                await page.get_by_role("menuitem", name="PDF로 다운로드").click()
            download = await download_info.value
            path = await download.path()
        except PlaywrightTimeoutError as e:
            raise ConversionTimeoutError(f"PDF export of {ticket.filename} timed out: {e}") from e
        except PlaywrightError as e:
            raise ConversionUnavailableError(f"PDF export of {ticket.filename} failed: {e}") from e

        content = await asyncio.to_thread(Path(path).read_bytes)
        return await asyncio.to_thread(extract_text_from_pdf, content, False)

    async def release(self, session: HancomSession, ticket: ConversionTicket) -> None:
        # Leave the editor so the next upload starts from the document list
        page: Page = ticket.handle
        try:
            await page.goto(HOME_URL, wait_until="domcontentloaded", timeout=self.upload_timeout_ms)
        except PlaywrightError as e:
            raise ConversionUnavailableError(f"Returning to home failed: {e}") from e

    async def close(self, session: Optional[HancomSession]) -> None:
        if session is None:
            return
        try:
            await session.browser.close()
        finally:
            await session.playwright.stop()
        logger.info("hancom_session_closed")
