"""
Document-conversion service contract and the leased session around it.

The conversion service is slow and authentication is far more expensive
than a single conversion, so one authenticated session is reused for
every attachment a worker converts. The session is a leased resource:
only one attachment may hold it at a time.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Optional

import structlog

from ..core.errors import PermanentInputError

logger = structlog.get_logger(__name__)


class ConversionStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ConversionTicket:
    """Handle for one uploaded document."""
    filename: str
    ticket_id: str
    uploaded_at: datetime = field(default_factory=datetime.now)
    handle: Any = None  # Service-specific state (e.g. an editor page)


class ConversionService(ABC):
    """
    Remote document-conversion collaborator.

    Every call may time out. Implementations raise ConversionTimeoutError
    or ConversionUnavailableError and never swallow failures; retrying is
    the job state machine's decision.
    """

    name: str = "conversion"

    @abstractmethod
    async def authenticate(self) -> Any:
        """Open and log in a session."""
        pass

    @abstractmethod
    async def upload(self, session: Any, filename: str, content: bytes) -> ConversionTicket:
        """Upload a document for conversion."""
        pass

    @abstractmethod
    async def poll_status(self, session: Any, ticket: ConversionTicket) -> ConversionStatus:
        pass

    @abstractmethod
    async def download_text(self, session: Any, ticket: ConversionTicket) -> str:
        """Download the converted document as plain text."""
        pass

    @abstractmethod
    async def release(self, session: Any, ticket: ConversionTicket) -> None:
        """Free the upload slot held by a ticket."""
        pass

    @abstractmethod
    async def close(self, session: Any) -> None:
        """Log out and dispose of a session."""
        pass


class ConversionSessionLease:
    """
    Single-owner lease over one authenticated conversion session.

    Authentication is lazy (on first acquire) and the session is reused
    until a transient failure invalidates it; the next acquire then logs
    in again.

    Usage:
        lease = ConversionSessionLease(service)
        async with lease.acquire("공고문.hwp") as session:
            ticket = await service.upload(session, ...)
        await lease.close()
    """

    def __init__(self, service: ConversionService):
        self.service = service
        self._lock = asyncio.Lock()
        self._session: Optional[Any] = None
        self._holder: Optional[str] = None
        self.authentications = 0
        self.leases = 0

    @property
    def holder(self) -> Optional[str]:
        """Name of the current lease holder, if any."""
        return self._holder

    @property
    def authenticated(self) -> bool:
        return self._session is not None

    @asynccontextmanager
    async def acquire(self, holder: str) -> AsyncIterator[Any]:
        """
        Lease the session, authenticating if needed.

        Transient and unexpected failures inside the block invalidate the
        session before re-raising. Permanent input errors (a document the
        service could not convert) leave it intact.

        Args:
            holder: Name recorded for logging while the lease is held
        """
        async with self._lock:
            if self._holder is not None:
                raise RuntimeError(f"Conversion session already leased by {self._holder}")
            self._holder = holder
            self.leases += 1

            try:
                if self._session is None:
                    logger.info("conversion_authenticating", service=self.service.name)
                    self._session = await self.service.authenticate()
                    self.authentications += 1

                yield self._session

            except PermanentInputError:
                raise

            except Exception as e:
                logger.warning(
                    "conversion_session_invalidated",
                    service=self.service.name,
                    holder=holder,
                    error=str(e) or type(e).__name__,
                )
                await self._discard()
                raise

            finally:
                self._holder = None

    async def _discard(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            await self.service.close(session)
        except Exception as e:
            logger.warning("conversion_session_close_failed", service=self.service.name, error=str(e))

    async def close(self) -> None:
        """Dispose of the session at worker shutdown."""
        async with self._lock:
            await self._discard()
