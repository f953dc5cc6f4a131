"""Summary Generation Service client.

The engine never summarizes anything itself: once a session is terminal it
asks this service to finalize it (transcript processing, summary, report)
and records success by setting the session's finalized_at. Background
retries use tenacity for transient failures; a user waiting on "end
session" gets a single short attempt instead. The final failure is raised as
SummaryGenerationError and the session stays completed-but-unfinalized
until finalize_pending picks it up.
"""

from __future__ import annotations

import uuid

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

logger = structlog.get_logger(__name__)


class SummaryGenerationError(Exception):
    """Raised when the summary service could not finalize a session."""


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return False


_summary_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


class SummaryClient:
    """Async client for the Summary Generation Service.

    Args:
        base_url: Service base URL. Empty disables summary generation.
        token: Bearer token sent with every request.
        timeout: Per-request timeout for background finalization, in seconds.
        interactive_timeout: Timeout of the single attempt made while a
            user waits on the request.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 60.0,
        interactive_timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"Content-Type": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._timeout = timeout
        self._interactive_timeout = interactive_timeout

    @property
    def enabled(self) -> bool:
        return bool(self._base_url)

    async def _post(self, session_id: uuid.UUID, context: dict, timeout: float) -> dict:
        async with httpx.AsyncClient(headers=self._headers, timeout=timeout) as client:
            response = await client.post(
                f"{self._base_url}/sessions/{session_id}/finalize",
                json=context,
            )
            response.raise_for_status()
            return response.json() if response.content else {}

    @_summary_retry
    async def _post_finalize(self, session_id: uuid.UUID, context: dict) -> dict:
        return await self._post(session_id, context, self._timeout)

    async def finalize(
        self,
        session_id: uuid.UUID,
        context: dict | None = None,
        interactive: bool = False,
    ) -> dict:
        """Ask the service to generate the session summary.

        Args:
            session_id: Session UUID.
            context: Extra data forwarded to the service (bot id, timings).
            interactive: Make one attempt bounded by interactive_timeout
                instead of retrying.

        Returns:
            The service's response body.

        Raises:
            SummaryGenerationError: If the service is not configured or failed.
        """
        if not self.enabled:
            raise SummaryGenerationError("Summary service URL is not configured")
        try:
            if interactive:
                result = await self._post(
                    session_id, context or {}, min(self._timeout, self._interactive_timeout)
                )
            else:
                result = await self._post_finalize(session_id, context or {})
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "summary.finalize_failed",
                session_id=str(session_id),
                interactive=interactive,
                error=str(exc),
            )
            raise SummaryGenerationError(str(exc)) from exc
        logger.info("summary.finalized", session_id=str(session_id))
        return result
