"""Async HTTP client for the Recall.ai bot API.

Provides RecallClient, the production BotProvider. Reads retry with
tenacity (3 attempts, exponential backoff 1-10s) on timeouts, connection
failures, 5xx and 429 responses; a 404 is final and surfaces as
ProviderNotFoundError. Stopping a bot is not retried so callers keep
control of their own time budget.
"""

from __future__ import annotations

from datetime import datetime

import httpx
import structlog
from pydantic import TypeAdapter, ValidationError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.botsync.core.monitoring import track_vendor_call
from src.botsync.lifecycle.provider.base import (
    VendorBotStatus,
    VendorRecording,
    VendorStatusChange,
)
from src.botsync.lifecycle.provider.errors import (
    ProviderError,
    ProviderNotFoundError,
    ProviderTimeoutError,
)
from src.botsync.lifecycle.schemas import BotStatus
from src.botsync.lifecycle.status_map import normalize_vendor_status

logger = structlog.get_logger(__name__)

_RECORDING_STARTED_CODES = {"in_call_recording", "recording_permission_allowed"}

_datetime_adapter = TypeAdapter(datetime)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and not isinstance(exc, ProviderNotFoundError) and exc.is_transient


_recall_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_retryable),
    reraise=True,
)


# ── Payload Parsing ─────────────────────────────────────────────────────────


def _parse_datetime(value: object) -> datetime | None:
    if not value:
        return None
    try:
        return _datetime_adapter.validate_python(value)
    except ValidationError:
        return None


def parse_bot_status(bot_id: str, data: dict) -> VendorBotStatus:
    """Build a VendorBotStatus from a ``GET /bot/{id}/`` response body.

    The current status is the last entry of ``status_changes``. The
    recording start is the first recording-related status change, falling
    back to the first recording's ``started_at``. Completion is the first
    terminal status change, falling back to the bot or recording
    ``completed_at``.
    """
    changes = [
        VendorStatusChange(
            code=str(change.get("code", "unknown")),
            sub_code=change.get("sub_code"),
            created_at=_parse_datetime(change.get("created_at")),
        )
        for change in data.get("status_changes") or []
    ]
    status_code = changes[-1].code if changes else "unknown"

    recordings = data.get("recordings") or []
    first_recording = recordings[0] if recordings else {}

    recording_started_at = next(
        (c.created_at for c in changes if c.code in _RECORDING_STARTED_CODES),
        None,
    ) or _parse_datetime(first_recording.get("started_at"))

    completed_at = next(
        (
            c.created_at
            for c in changes
            if normalize_vendor_status(c.code) in (BotStatus.COMPLETED, BotStatus.FAILED)
        ),
        None,
    ) or _parse_datetime(data.get("completed_at") or first_recording.get("completed_at"))

    return VendorBotStatus(
        bot_id=bot_id,
        status_code=status_code,
        status_changes=changes,
        recording_started_at=recording_started_at,
        completed_at=completed_at,
    )


def parse_recordings(data: dict) -> list[VendorRecording]:
    """Extract recordings from a bot detail body.

    The download URL comes from the mixed video shortcut, and only once
    its status is ``done``.
    """
    parsed: list[VendorRecording] = []
    for rec in data.get("recordings") or []:
        video = (rec.get("media_shortcuts") or {}).get("video_mixed") or {}
        video_status = ((video.get("status") or {}).get("code")) or ""
        download_url = None
        if video_status == "done":
            download_url = (video.get("data") or {}).get("download_url")

        parsed.append(
            VendorRecording(
                recording_id=str(rec.get("id", "")),
                status_code=video_status or ((rec.get("status") or {}).get("code")) or "processing",
                download_url=download_url,
                started_at=_parse_datetime(rec.get("started_at")),
                completed_at=_parse_datetime(rec.get("completed_at")),
                expires_at=_parse_datetime(rec.get("expires_at")),
            )
        )
    return parsed


# ── Client ──────────────────────────────────────────────────────────────────


class RecallClient:
    """Async client for the Recall.ai REST API.

    Uses httpx.AsyncClient with per-operation timeouts. Transport failures
    and error responses are translated into ProviderError subclasses.

    Args:
        api_key: Recall.ai API token.
        region: Recall.ai region (default: us-west-2).
        read_timeout: Timeout for status and recording reads.
        mutate_timeout: Timeout for stop requests.
    """

    def __init__(
        self,
        api_key: str,
        region: str = "us-west-2",
        read_timeout: float = 10.0,
        mutate_timeout: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = f"https://{region}.recall.ai/api/v1"
        self._headers = {
            "Authorization": f"Token {api_key}",
            "Content-Type": "application/json",
        }
        self._read_timeout = read_timeout
        self._mutate_timeout = mutate_timeout

    def _client(self, timeout: float) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout."""
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=timeout,
        )

    def _check_response(self, response: httpx.Response, operation: str, bot_id: str) -> None:
        if response.status_code == 404:
            raise ProviderNotFoundError(bot_id)
        if response.status_code >= 400:
            logger.warning(
                "recall.request_failed",
                bot_id=bot_id,
                operation=operation,
                status_code=response.status_code,
            )
            raise ProviderError(
                f"Recall.ai {operation} failed for bot {bot_id}: HTTP {response.status_code}",
                status_code=response.status_code,
            )

    @_recall_retry
    async def get_bot(self, bot_id: str) -> dict:
        """Get full bot details.

        GET /bot/{bot_id}/ returns status_changes, recordings and metadata.

        Args:
            bot_id: Recall.ai bot identifier.

        Returns:
            Full bot detail response.

        Raises:
            ProviderNotFoundError: If Recall.ai has no such bot.
            ProviderTimeoutError: If Recall.ai did not answer.
            ProviderError: For any other error response.
        """
        async with track_vendor_call("get_bot"):
            try:
                async with self._client(self._read_timeout) as client:
                    response = await client.get(f"{self._base_url}/bot/{bot_id}/")
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                raise ProviderTimeoutError("get_bot", bot_id) from exc
            self._check_response(response, "get_bot", bot_id)
            return response.json()

    async def get_bot_status(self, bot_id: str) -> VendorBotStatus:
        """Get the vendor's view of a bot's status.

        Args:
            bot_id: Recall.ai bot identifier.

        Returns:
            VendorBotStatus with the latest status code and vendor timestamps.
        """
        data = await self.get_bot(bot_id)
        status = parse_bot_status(bot_id, data)
        logger.debug(
            "recall.bot_status",
            bot_id=bot_id,
            status=status.status_code,
        )
        return status

    async def list_recordings(self, bot_id: str) -> list[VendorRecording]:
        """List a bot's recordings with their download URLs, if ready."""
        data = await self.get_bot(bot_id)
        recordings = parse_recordings(data)
        logger.info(
            "recall.recordings_listed",
            bot_id=bot_id,
            count=len(recordings),
            available=sum(1 for r in recordings if r.is_available),
        )
        return recordings

    async def stop_bot(self, bot_id: str) -> None:
        """Ask the bot to leave its call.

        POST /bot/{bot_id}/leave_call/

        Raises:
            ProviderNotFoundError: If the bot is already gone.
            ProviderTimeoutError: If the outcome is unknown.
            ProviderError: If Recall.ai refused the request.
        """
        async with track_vendor_call("stop_bot"):
            try:
                async with self._client(self._mutate_timeout) as client:
                    response = await client.post(
                        f"{self._base_url}/bot/{bot_id}/leave_call/",
                    )
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                raise ProviderTimeoutError("stop_bot", bot_id) from exc
            self._check_response(response, "stop_bot", bot_id)
        logger.info(
            "recall.bot_stopped",
            bot_id=bot_id,
            operation="leave_call",
        )
