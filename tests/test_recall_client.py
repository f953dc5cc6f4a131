"""Unit tests for the Recall.ai provider client with mocked HTTP."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from tenacity import wait_none

from src.botsync.lifecycle.provider import (
    ProviderError,
    ProviderNotFoundError,
    ProviderTimeoutError,
    RecallClient,
)
from src.botsync.lifecycle.provider.recall_client import parse_bot_status, parse_recordings

BOT_DETAIL = {
    "id": "bot-abc",
    "status_changes": [
        {"code": "joining_call", "created_at": "2026-03-02T15:00:00Z"},
        {"code": "in_call_recording", "created_at": "2026-03-02T15:01:00Z"},
        {"code": "call_ended", "created_at": "2026-03-02T15:31:30Z"},
        {"code": "done", "created_at": "2026-03-02T15:32:00Z"},
    ],
    "recordings": [
        {
            "id": "rec-1",
            "started_at": "2026-03-02T15:01:05Z",
            "completed_at": "2026-03-02T15:31:30Z",
            "expires_at": "2026-03-09T15:31:30Z",
            "media_shortcuts": {
                "video_mixed": {
                    "status": {"code": "done"},
                    "data": {"download_url": "https://cdn.recall.ai/rec-1.mp4"},
                }
            },
        },
        {
            "id": "rec-2",
            "media_shortcuts": {"video_mixed": {"status": {"code": "processing"}, "data": {}}},
        },
    ],
}


def _response(status_code: int, json=None, method: str = "GET") -> httpx.Response:
    return httpx.Response(
        status_code,
        json=json,
        request=httpx.Request(method, "https://us-west-2.recall.ai/api/v1/bot/bot-abc/"),
    )


@pytest.fixture
def recall_client():
    return RecallClient(api_key="test-api-key", region="us-west-2")


# ── Parsing ─────────────────────────────────────────────────────────────────


class TestParsing:
    def test_bot_status_uses_latest_change_and_vendor_timestamps(self):
        status = parse_bot_status("bot-abc", BOT_DETAIL)

        assert status.status_code == "done"
        assert status.recording_started_at == datetime(2026, 3, 2, 15, 1, tzinfo=timezone.utc)
        assert status.completed_at == datetime(2026, 3, 2, 15, 31, 30, tzinfo=timezone.utc)

    def test_bot_status_without_changes_is_unknown(self):
        status = parse_bot_status("bot-abc", {"status_changes": []})

        assert status.status_code == "unknown"
        assert status.completed_at is None

    def test_recordings_only_expose_finished_downloads(self):
        recordings = parse_recordings(BOT_DETAIL)

        assert [r.recording_id for r in recordings] == ["rec-1", "rec-2"]
        assert recordings[0].is_available
        assert recordings[0].download_url == "https://cdn.recall.ai/rec-1.mp4"
        assert recordings[0].duration_seconds == 1825
        assert not recordings[1].is_available
        assert recordings[1].status_code == "processing"


# ── HTTP Behavior ───────────────────────────────────────────────────────────


class TestRecallClient:
    @pytest.mark.asyncio
    async def test_get_bot_status_builds_request(self, recall_client):
        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_response(200, BOT_DETAIL)
        ) as mock_get:
            status = await recall_client.get_bot_status("bot-abc")

        assert status.status_code == "done"
        assert mock_get.call_args.args[0] == "https://us-west-2.recall.ai/api/v1/bot/bot-abc/"

    @pytest.mark.asyncio
    async def test_not_found_is_final(self, recall_client):
        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_response(404, {})
        ) as mock_get:
            with pytest.raises(ProviderNotFoundError):
                await recall_client.get_bot_status("bot-abc")

        assert mock_get.await_count == 1

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, recall_client):
        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_response(401, {})
        ) as mock_get:
            with pytest.raises(ProviderError) as exc_info:
                await recall_client.get_bot("bot-abc")

        assert exc_info.value.status_code == 401
        assert mock_get.await_count == 1

    @pytest.mark.asyncio
    async def test_retry_on_transient_failure(self, recall_client):
        """A 503 followed by a 200 succeeds on the second attempt."""
        responses = [_response(503), _response(200, BOT_DETAIL)]

        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, side_effect=responses
        ) as mock_get:
            result = await recall_client.get_bot("bot-abc")

        assert result["id"] == "bot-abc"
        assert mock_get.await_count == 2

    @pytest.mark.asyncio
    async def test_connection_failures_exhaust_retries(self, recall_client, monkeypatch):
        monkeypatch.setattr(RecallClient.get_bot.retry, "wait", wait_none())

        with patch(
            "httpx.AsyncClient.get",
            new_callable=AsyncMock,
            side_effect=httpx.ConnectError("connection refused"),
        ) as mock_get:
            with pytest.raises(ProviderTimeoutError):
                await recall_client.get_bot("bot-abc")

        assert mock_get.await_count == 3

    @pytest.mark.asyncio
    async def test_list_recordings(self, recall_client):
        with patch(
            "httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_response(200, BOT_DETAIL)
        ):
            recordings = await recall_client.list_recordings("bot-abc")

        assert sum(1 for r in recordings if r.is_available) == 1

    @pytest.mark.asyncio
    async def test_stop_bot_posts_leave_call(self, recall_client):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=_response(200, {}, method="POST"),
        ) as mock_post:
            await recall_client.stop_bot("bot-abc")

        assert mock_post.call_args.args[0] == (
            "https://us-west-2.recall.ai/api/v1/bot/bot-abc/leave_call/"
        )

    @pytest.mark.asyncio
    async def test_stop_bot_is_not_retried(self, recall_client):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            side_effect=httpx.ReadTimeout("timed out"),
        ) as mock_post:
            with pytest.raises(ProviderTimeoutError):
                await recall_client.stop_bot("bot-abc")

        assert mock_post.await_count == 1

    @pytest.mark.asyncio
    async def test_stop_bot_for_missing_bot(self, recall_client):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=_response(404, {}, method="POST"),
        ):
            with pytest.raises(ProviderNotFoundError):
                await recall_client.stop_bot("bot-abc")
