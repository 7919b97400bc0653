"""Tests for Discord webhook alerts.

Tests cover:
    - send_alert payload shape and colours per level
    - Message and detail truncation (Discord limits)
    - Graceful degradation: missing webhook, timeout, HTTP error, anything else
"""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from chronicle.utils.alerts import send_alert


@pytest.fixture
def mock_webhook_url(monkeypatch):
    webhook_url = "https://discord.com/api/webhooks/test/webhook"
    monkeypatch.setenv("DISCORD_WEBHOOK_URL", webhook_url)
    return webhook_url


@pytest.fixture
def no_webhook_url(monkeypatch):
    monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)


def _ok_response() -> MagicMock:
    response = MagicMock()
    response.status_code = 204
    return response


class TestSendAlert:
    @pytest.mark.asyncio
    async def test_warning_alert_for_exhausted_jobs(self, mock_webhook_url):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _ok_response()

            await send_alert(
                level="WARNING",
                message="2 generation job(s) failed after 20 automatic resume attempts",
                details={"job_ids": "a, b"},
            )

            mock_post.assert_called_once()
            assert mock_post.call_args[0][0] == mock_webhook_url
            payload = mock_post.call_args[1]["json"]
            assert "WARNING" in payload["content"]
            assert payload["embeds"][0]["color"] == 0xFFA500
            assert payload["embeds"][0]["fields"] == [
                {"name": "job_ids", "value": "a, b", "inline": True}
            ]

    @pytest.mark.asyncio
    async def test_critical_alert_is_red(self, mock_webhook_url):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _ok_response()

            await send_alert(level="CRITICAL", message="3 stuck job(s) not being recovered")

            payload = mock_post.call_args[1]["json"]
            assert payload["embeds"][0]["color"] == 0xFF0000

    @pytest.mark.asyncio
    async def test_unknown_level_falls_back_to_gray(self, mock_webhook_url):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _ok_response()

            await send_alert(level="DEBUG", message="hello")

            assert mock_post.call_args[1]["json"]["embeds"][0]["color"] == 0x808080

    @pytest.mark.asyncio
    async def test_message_and_details_truncated(self, mock_webhook_url):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _ok_response()

            await send_alert(level="INFO", message="X" * 3000, details={"ids": "y" * 2000})

            embed = mock_post.call_args[1]["json"]["embeds"][0]
            assert embed["description"] == "X" * 2000
            assert len(embed["fields"][0]["value"]) == 1024

    @pytest.mark.asyncio
    async def test_no_webhook_url_logs_warning(self, no_webhook_url, caplog):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            await send_alert(level="CRITICAL", message="Test alert")

            mock_post.assert_not_called()
        assert "discord_webhook_not_configured" in caplog.text

    @pytest.mark.asyncio
    async def test_timeout_handled_gracefully(self, mock_webhook_url, caplog):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.side_effect = httpx.TimeoutException("Request timeout")

            await send_alert(level="CRITICAL", message="Test alert")

        assert "discord_webhook_timeout" in caplog.text

    @pytest.mark.asyncio
    async def test_http_error_handled_gracefully(self, mock_webhook_url, caplog):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_response = MagicMock()
            mock_response.status_code = 400
            mock_response.text = "Bad Request"
            mock_response.raise_for_status.side_effect = httpx.HTTPStatusError(
                "Bad Request",
                request=MagicMock(),
                response=mock_response,
            )
            mock_post.return_value = mock_response

            await send_alert(level="CRITICAL", message="Test alert")

        assert "discord_webhook_http_error" in caplog.text

    @pytest.mark.asyncio
    async def test_generic_exception_handled_gracefully(self, mock_webhook_url, caplog):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.side_effect = Exception("Unexpected error")

            await send_alert(level="CRITICAL", message="Test alert")

        assert "discord_webhook_failed" in caplog.text
