"""Anthropic Messages API client for the writing pipeline.

Implements:
- Client-side rate limit via AsyncLimiter
- Automatic retry with exponential backoff for transient errors (429, 5xx, timeouts)
- Proper error classification (retriable vs non-retriable)

Usage:
    client = AnthropicClient()
    text = await client.complete(system_prompt, user_prompt, max_tokens=2048)
"""

from typing import Any

import httpx
from aiolimiter import AsyncLimiter
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from chronicle.config import get_anthropic_api_key, get_anthropic_model
from chronicle.exceptions import ConfigurationError
from chronicle.utils.logging import get_logger

log = get_logger(__name__)

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"

RETRIABLE_STATUS_CODES = (429, 500, 502, 503, 504, 529)


class AnthropicAPIError(Exception):
    """Raised for non-retriable Anthropic API errors (400, 401, 403, 404)."""

    def __init__(self, message: str, response: httpx.Response):
        self.message = message
        self.status_code = response.status_code
        self.response_body = response.text[:500]
        super().__init__(f"{message} - Status: {response.status_code}")


def _is_retriable_error(exception: BaseException) -> bool:
    """Retry rate limits, server errors and network failures only."""
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code in RETRIABLE_STATUS_CODES
    return isinstance(exception, (httpx.TimeoutException, httpx.ConnectError))


class AnthropicClient:
    """Text model backed by the Anthropic Messages API.

    Satisfies the TextModel protocol used by the step executor.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Args:
            api_key: API key (defaults to ANTHROPIC_API_KEY)
            model: Model name (defaults to ANTHROPIC_MODEL)
            http_client: Optional preconfigured httpx client (tests use MockTransport)

        Raises:
            ConfigurationError: If no API key is available.
        """
        self.api_key = api_key or get_anthropic_api_key()
        if not self.api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY environment variable is required")
        self.model = model or get_anthropic_model()
        self.client = http_client or httpx.AsyncClient(timeout=120.0)
        self.rate_limiter = AsyncLimiter(max_rate=50, time_period=60)

    def _get_headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    @retry(
        retry=retry_if_exception(_is_retriable_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        before_sleep=lambda retry_state: log.warning(
            "anthropic_request_retry",
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
        reraise=True,
    )
    async def _post_message(self, payload: dict[str, Any]) -> dict[str, Any]:
        async with self.rate_limiter:
            response = await self.client.post(
                f"{ANTHROPIC_BASE_URL}/messages",
                headers=self._get_headers(),
                json=payload,
            )

        if response.status_code in (400, 401, 403, 404):
            # Non-retriable: Fail fast
            raise AnthropicAPIError(f"Non-retriable error: {response.status_code}", response)

        response.raise_for_status()
        return response.json()  # type: ignore[no-any-return]

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        max_tokens: int = 4096,
        temperature: float | None = None,
    ) -> str:
        """Send one user message and return the concatenated text blocks.

        Raises:
            AnthropicAPIError: On non-retriable errors
            httpx.HTTPError: When transient errors persist after 3 attempts
        """
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
        }
        if temperature is not None:
            payload["temperature"] = temperature

        data = await self._post_message(payload)
        text = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )

        log.debug(
            "anthropic_completion_received",
            model=self.model,
            stop_reason=data.get("stop_reason"),
            chars=len(text),
        )
        return text

    async def aclose(self) -> None:
        await self.client.aclose()
