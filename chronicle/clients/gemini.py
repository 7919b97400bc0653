"""Gemini REST client for concept distillation, image synthesis and vision checks.

One client serves three roles:
- TextModel: short JSON completions (cover concept)
- ImageModel: image generation (returns inline image bytes)
- VisionModel: questions about an image (text and slop detection)

Transient errors (429, 5xx, timeouts) are retried with exponential backoff;
everything else fails fast with GeminiAPIError.
"""

import base64
from typing import Any

import httpx
from aiolimiter import AsyncLimiter
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from chronicle.config import get_gemini_image_model, get_gemini_text_model, get_google_api_key
from chronicle.exceptions import ConfigurationError
from chronicle.utils.logging import get_logger

log = get_logger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

RETRIABLE_STATUS_CODES = (429, 500, 502, 503, 504)

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


class GeminiAPIError(Exception):
    """Raised for non-retriable Gemini API errors and unusable responses."""

    def __init__(self, message: str, response: httpx.Response | None = None):
        self.message = message
        self.status_code = response.status_code if response is not None else None
        self.response_body = response.text[:500] if response is not None else None
        suffix = f" - Status: {self.status_code}" if self.status_code else ""
        super().__init__(f"{message}{suffix}")


def _is_retriable_error(exception: BaseException) -> bool:
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code in RETRIABLE_STATUS_CODES
    return isinstance(exception, (httpx.TimeoutException, httpx.ConnectError))


def _image_mime_type(image_bytes: bytes) -> str:
    return "image/png" if image_bytes.startswith(_PNG_SIGNATURE) else "image/jpeg"


class GeminiClient:
    """Gemini text, image and vision collaborator."""

    def __init__(
        self,
        api_key: str | None = None,
        text_model: str | None = None,
        image_model: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Raises:
            ConfigurationError: If no API key is available (GOOGLE_API_KEY).
        """
        self.api_key = api_key or get_google_api_key()
        if not self.api_key:
            raise ConfigurationError("GOOGLE_API_KEY environment variable is required")
        self.text_model = text_model or get_gemini_text_model()
        self.image_model = image_model or get_gemini_image_model()
        self.client = http_client or httpx.AsyncClient(timeout=120.0)
        self.rate_limiter = AsyncLimiter(max_rate=60, time_period=60)

    @retry(
        retry=retry_if_exception(_is_retriable_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        before_sleep=lambda retry_state: log.warning(
            "gemini_request_retry",
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
        reraise=True,
    )
    async def _generate_content(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        async with self.rate_limiter:
            response = await self.client.post(
                f"{GEMINI_BASE_URL}/models/{model}:generateContent",
                headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
                json=payload,
            )

        if response.status_code in (400, 401, 403, 404):
            raise GeminiAPIError(f"Non-retriable error: {response.status_code}", response)

        response.raise_for_status()
        return response.json()  # type: ignore[no-any-return]

    @staticmethod
    def _parts(data: dict[str, Any]) -> list[dict[str, Any]]:
        candidates = data.get("candidates") or []
        if not candidates:
            raise GeminiAPIError("Gemini response has no candidates")
        return candidates[0].get("content", {}).get("parts", []) or []

    def _text(self, data: dict[str, Any]) -> str:
        return "".join(part.get("text", "") for part in self._parts(data))

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        max_tokens: int = 500,
        temperature: float | None = 0.7,
    ) -> str:
        """Text completion with the text model."""
        generation_config: dict[str, Any] = {"maxOutputTokens": max_tokens}
        if temperature is not None:
            generation_config["temperature"] = temperature

        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
            "generationConfig": generation_config,
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        data = await self._generate_content(self.text_model, payload)
        return self._text(data)

    async def generate_image(self, prompt: str) -> bytes:
        """Generate one image and return its bytes.

        Raises:
            GeminiAPIError: If the response contains no inline image.
        """
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }
        data = await self._generate_content(self.image_model, payload)

        for part in self._parts(data):
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                image_bytes = base64.b64decode(inline["data"])
                log.info(
                    "gemini_image_generated",
                    model=self.image_model,
                    mime_type=inline.get("mimeType"),
                    size_bytes=len(image_bytes),
                )
                return image_bytes

        raise GeminiAPIError("No image in Gemini response")

    async def analyze(self, image_bytes: bytes, instruction: str) -> str:
        """Ask the text model a JSON question about an image (temperature 0)."""
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {
                            "inlineData": {
                                "mimeType": _image_mime_type(image_bytes),
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            }
                        },
                        {"text": instruction},
                    ],
                }
            ],
            "generationConfig": {
                "temperature": 0,
                "responseMimeType": "application/json",
            },
        }
        data = await self._generate_content(self.text_model, payload)
        return self._text(data)

    async def aclose(self) -> None:
        await self.client.aclose()
