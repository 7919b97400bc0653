"""Collaborator interfaces used by the step executor and the cover pipeline.

Services depend on these protocols rather than on concrete HTTP clients so
tests can pass scripted fakes.
"""

from typing import Protocol


class TextModel(Protocol):
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        max_tokens: int = 4096,
        temperature: float | None = None,
    ) -> str:
        """Return the model's text response."""
        ...


class ImageModel(Protocol):
    async def generate_image(self, prompt: str) -> bytes:
        """Return encoded image bytes (PNG or JPEG)."""
        ...


class VisionModel(Protocol):
    async def analyze(self, image_bytes: bytes, instruction: str) -> str:
        """Return the model's text answer about the image."""
        ...
