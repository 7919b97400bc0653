"""Pydantic schemas for the cover pipeline."""

from pydantic import BaseModel, ConfigDict, Field


class Concept(BaseModel):
    """A story distilled into one concrete visual metaphor.

    Attributes:
        core_theme: What the story is about, in a few words.
        visual_metaphor: One everyday physical object that embodies the theme.
        emotion: The feeling the image should carry.
        avoid: Visual clichés the image must not contain.
    """

    model_config = ConfigDict(extra="ignore")

    core_theme: str
    visual_metaphor: str = Field(..., min_length=1)
    emotion: str = ""
    avoid: list[str] = Field(default_factory=list)


class TextCheck(BaseModel):
    model_config = ConfigDict(extra="ignore")

    has_text: bool = False
    detected_text: str | None = None


class SlopCheck(BaseModel):
    model_config = ConfigDict(extra="ignore")

    has_slop_patterns: bool = False
    detected_patterns: list[str] = Field(default_factory=list)


class CoverGenerateRequest(BaseModel):
    """Body of POST /api/v1/books/{book_id}/cover."""

    regenerate: bool = Field(
        default=False,
        description="Generate again even when a cover is ready or in progress",
    )
