"""Pydantic schemas for model output in the writing pipeline.

Every structured response is validated here before anything is persisted;
a validation failure is raised as LLMResponseParseError by the caller.
"""

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Constitution(BaseModel):
    """The book's seven-field internal constitution.

    Written once, then locked. Every later prompt reads it to keep voice,
    theme and boundaries consistent across sections.
    """

    model_config = ConfigDict(extra="ignore")

    central_thesis: str = Field(..., description="The core message or insight of the book")
    worldview_frame: str = Field(..., description="Perspective through which the story views its subject")
    narrative_voice: str = Field(..., description="The tone and style of the writing")
    what_book_is_against: str = Field(..., description="Ideas or approaches the book critiques")
    what_book_refuses_to_do: str = Field(..., description="Compromises the book won't make")
    ideal_reader: str = Field(..., description="Who this book is for")
    taboo_simplifications: str = Field(..., description="Oversimplifications to avoid")


class SectionPlan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str
    goal: str = ""
    target_words: int = Field(default=600, ge=50, le=5000)


class ChapterPlan(BaseModel):
    """One chapter of the outline, with its sections in order."""

    model_config = ConfigDict(extra="ignore")

    title: str
    purpose: str = ""
    sections: list[SectionPlan] = Field(..., min_length=1)


BookPlan = TypeAdapter(list[ChapterPlan])


class SectionDraft(BaseModel):
    """A written section plus the updated story-so-far synopsis."""

    model_config = ConfigDict(extra="ignore")

    prose: str = Field(..., min_length=1)
    synopsis: str = ""


class ConsistencyResult(BaseModel):
    """Verdict of the consistency check on a drafted section."""

    model_config = ConfigDict(extra="ignore")

    passed: bool
    issues: list[str] = Field(default_factory=list)
