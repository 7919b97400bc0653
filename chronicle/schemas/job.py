"""Pydantic schemas for job creation and job API responses.

Schema Naming Convention:
    - JobCreate: For POST requests (creating new jobs)
    - JobResponse: For API responses (serializing from database)
"""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from chronicle.models import JobStatus

TargetPages = Literal[30, 60, 120, 300]


class CastMember(BaseModel):
    name: str
    tagline: str = ""


class StoryPreview(BaseModel):
    """The story pitch a job is generated from.

    ``target_pages`` selects the book-length configuration and ``mode``
    selects whether each section gets an extra polish pass.
    """

    model_config = ConfigDict(extra="ignore")

    title: str = Field(..., min_length=1, max_length=255)
    logline: str = ""
    blurb: str = ""
    setting: str = ""
    promise: list[str] = Field(default_factory=list)
    cast: list[CastMember] = Field(default_factory=list)
    target_pages: TargetPages = 30
    mode: Literal["draft", "polished"] = "draft"


class JobCreate(BaseModel):
    """Schema for creating a new generation job (POST /api/v1/jobs)."""

    genre: str = Field(
        default="literary_fiction",
        max_length=50,
        examples=["literary_fiction", "thriller"],
    )
    user_prompt: str = Field(..., min_length=1, description="The original story request")
    preview: StoryPreview
    author_name: str | None = Field(default=None, max_length=255)


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    book_id: UUID
    status: JobStatus
    step: str
    progress: int
    error: str | None = None
    created_at: datetime
    updated_at: datetime
