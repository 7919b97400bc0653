"""Pydantic schemas for validation and serialization."""

from chronicle.schemas.cover import Concept, CoverGenerateRequest, SlopCheck, TextCheck
from chronicle.schemas.generation import (
    BookPlan,
    ChapterPlan,
    ConsistencyResult,
    Constitution,
    SectionDraft,
    SectionPlan,
)
from chronicle.schemas.job import CastMember, JobCreate, JobResponse, StoryPreview

__all__ = [
    "BookPlan",
    "CastMember",
    "ChapterPlan",
    "Concept",
    "ConsistencyResult",
    "Constitution",
    "CoverGenerateRequest",
    "JobCreate",
    "JobResponse",
    "SectionDraft",
    "SectionPlan",
    "SlopCheck",
    "StoryPreview",
    "TextCheck",
]
