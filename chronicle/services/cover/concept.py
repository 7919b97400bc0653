"""Cover concept distillation.

One text-only call turns a story summary into a single concrete visual
metaphor. The book title is never part of the input, so the image model can
never be tempted to render it.
"""

import json
from dataclasses import dataclass

from pydantic import ValidationError

from chronicle.clients.protocols import TextModel
from chronicle.exceptions import LLMResponseParseError
from chronicle.schemas.cover import Concept
from chronicle.services.json_parsing import extract_json_object
from chronicle.utils.logging import get_logger

log = get_logger(__name__)

CONCEPT_SYSTEM_PROMPT = """You are a visual concept distiller for book covers.

Your job is to extract ONE everyday object that could represent the story's essence.

RULES:
- Output ONLY valid JSON
- Pick ONE concrete, everyday object (not abstract concepts)
- The object should be mundane but meaningful in context
- NO style words (no "ethereal", "mystical", "vibrant")
- NO colors
- NO composition suggestions
- NO art direction
- The metaphor must be a PHYSICAL OBJECT that exists in the real world

Good metaphors: "an empty chair", "a half-eaten apple", "a set of house keys", "a wilted flower", "a cracked mirror"
Bad metaphors: "the weight of time", "shattered dreams", "cosmic void", "swirling emotions"

The avoid list should include visual clichés for this genre."""

CONCEPT_TEMPERATURE = 0.7
CONCEPT_MAX_TOKENS = 500


@dataclass
class ConceptInput:
    """Story facts the concept is distilled from. Deliberately has no title."""

    summary: str
    genre: str
    mood: str | None = None
    time_period: str | None = None


def build_concept_prompt(story: ConceptInput) -> str:
    lines = [
        "Distill this story into a single visual concept.",
        "",
        f"STORY SUMMARY: {story.summary}",
        f"GENRE: {story.genre}",
    ]
    if story.mood:
        lines.append(f"MOOD: {story.mood}")
    if story.time_period:
        lines.append(f"TIME PERIOD: {story.time_period}")
    lines.append(
        """
Return ONLY valid JSON with these exact fields:
{
  "core_theme": "one word or short phrase",
  "visual_metaphor": "a single everyday object",
  "emotion": "the feeling to evoke",
  "avoid": ["list", "of", "visual", "clichés", "to", "avoid"]
}"""
    )
    return "\n".join(lines)


async def distill_concept(text_model: TextModel, story: ConceptInput) -> Concept:
    """Ask the text model for a concept and validate it.

    Raises:
        LLMResponseParseError: If the response holds no valid concept JSON.
    """
    text = await text_model.complete(
        CONCEPT_SYSTEM_PROMPT,
        build_concept_prompt(story),
        max_tokens=CONCEPT_MAX_TOKENS,
        temperature=CONCEPT_TEMPERATURE,
    )

    raw = extract_json_object(text or "")
    if raw is None:
        raise LLMResponseParseError("No JSON found in concept response", raw_text=text or "")

    try:
        concept = Concept.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        raise LLMResponseParseError(f"Invalid concept: {e}", raw_text=text) from e

    log.info(
        "cover_concept_distilled",
        visual_metaphor=concept.visual_metaphor,
        core_theme=concept.core_theme,
    )
    return concept
