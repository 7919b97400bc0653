"""Image prompt builder.

The prompt is built from the concept alone. It never names a book or a
cover, carries no colour or style vocabulary, and forbids any rendered text.
Retries vary only scale and viewing distance so each attempt keeps the same
object.
"""

from dataclasses import dataclass

from chronicle.schemas.cover import Concept

SCALE_HINTS = ("slightly smaller", "standard size", "slightly larger")
DISTANCE_HINTS = ("close-up view", "medium distance", "pulled back slightly")

BASE_AVOID = (
    "Multiple subjects",
    "Environment or scenery",
    "Floating objects",
    "Vortices or swirls",
    "Perfect symmetry",
    "Abstract geometry",
)


@dataclass(frozen=True)
class Variation:
    scale_hint: str
    distance_hint: str


def get_regeneration_variation(attempt: int) -> Variation:
    """Presentation variation for a retry; attempt 0 is the first try."""
    return Variation(
        scale_hint=SCALE_HINTS[attempt % len(SCALE_HINTS)],
        distance_hint=DISTANCE_HINTS[attempt % len(DISTANCE_HINTS)],
    )


def build_image_prompt(concept: Concept, attempt: int = 0) -> str:
    variation = get_regeneration_variation(attempt)
    avoid_lines = "\n".join(f"- {item}" for item in [*concept.avoid, *BASE_AVOID] if item)

    return f"""Create an image of a single everyday object.

Subject: {concept.visual_metaphor}

Single object only, isolated from context.
The object embodies: {concept.core_theme}
Emotional quality: {concept.emotion}

Composition:
- IMPORTANT: The object must be LARGE and PROMINENT
- Object occupies approximately 60-70% of the frame width
- Object is the dominant visual element - do not make it tiny
- Centered in the frame
- Scale: {variation.scale_hint}
- View: {variation.distance_hint}
- Some empty space above and below, but the object should feel substantial

MANDATORY CONSTRAINTS:
- No text of any kind
- No letters
- No numbers
- No symbols that resemble text
- No words
- No typography

AVOID:
{avoid_lines}"""
