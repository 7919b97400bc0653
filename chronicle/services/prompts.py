"""Prompt templates and book-length configuration for the writing pipeline.

Each builder returns a ``(system_prompt, user_prompt)`` pair. Builders only
format text; calling the model and validating its output is the step
executor's job.
"""

from dataclasses import dataclass
from typing import Any

from chronicle.schemas.generation import Constitution


@dataclass(frozen=True)
class BookConfig:
    """Size of a book for a target page count."""

    word_count: int
    chapters: int
    sections_per_chapter: int
    words_per_section: int


BOOK_CONFIGS: dict[int, BookConfig] = {
    30: BookConfig(word_count=8500, chapters=7, sections_per_chapter=2, words_per_section=600),
    60: BookConfig(word_count=17000, chapters=12, sections_per_chapter=2, words_per_section=700),
    120: BookConfig(word_count=34000, chapters=20, sections_per_chapter=2, words_per_section=850),
    300: BookConfig(word_count=85000, chapters=35, sections_per_chapter=3, words_per_section=800),
}

DEFAULT_TARGET_PAGES = 30

OPENING_CONTEXT = "This is the opening of the book."
DEFAULT_SYNOPSIS = "Beginning of story"

PROSE_GUIDELINES = """PROSE RULES:
- Ground every moment in concrete sensory detail: what is seen, heard, touched.
- Show interior states through action and gesture, not through labels.
- Dialogue is messy: people interrupt, deflect, trail off, misunderstand.
- Vary sentence length. Short sentences land. Longer ones carry the reader through.
- End paragraphs on an image or an action, never on a moral or a realization.
- Avoid stock phrases ("a testament to", "little did they know", "in that moment").
- Never summarize what a scene meant. Trust the reader."""

PROSE_QUALITY_CHECKLIST = """BEFORE RETURNING, CHECK:
- Does any paragraph end on an explanation? Replace it with an image.
- Is any emotion named outright? Show it instead.
- Do any three sentences in a row share the same rhythm? Break one."""

QUICK_POLISH_PROMPT = """Apply these edits in a single pass:

1. CUT any sentence containing "realized," "understood," "disguised as," or "It wasn't X, it was Y"
2. Find the most "crafted" line in each paragraph and roughen it or cut it
3. Add one physical action to any dialogue exchange that's just talking heads
4. Ensure no paragraph ends on a moral conclusion; end on image or action instead
5. Add one small character imperfection (petty thought, defensive moment, misread)
6. Vary sentence rhythm: add 2 short punchy sentences, break any triads
7. Trim 10% by cutting reiteration and internal explanation

Return ONLY the polished prose. No commentary, no JSON wrapper."""


def get_book_config(target_pages: int | None) -> BookConfig:
    """Return the configuration for a page target, defaulting to 30 pages."""
    return BOOK_CONFIGS.get(target_pages or DEFAULT_TARGET_PAGES, BOOK_CONFIGS[DEFAULT_TARGET_PAGES])


def _cast_line(preview: dict[str, Any]) -> str:
    return "; ".join(f"{c.get('name', '')}: {c.get('tagline', '')}" for c in preview.get("cast") or [])


def constitution_prompt(preview: dict[str, Any], genre: str) -> tuple[str, str]:
    system = """You are creating an internal "constitution" for a book based on its preview. This constitution guides AI writing to maintain consistency.

Return ONLY valid JSON matching this schema:
{
  "central_thesis": "The core message or insight of the book",
  "worldview_frame": "The perspective through which the story views its subject",
  "narrative_voice": "The tone and style of the writing",
  "what_book_is_against": "Ideas or approaches the book critiques",
  "what_book_refuses_to_do": "Compromises the book won't make",
  "ideal_reader": "Who this book is for",
  "taboo_simplifications": "Oversimplifications to avoid"
}"""
    user = f"""Create a constitution for this {genre} book:

Title: {preview.get("title", "")}
Logline: {preview.get("logline", "")}
Blurb: {preview.get("blurb", "")}
Setting: {preview.get("setting", "")}
Promise: {", ".join(preview.get("promise") or [])}
Characters: {_cast_line(preview)}"""
    return system, user


def plan_prompt(
    preview: dict[str, Any],
    constitution: Constitution,
    config: BookConfig,
    target_pages: int,
) -> tuple[str, str]:
    system = f"""You are planning a ~{target_pages} page book ({config.word_count} words total) with {config.chapters} chapters.
Each chapter has {config.sections_per_chapter} sections, each ~{config.words_per_section} words.

Return ONLY valid JSON array:
[
  {{
    "title": "Chapter title",
    "purpose": "What this chapter accomplishes",
    "sections": [
      {{ "title": "Section title", "goal": "What happens/is explored", "target_words": {config.words_per_section} }}
    ]
  }}
]

Structure the story with clear beginning, middle, end. Each chapter should advance the plot/argument.
Do NOT include plot twists or spoilers in section goals - keep descriptions vague enough for non-spoiler planning."""
    user = f"""Plan chapters for:

Title: {preview.get("title", "")}
Logline: {preview.get("logline", "")}
Blurb: {preview.get("blurb", "")}
Constitution thesis: {constitution.central_thesis}
Voice: {constitution.narrative_voice}"""
    return system, user


def previous_context(previous_sections: list[str]) -> str:
    """Context block built from the last two canonical sections."""
    if not previous_sections:
        return OPENING_CONTEXT
    return "Previous sections:\n" + "\n\n---\n\n".join(previous_sections[-2:])


def write_section_prompt(
    preview: dict[str, Any],
    constitution: Constitution,
    chapter_title: str,
    chapter_purpose: str,
    section_title: str,
    section_goal: str,
    target_words: int,
    previous_sections: list[str],
    story_synopsis: str | None,
) -> tuple[str, str]:
    system = f"""You are a literary fiction writer crafting a section of a book. Your prose must feel human-authored, not AI-generated.

{PROSE_GUIDELINES}

BOOK-SPECIFIC GUIDANCE:
Voice: {constitution.narrative_voice}
Theme: {constitution.central_thesis}
Avoid: {constitution.taboo_simplifications}

Write approximately {target_words} words.

{PROSE_QUALITY_CHECKLIST}

After the prose, provide a 1-2 sentence synopsis update for the "story so far".

Return JSON:
{{
  "prose": "The full section text...",
  "synopsis": "Updated story-so-far summary..."
}}"""
    user = f"""Write this section:

Chapter: {chapter_title}
Chapter purpose: {chapter_purpose}
Section: {section_title}
Goal: {section_goal}

Story so far: {story_synopsis or DEFAULT_SYNOPSIS}

{previous_context(previous_sections)}

Characters: {_cast_line(preview)}
Setting: {preview.get("setting", "")}

Remember: Ground every moment in sensory detail. End on action or image, not explanation. Make dialogue messy and human. Vary your sentence rhythm."""
    return system, user


def consistency_prompt(
    prose: str,
    constitution: Constitution,
    previous_sections: list[str],
) -> tuple[str, str]:
    system = """You are checking a book section for consistency issues.

Check for:
1. Contradictions with previous sections (character names, events, timeline)
2. Tone drift from the established voice
3. Constitution violations

Return JSON:
{
  "passed": true/false,
  "issues": ["issue1", "issue2"]
}
"issues" is empty when the section passes."""
    context = "\n---\n".join(previous_sections[-2:])
    user = f"""Check this section:

{prose}

Constitution voice: {constitution.narrative_voice}
Thesis: {constitution.central_thesis}
Avoid: {constitution.taboo_simplifications}

Previous context:
{context}"""
    return system, user


def rewrite_prompt(
    prose: str,
    issues: list[str],
    constitution: Constitution,
    section_goal: str,
) -> tuple[str, str]:
    system = f"""Rewrite this section to fix the identified issues while maintaining the same general content and flow.

{PROSE_GUIDELINES}

Voice: {constitution.narrative_voice}
Goal: {section_goal}

REVISION FOCUS:
1. Fix the specific issues listed
2. Add sensory detail to any paragraph missing it
3. If any paragraph ends on a "realization" or moral, replace with action/image
4. Ensure dialogue has pauses, stutters, or interruptions
5. Vary sentence rhythm

Return ONLY the rewritten prose, no JSON wrapper."""
    numbered = "\n".join(f"{i}. {issue}" for i, issue in enumerate(issues, start=1))
    user = f"""Original section:
{prose}

Issues to fix:
{numbered}

Remember: The rewrite should feel MORE human, not less. Ground abstractions in physical reality."""
    return system, user


def polish_prompt(prose: str, cast: list[dict[str, Any]]) -> tuple[str, str]:
    system = QUICK_POLISH_PROMPT
    if cast:
        lines = "\n".join(f"- {c.get('name', '')}: {c.get('tagline', '')}" for c in cast)
        system += f"\n\nCHARACTERS TO ADD MESS BEATS FOR:\n{lines}"
    return system, f"Polish this prose:\n\n{prose}"
