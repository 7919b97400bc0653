"""Vision quality gate for generated cover images.

Two independent checks run concurrently through the vision collaborator:

1. Text detection: any letters, numbers or text-like marks reject the image.
2. Slop detection: generic AI imagery (swirls, glows, cosmic backdrops...)
   rejects the image.

Both checks fail open: a collaborator error or an unreadable answer counts
as a pass, so an outage of the vision model never blocks cover delivery.
"""

import asyncio
import json
from dataclasses import dataclass, field

from pydantic import ValidationError

from chronicle.clients.protocols import VisionModel
from chronicle.schemas.cover import SlopCheck, TextCheck
from chronicle.services.json_parsing import extract_json_object
from chronicle.utils.logging import get_logger

log = get_logger(__name__)

SLOP_PATTERNS = (
    "vortex",
    "swirl",
    "spiral",
    "glow",
    "glowing",
    "cosmic",
    "galaxy",
    "nebula",
    "portal",
    "floating",
    "levitating",
    "symmetrical pattern",
    "perfect symmetry",
    "geometric pattern",
    "abstract geometry",
    "ethereal",
    "mystical aura",
    "magical particles",
    "sparkles",
    "lens flare",
)

TEXT_CHECK_INSTRUCTION = """Analyze this image for ANY text, letters, numbers, or symbols that resemble text.

Be extremely strict. Look for:
- Any letters (even partial or stylized)
- Any numbers
- Any text-like symbols
- Any typography elements
- Any words or word fragments

Respond with ONLY valid JSON:
{
  "has_text": true/false,
  "detected_text": "description of what was found" or null
}"""

SLOP_CHECK_INSTRUCTION = (
    'Analyze this image for common AI-generated "slop" patterns.\n\n'
    "Check for ANY of these:\n"
    + "\n".join(f"- {pattern}" for pattern in SLOP_PATTERNS)
    + """
- Multiple focal points
- Busy, cluttered composition
- Overly dramatic lighting

Respond with ONLY valid JSON:
{
  "has_slop_patterns": true/false,
  "detected_patterns": ["list", "of", "patterns"] or []
}"""
)


@dataclass
class CheckOutcome:
    passed: bool
    details: str | None = None


@dataclass
class QualityCheckResult:
    """Combined verdict; ``reason`` names the first failing check."""

    passed: bool
    reason: str | None = None
    text_detection: CheckOutcome = field(default_factory=lambda: CheckOutcome(True))
    slop_patterns: CheckOutcome = field(default_factory=lambda: CheckOutcome(True))


async def _ask(vision: VisionModel, image_bytes: bytes, instruction: str, check: str) -> dict | None:
    try:
        answer = await vision.analyze(image_bytes, instruction)
    except Exception as e:
        log.warning("cover_quality_check_unavailable", check=check, error=str(e))
        return None

    raw = extract_json_object(answer or "")
    if raw is None:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


async def check_for_text(vision: VisionModel, image_bytes: bytes) -> CheckOutcome:
    parsed = await _ask(vision, image_bytes, TEXT_CHECK_INSTRUCTION, "text")
    if parsed is None:
        return CheckOutcome(True)
    try:
        result = TextCheck.model_validate(parsed)
    except ValidationError:
        return CheckOutcome(True)
    if result.has_text is True:
        return CheckOutcome(False, result.detected_text or None)
    return CheckOutcome(True)


async def check_for_slop(vision: VisionModel, image_bytes: bytes) -> CheckOutcome:
    parsed = await _ask(vision, image_bytes, SLOP_CHECK_INSTRUCTION, "slop")
    if parsed is None:
        return CheckOutcome(True)
    try:
        result = SlopCheck.model_validate(parsed)
    except ValidationError:
        return CheckOutcome(True)
    patterns = [p for p in result.detected_patterns if p]
    if result.has_slop_patterns is True and patterns:
        return CheckOutcome(False, ", ".join(patterns))
    return CheckOutcome(True, ", ".join(patterns) or None)


async def run_quality_checks(vision: VisionModel, image_bytes: bytes) -> QualityCheckResult:
    """Run both checks concurrently and combine them."""
    text_result, slop_result = await asyncio.gather(
        check_for_text(vision, image_bytes),
        check_for_slop(vision, image_bytes),
    )

    reason = None
    if not text_result.passed:
        reason = f"Text detected: {text_result.details or 'unknown'}"
    elif not slop_result.passed:
        reason = f"Slop patterns detected: {slop_result.details or 'unknown'}"

    return QualityCheckResult(
        passed=text_result.passed and slop_result.passed,
        reason=reason,
        text_detection=text_result,
        slop_patterns=slop_result,
    )
