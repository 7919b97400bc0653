"""Quality-gated cover pipeline.

Stages:
    concept: distill the story into one visual metaphor (text model)
    prompt: build the image prompt from the concept only
    quality: vision checks for rendered text and generic "slop" imagery
    typography: deterministic title/author rendering with PIL
    pipeline: orchestrates the stages with a bounded retry loop
"""

from chronicle.services.cover.pipeline import CoverPipeline, CoverRequest, CoverResult

__all__ = ["CoverPipeline", "CoverRequest", "CoverResult"]
