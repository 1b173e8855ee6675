"""Refinement engine: merges successive pass measurements into exposure records."""

from exposure_refinement.engine.merge_engine import MergeEngine, MergeResult

__all__ = ["MergeEngine", "MergeResult"]
