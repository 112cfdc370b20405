"""Overlays and text summaries of analysis results."""

from .composer import (
    PALETTE,
    AnalysisResult,
    ColorContext,
    OutputMode,
    ResultComposer,
    blend,
    describe_aggregate,
    join_descriptions,
    join_image_paths,
    result_title,
)

__all__ = [
    "PALETTE",
    "AnalysisResult",
    "ColorContext",
    "OutputMode",
    "ResultComposer",
    "blend",
    "describe_aggregate",
    "join_descriptions",
    "join_image_paths",
    "result_title",
]
