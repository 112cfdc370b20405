"""Per-object overlays and text summaries of an analysis run.

This module handles:
- Per-run class colour assignment (round-robin palette, first-seen order)
- Overlay canvases: translucent mask tint, oriented box outline, short label
- Separate (one result per object) and combined (single canvas) presentation
- Text descriptions for objects, the scale reference and the aggregate
- Delimited record text for the persistence collaborator
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from fishmass.biomass.estimator import AggregateResult, EstimationMode, ObjectEstimate
from fishmass.preprocessing.calibration import ReferenceMethod, ScaleReference
from fishmass.preprocessing.geometry import binarize_mask

logger = logging.getLogger(__name__)

DESCRIPTION_SEPARATOR = ";;;"
PATH_SEPARATOR = "|"
NO_OBJECTS_TEXT = "No objects detected"
ESTIMATED_NOTE = "(estimated, no scale reference)"
COUNTS_NOTE = "(from detector counts and average weights)"

# orange, blue, green, red, pink, cyan, purple, gray
PALETTE: List[Tuple[int, int, int]] = [
    (255, 152, 0),
    (33, 150, 243),
    (76, 175, 80),
    (244, 67, 54),
    (233, 30, 99),
    (0, 188, 212),
    (156, 39, 176),
    (158, 158, 158),
]
WHITE = (255, 255, 255)
YELLOW = (255, 255, 0)


class OutputMode(str, Enum):
    SEPARATE = "separate"
    COMBINED = "combined"

    @classmethod
    def parse(cls, value) -> "OutputMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown output mode: {value}. Must be 'separate' or 'combined'")


class ColorContext:
    """Colour per class for one run, assigned round-robin in first-seen order."""

    def __init__(self, palette: Sequence[Tuple[int, int, int]] = PALETTE):
        if not palette:
            raise ValueError("Palette must not be empty")
        self.palette = list(palette)
        self._assigned: Dict[str, int] = {}

    def index_for(self, class_name: str) -> int:
        if class_name not in self._assigned:
            self._assigned[class_name] = len(self._assigned) % len(self.palette)
        return self._assigned[class_name]

    def color_for(self, class_name: str) -> Tuple[int, int, int]:
        return self.palette[self.index_for(class_name)]

    def reset(self) -> None:
        self._assigned.clear()


@dataclass
class AnalysisResult:
    """One presentable result: original image, RGBA overlay and description."""

    original: np.ndarray
    overlay: Optional[np.ndarray]
    description: str


def _f(value: float) -> str:
    return f"{value:.1f}"


def _f0(value: float) -> str:
    return f"{value:.0f}"


def describe_object(estimate: ObjectEstimate, calibrated: bool = True) -> str:
    """Multi-line description of one object's estimate."""
    m = estimate.measurement
    if estimate.mode == EstimationMode.PILE:
        lines = [
            f"Pile Volume: {_f0(estimate.volume)} cm³",
            f"Est. Weight: {_f(estimate.weight / 1000.0)} kg",
            f"Base Dia: {_f(m.depth_units)}cm, H: {_f(m.length_units)}cm",
        ]
    else:
        lines = [
            f"Species: {estimate.species}",
            f"Est. Weight: {_f0(estimate.weight)}g",
            f"Vol: {_f0(estimate.volume)}cm³",
            f"L: {_f(m.length_units)}cm, D: {_f(m.depth_units)}cm",
        ]
    if not calibrated:
        lines.append(ESTIMATED_NOTE)
    return "\n".join(lines)


def object_label(estimate: ObjectEstimate) -> str:
    """Short label drawn on the overlay next to an object."""
    if estimate.mode == EstimationMode.PILE:
        return f"Pile: {_f0(estimate.volume)} cm3"
    return f"{estimate.species} | {_f0(estimate.weight)}g"


def describe_reference(reference: ScaleReference) -> str:
    if not reference.calibrated or reference.reference_units is None:
        return "Reference: none (estimated scale)"
    if reference.method == ReferenceMethod.COIN:
        return f"Coin Dia: {_f(reference.reference_units)}cm"
    return f"Marker: {_f(reference.reference_units)}cm ({reference.dictionary})"


def describe_aggregate(aggregate: AggregateResult) -> str:
    """Approximate biomass totals, one line per species and each species' share."""
    if aggregate.is_empty:
        return NO_OBJECTS_TEXT

    lines = [
        f"Approx Biomass (Total: {aggregate.total_weight / 1000.0:.2f} kg | "
        f"{aggregate.total_volume / 1000.0:.2f} L)"
    ]
    for summary in aggregate.summaries:
        lines.append(
            f"{summary.species}: {summary.count} | "
            f"{summary.total_weight / 1000.0:.1f} kg (approx.) | "
            f"{summary.total_volume / 1000.0:.1f} L (approx.)"
        )

    lines.append("Species Ratio")
    for share in aggregate.species_distribution():
        lines.append(f"{share['species']}: {share['count']} ({share['percent']:.1f}%)")

    if aggregate.from_counts:
        lines.append(COUNTS_NOTE)
    elif not aggregate.calibrated:
        lines.append(ESTIMATED_NOTE)
    return "\n".join(lines)


def result_title(calibrated: bool, from_counts: bool = False) -> str:
    if from_counts:
        return "Biomass (from counts)"
    return "Volume (accurate)" if calibrated else "Volume (estimated)"


def join_descriptions(results: List[AnalysisResult]) -> str:
    return DESCRIPTION_SEPARATOR.join(r.description for r in results)


def join_image_paths(paths: Sequence) -> str:
    return PATH_SEPARATOR.join(str(p) for p in paths)


def blend(image: np.ndarray, overlay: Optional[np.ndarray]) -> np.ndarray:
    """Alpha-composite an RGBA overlay onto an RGB (or grayscale) image."""
    base = image if image.ndim == 3 else np.stack([image] * 3, axis=-1)
    base = base[:, :, :3].astype(np.float32)
    if overlay is None:
        return base.astype(np.uint8)

    alpha = overlay[:, :, 3:4].astype(np.float32) / 255.0
    composed = base * (1.0 - alpha) + overlay[:, :, :3].astype(np.float32) * alpha
    return np.clip(composed, 0, 255).astype(np.uint8)


class ResultComposer:
    """Builds overlays and descriptions for an aggregate result."""

    def __init__(
        self,
        mode: OutputMode = OutputMode.SEPARATE,
        alpha: int = 96,
        line_width: int = 4,
        font_scale: float = 0.8,
    ):
        self.mode = OutputMode.parse(mode)
        self.alpha = alpha
        self.line_width = line_width
        self.font_scale = font_scale

    def compose(
        self,
        image: np.ndarray,
        aggregate: AggregateResult,
        reference: Optional[ScaleReference],
        colors: ColorContext,
    ) -> List[AnalysisResult]:
        """Build presentable results for one run.

        Args:
            image: Original decoded image
            aggregate: Result of the biomass estimation
            reference: Scale reference of the run (drawn when calibrated)
            colors: Colour context created for this run

        Returns:
            List of AnalysisResult; empty when there is nothing to show
        """
        has_reference = reference is not None and reference.calibrated
        if self.mode == OutputMode.SEPARATE:
            return self._compose_separate(image, aggregate, reference, colors, has_reference)
        return self._compose_combined(image, aggregate, reference, colors, has_reference)

    def _compose_separate(self, image, aggregate, reference, colors, has_reference):
        results = []
        for estimate in aggregate.objects:
            overlay = self._new_canvas(image)
            parts = []
            if has_reference:
                self._draw_reference(overlay, reference)
                parts.append(f"Reference: {describe_reference(reference)}\n")
            self._draw_object(overlay, estimate, colors.color_for(estimate.species))
            parts.append(describe_object(estimate, aggregate.calibrated))
            results.append(AnalysisResult(image, overlay, "".join(parts)))

        if not results and has_reference:
            overlay = self._new_canvas(image)
            self._draw_reference(overlay, reference)
            results.append(AnalysisResult(
                image, overlay, f"Reference only: {describe_reference(reference)}"
            ))
        return results

    def _compose_combined(self, image, aggregate, reference, colors, has_reference):
        if not aggregate.objects and not has_reference:
            return []

        overlay = self._new_canvas(image)
        parts = []
        if has_reference:
            self._draw_reference(overlay, reference)
            parts.append(f"Reference: {describe_reference(reference)}\n")
        for index, estimate in enumerate(aggregate.objects):
            self._draw_object(overlay, estimate, colors.color_for(estimate.species))
            parts.append(f"Item {index + 1}: {describe_object(estimate, aggregate.calibrated)}\n")
        return [AnalysisResult(image, overlay, "".join(parts))]

    def _new_canvas(self, image: np.ndarray) -> np.ndarray:
        h, w = image.shape[:2]
        return np.zeros((h, w, 4), dtype=np.uint8)

    def _draw_object(
        self,
        overlay: np.ndarray,
        estimate: ObjectEstimate,
        color: Tuple[int, int, int],
    ) -> None:
        h, w = overlay.shape[:2]
        if estimate.mask is not None and estimate.mask.shape[:2] == (h, w):
            overlay[binarize_mask(estimate.mask)] = (*color, self.alpha)

        corners = estimate.measurement.corners
        label_x, label_y = 0.0, 0.0
        if corners is not None and len(corners) == 4:
            points = np.round(np.array(corners)).astype(np.int32).reshape(-1, 1, 2)
            cv2.polylines(overlay, [points], True, (*WHITE, 255), self.line_width, cv2.LINE_AA)
            label_x, top_y = min(corners, key=lambda p: p[1])
            label_y = top_y - 10
        elif estimate.box is not None:
            x1, y1, x2, y2 = estimate.box
            cv2.rectangle(
                overlay,
                (int(x1 * w), int(y1 * h)),
                (int(x2 * w), int(y2 * h)),
                (*WHITE, 255),
                self.line_width,
            )
            label_x, label_y = x1 * w, y1 * h - 10

        self._draw_label(overlay, object_label(estimate), label_x, label_y, WHITE)

    def _draw_reference(self, overlay: np.ndarray, reference: ScaleReference) -> None:
        if not reference.reference_corners:
            return
        points = np.round(np.array(reference.reference_corners)).astype(np.int32).reshape(-1, 1, 2)
        cv2.polylines(overlay, [points], True, (*YELLOW, 255), self.line_width, cv2.LINE_AA)
        label_x, top_y = min(reference.reference_corners, key=lambda p: p[1])
        self._draw_label(overlay, describe_reference(reference), label_x, top_y - 10, YELLOW)

    def _draw_label(
        self,
        overlay: np.ndarray,
        text: str,
        x: float,
        y: float,
        color: Tuple[int, int, int],
    ) -> None:
        if y < 30:
            y = 40
        origin = (int(max(x, 0)), int(y))
        # Dark outline keeps the label readable on light backgrounds
        cv2.putText(overlay, text, origin, cv2.FONT_HERSHEY_SIMPLEX, self.font_scale,
                    (0, 0, 0, 255), 4, cv2.LINE_AA)
        cv2.putText(overlay, text, origin, cv2.FONT_HERSHEY_SIMPLEX, self.font_scale,
                    (*color, 255), 2, cv2.LINE_AA)
