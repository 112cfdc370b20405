"""Species assignment by overlap with independent detector boxes.

A measured object's axis-aligned box is compared against every detector box
with intersection-over-union. The best box above the threshold lends its
class name to the object; otherwise the object keeps the label given by the
segmentation collaborator (e.g. "Fish").
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

DEFAULT_IOU_THRESHOLD = 0.1


@dataclass
class DetectionBox:
    """Detector output with coordinates normalized to [0, 1]."""

    x1: float
    y1: float
    x2: float
    y2: float
    class_name: str
    confidence: float = 1.0

    @property
    def box(self) -> Tuple[float, float, float, float]:
        return (self.x1, self.y1, self.x2, self.y2)


@dataclass
class SpeciesMatch:
    label: str
    iou: float
    detection: Optional[DetectionBox] = None

    @property
    def matched(self) -> bool:
        return self.detection is not None


def calculate_iou(
    box_a: Sequence[float],
    box_b: Sequence[float],
) -> float:
    """Intersection-over-union of two (x1, y1, x2, y2) boxes."""
    ax1, ay1, ax2, ay2 = box_a
    bx1, by1, bx2, by2 = box_b

    inter_left = max(ax1, bx1)
    inter_top = max(ay1, by1)
    inter_right = min(ax2, bx2)
    inter_bottom = min(ay2, by2)
    if inter_right < inter_left or inter_bottom < inter_top:
        return 0.0

    intersection = (inter_right - inter_left) * (inter_bottom - inter_top)
    area_a = (ax2 - ax1) * (ay2 - ay1)
    area_b = (bx2 - bx1) * (by2 - by1)
    union = area_a + area_b - intersection
    if union <= 0:
        return 0.0
    return float(intersection / union)


class SpeciesMatcher:
    """Assigns species labels to measured objects by maximal IoU."""

    def __init__(self, iou_threshold: float = DEFAULT_IOU_THRESHOLD):
        """Initialize species matcher.

        Args:
            iou_threshold: A detection must overlap by more than this to be used
        """
        if not 0.0 <= iou_threshold < 1.0:
            raise ValueError(f"iou_threshold must be in [0, 1), got {iou_threshold}")
        self.iou_threshold = iou_threshold

    def match(
        self,
        box: Sequence[float],
        detections: List[DetectionBox],
        fallback_label: str,
    ) -> SpeciesMatch:
        """Pick the detection overlapping ``box`` the most.

        Args:
            box: Normalized (x1, y1, x2, y2) box of the measured object
            detections: Detector boxes, in detector output order
            fallback_label: Label kept when no detection is good enough

        Returns:
            SpeciesMatch; ties on IoU go to the earlier detection
        """
        best: Optional[DetectionBox] = None
        best_iou = 0.0

        for detection in detections:
            iou = calculate_iou(box, detection.box)
            if iou > self.iou_threshold and iou > best_iou:
                best = detection
                best_iou = iou

        if best is None:
            logger.debug(f"No detection above IoU {self.iou_threshold}, keeping '{fallback_label}'")
            return SpeciesMatch(label=fallback_label, iou=0.0)

        logger.debug(f"Matched '{best.class_name}' with IoU {best_iou:.3f}")
        return SpeciesMatch(label=best.class_name, iou=best_iou, detection=best)


def count_species(detections: List[DetectionBox]) -> Dict[str, int]:
    """Number of detections per class name, in first-seen order."""
    counts: Dict[str, int] = OrderedDict()
    for detection in detections:
        counts[detection.class_name] = counts.get(detection.class_name, 0) + 1
    return counts
