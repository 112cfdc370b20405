"""Segmentation and detection collaborator interfaces.

Model inference happens outside this package. Collaborators hand over
per-object masks (reference coin, piles, individual fish) and detector boxes
through the small interfaces defined here. File-backed implementations load
masks and detections that were produced ahead of time, for batch runs.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
from PIL import Image

from fishmass.matching.species_matcher import DetectionBox
from fishmass.preprocessing.geometry import binarize_mask
from fishmass.preprocessing.measurement import mask_bounding_box

logger = logging.getLogger(__name__)


class ModelInferenceError(RuntimeError):
    """Raised by a collaborator whose model failed to produce results."""


@dataclass
class SegmentationResult:
    """One segmented object: mask plus normalized (x1, y1, x2, y2) box."""

    mask: np.ndarray
    box: Tuple[float, float, float, float]
    class_name: str
    confidence: float = 1.0


class Segmenter(ABC):
    """Image -> list of segmented objects, one instance per object class."""

    @abstractmethod
    def segment(self, image: np.ndarray) -> List[SegmentationResult]:
        """Segment objects in a decoded image."""


class Detector(ABC):
    """Image -> list of independent detection boxes."""

    @abstractmethod
    def detect(self, image: np.ndarray) -> List[DetectionBox]:
        """Detect objects in a decoded image."""


class StaticSegmenter(Segmenter):
    """Returns results computed ahead of time, ignoring the image."""

    def __init__(self, results: List[SegmentationResult]):
        self.results = list(results)

    def segment(self, image: np.ndarray) -> List[SegmentationResult]:
        return list(self.results)


class StaticDetector(Detector):
    """Returns detections computed ahead of time, ignoring the image."""

    def __init__(self, boxes: List[DetectionBox]):
        self.boxes = list(boxes)

    def detect(self, image: np.ndarray) -> List[DetectionBox]:
        return list(self.boxes)


def fit_mask(mask: np.ndarray, shape: Tuple[int, int]) -> np.ndarray:
    """Binarize a mask and resize it to ``shape`` (H, W) with nearest-neighbour sampling."""
    mask_np = np.asarray(mask)
    if mask_np.ndim > 2:
        mask_np = mask_np.squeeze()
    mask_np = binarize_mask(mask_np)

    height, width = shape
    if mask_np.shape != (height, width):
        logger.debug(f"Resizing mask from {mask_np.shape} to {(height, width)}")
        mask_pil = Image.fromarray(mask_np.astype(np.uint8) * 255)
        mask_pil = mask_pil.resize((width, height), Image.NEAREST)
        mask_np = np.array(mask_pil) > 127
    return mask_np


def load_mask(mask_path: Path) -> np.ndarray:
    """Load a mask image as a boolean array."""
    return np.array(Image.open(mask_path).convert("L")) > 127


def save_mask(mask: np.ndarray, output_path: Path) -> None:
    """Save mask as binary PNG image.

    Args:
        mask: Binary mask array
        output_path: Path to save the mask
    """
    mask_uint8 = binarize_mask(np.asarray(mask)).astype(np.uint8) * 255
    mask_image = Image.fromarray(mask_uint8)
    mask_image.save(output_path)
    logger.debug(f"Saved mask to {output_path}")


def load_segmentation_results(
    masks_dir: Path,
    image_stem: str,
    class_name: str,
    label: Optional[str] = None,
    shape: Optional[Tuple[int, int]] = None,
) -> List[SegmentationResult]:
    """Load masks saved as ``{stem}_{class}_{index}_mask.png``.

    A single ``{stem}_{class}_mask.png`` file is accepted as well.

    Args:
        masks_dir: Directory containing masks
        image_stem: Image filename without extension
        class_name: Object class used in the file names (e.g. "fish", "coin")
        label: Class label given to the results (defaults to ``class_name``)
        shape: Target (H, W); masks are resized to it when given

    Returns:
        List of SegmentationResult, in file name order
    """
    paths = sorted(masks_dir.glob(f"{image_stem}_{class_name}_*_mask.png"))
    single = masks_dir / f"{image_stem}_{class_name}_mask.png"
    if single.exists():
        paths.insert(0, single)

    results = []
    for path in paths:
        mask = load_mask(path)
        if shape is not None:
            mask = fit_mask(mask, shape)
        if not mask.any():
            logger.debug(f"Skipping empty mask {path.name}")
            continue
        results.append(SegmentationResult(
            mask=mask,
            box=mask_bounding_box(mask),
            class_name=label or class_name,
        ))

    logger.debug(f"Loaded {len(results)} '{class_name}' masks for {image_stem}")
    return results


def load_detections(detections_path: Path) -> List[DetectionBox]:
    """Load detector boxes from a JSON list.

    Each entry holds normalized ``x1``, ``y1``, ``x2``, ``y2``, a
    ``class_name`` and an optional ``confidence``.
    """
    with open(detections_path, 'r') as f:
        entries = json.load(f)

    if not isinstance(entries, list):
        raise ValueError(f"Expected a list of detections in {detections_path}")

    return [
        DetectionBox(
            x1=float(entry["x1"]),
            y1=float(entry["y1"]),
            x2=float(entry["x2"]),
            y2=float(entry["y2"]),
            class_name=str(entry["class_name"]),
            confidence=float(entry.get("confidence", 1.0)),
        )
        for entry in entries
    ]
