"""Shape measurement from segmentation masks.

This module handles:
- Oriented bounding geometry of the largest contour in a mask
- Length and depth from the minimal rotated rectangle
- Volume by per-column disk/ellipse integration of the axis-aligned mask
- The two-pass measurement flow (provisional with the default cross-section
  ratio, final with the species ratio)
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from fishmass.preprocessing.geometry import (
    GeometryBackend,
    OpenCVGeometry,
    OrientedBox,
    binarize_mask,
)

logger = logging.getLogger(__name__)

DEFAULT_CROSS_SECTION_RATIO = 0.5


@dataclass
class Measurement:
    """Real-world measurement of one mask under a given scale and cross-section ratio."""

    length_units: float
    depth_units: float
    volume_units: float
    corners: Optional[List[Tuple[float, float]]] = None

    @classmethod
    def zero(cls) -> "Measurement":
        return cls(0.0, 0.0, 0.0, None)

    @property
    def is_empty(self) -> bool:
        return self.corners is None and self.length_units == 0.0 and self.volume_units == 0.0


@dataclass
class ProvisionalMeasurement:
    """First-pass measurement, taken with the default cross-section ratio.

    Only its bounding box is meant to be used, for species matching.
    """

    measurement: Measurement
    box: Tuple[float, float, float, float]
    class_name: str
    cross_section_ratio: float


@dataclass
class FinalMeasurement:
    """Second-pass measurement, taken with the matched species' ratio."""

    measurement: Measurement
    species: str
    cross_section_ratio: float
    box: Tuple[float, float, float, float]


def mask_bounding_box(mask: np.ndarray) -> Tuple[float, float, float, float]:
    """Axis-aligned extent of a mask, normalized to [0, 1] by the mask shape.

    Args:
        mask: Binary mask (H, W)

    Returns:
        Tuple (x1, y1, x2, y2); all zeros for an empty mask
    """
    binary = binarize_mask(mask)
    coords = np.column_stack(np.where(binary))
    if len(coords) == 0:
        return (0.0, 0.0, 0.0, 0.0)

    h, w = binary.shape[:2]
    y_min, x_min = coords.min(axis=0)
    y_max, x_max = coords.max(axis=0)
    return (
        float(x_min) / w,
        float(y_min) / h,
        float(x_max + 1) / w,
        float(y_max + 1) / h,
    )


class ShapeMeasurer:
    """Converts binary masks into oriented geometry and estimated volume."""

    def __init__(
        self,
        geometry: Optional[GeometryBackend] = None,
        default_ratio: float = DEFAULT_CROSS_SECTION_RATIO,
    ):
        """Initialize shape measurer.

        Args:
            geometry: Geometry backend (defaults to OpenCV)
            default_ratio: Cross-section ratio used for provisional measurements
        """
        _check_ratio(default_ratio)
        self.geometry = geometry or OpenCVGeometry()
        self.default_ratio = default_ratio

    def oriented_box(self, mask: np.ndarray) -> Optional[OrientedBox]:
        """Minimal rotated rectangle of the mask's largest contour, or None."""
        if mask is None:
            raise ValueError("Mask is required")
        contour = self.geometry.largest_contour(mask)
        if contour is None or len(contour) == 0:
            return None
        return self.geometry.min_area_rect(contour)

    def measure(
        self,
        mask: np.ndarray,
        cross_section_ratio: float,
        pixels_per_unit: float,
    ) -> Measurement:
        """Measure length, depth and volume of the object in a mask.

        Each column of the axis-aligned mask is modelled as a disk (ratio 1.0)
        or flattened ellipse whose diameter is the column's occupied height.

        Args:
            mask: Binary mask (H, W)
            cross_section_ratio: Cross-section flattening in (0, 1]
            pixels_per_unit: Scale factor from calibration

        Returns:
            Measurement in real units; the zero measurement for an empty mask
            or a non-positive scale
        """
        if mask is None:
            raise ValueError("Mask is required")
        _check_ratio(cross_section_ratio)

        if pixels_per_unit <= 0:
            logger.warning(f"pixels_per_unit is {pixels_per_unit}, cannot measure")
            return Measurement.zero()

        binary = binarize_mask(mask)
        if not binary.any():
            logger.warning("Mask is empty, cannot measure")
            return Measurement.zero()

        box = self.oriented_box(binary)
        if box is None:
            logger.warning("No contour found in mask")
            return Measurement.zero()

        length_px = box.long_side
        depth_px = box.short_side

        aligned = self.geometry.rotate_mask(binary, box.center, box.alignment_angle)
        column_heights = aligned.sum(axis=0).astype(np.float64)
        column_heights = column_heights[column_heights > 0]

        volume_px = float(np.sum(column_heights ** 2)) * np.pi * cross_section_ratio / 4.0

        scale_cubed = float(pixels_per_unit) ** 3
        measurement = Measurement(
            length_units=length_px / pixels_per_unit,
            depth_units=depth_px / pixels_per_unit,
            volume_units=volume_px / scale_cubed,
            corners=list(box.corners),
        )

        logger.debug(
            f"Measured length={length_px:.1f}px depth={depth_px:.1f}px "
            f"angle={box.alignment_angle:.1f} volume={volume_px:.0f}px^3 "
            f"-> {measurement.length_units:.2f} x {measurement.depth_units:.2f}, "
            f"{measurement.volume_units:.2f} (ratio {cross_section_ratio})"
        )
        return measurement

    def measure_provisional(
        self,
        mask: np.ndarray,
        pixels_per_unit: float,
        class_name: str,
        box: Optional[Tuple[float, float, float, float]] = None,
    ) -> ProvisionalMeasurement:
        """First pass: measure with the default ratio to obtain the object's box.

        Args:
            mask: Binary mask (H, W)
            pixels_per_unit: Scale factor from calibration
            class_name: Label assigned by the segmentation collaborator
            box: Normalized (x1, y1, x2, y2) box from the collaborator, if any

        Returns:
            ProvisionalMeasurement
        """
        measurement = self.measure(mask, self.default_ratio, pixels_per_unit)
        if box is None:
            box = mask_bounding_box(mask)
        return ProvisionalMeasurement(
            measurement=measurement,
            box=tuple(float(v) for v in box),
            class_name=class_name,
            cross_section_ratio=self.default_ratio,
        )

    def finalize(
        self,
        provisional: ProvisionalMeasurement,
        mask: np.ndarray,
        species: str,
        cross_section_ratio: float,
        pixels_per_unit: float,
    ) -> FinalMeasurement:
        """Second pass: re-measure with the matched species' cross-section ratio."""
        if cross_section_ratio == provisional.cross_section_ratio:
            measurement = provisional.measurement
        else:
            measurement = self.measure(mask, cross_section_ratio, pixels_per_unit)
        return FinalMeasurement(
            measurement=measurement,
            species=species,
            cross_section_ratio=cross_section_ratio,
            box=provisional.box,
        )


def _check_ratio(ratio: float) -> None:
    if not 0.0 < ratio <= 1.0:
        raise ValueError(f"cross_section_ratio must be in (0, 1], got {ratio}")
