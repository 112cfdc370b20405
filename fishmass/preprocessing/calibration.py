"""Scale calibration from a reference coin or a fiducial marker.

This module handles:
- Coin calibration from the reference object's segmentation mask
- ArUco/AprilTag marker calibration over an ordered list of dictionaries
- The documented fallback scale when no reference is found
- Distribution analysis of scales across a batch of images
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from fishmass.preprocessing.geometry import GeometryBackend, OpenCVGeometry, binarize_mask

logger = logging.getLogger(__name__)

# Used when no reference object or marker is found; results are then estimates
DEFAULT_PIXELS_PER_UNIT = 50.0
DEFAULT_COIN_DIAMETER_UNITS = 2.7
DEFAULT_MARKER_SIZE_UNITS = 4.5

# Tried in this order; the first dictionary with a detection wins
ARUCO_DICTIONARIES = (
    "DICT_4X4_50",
    "DICT_5X5_50",
    "DICT_6X6_50",
    "DICT_APRILTAG_36h11",
)


class ReferenceMethod(str, Enum):
    COIN = "coin"
    ARUCO = "aruco"

    @classmethod
    def parse(cls, value) -> "ReferenceMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown reference method: {value}. Must be one of {choices}")


@dataclass
class ScaleReference:
    """Pixels-per-unit scale and how it was obtained."""

    pixels_per_unit: float
    method: ReferenceMethod
    calibrated: bool
    reference_px: Optional[float] = None
    reference_corners: Optional[List[Tuple[float, float]]] = None
    dictionary: Optional[str] = None

    @property
    def reference_units(self) -> Optional[float]:
        """Size of the reference object converted back to real units."""
        if self.reference_px is None or self.pixels_per_unit <= 0:
            return None
        return self.reference_px / self.pixels_per_unit


class ScaleCalibrator:
    """Derives pixels-per-unit from exactly one configured reference method."""

    def __init__(
        self,
        method: ReferenceMethod = ReferenceMethod.COIN,
        known_coin_diameter_units: float = DEFAULT_COIN_DIAMETER_UNITS,
        known_marker_size_units: float = DEFAULT_MARKER_SIZE_UNITS,
        fallback_pixels_per_unit: float = DEFAULT_PIXELS_PER_UNIT,
        geometry: Optional[GeometryBackend] = None,
        dictionaries: Sequence[str] = ARUCO_DICTIONARIES,
    ):
        """Initialize scale calibrator.

        Args:
            method: Reference method ("coin" or "aruco")
            known_coin_diameter_units: Physical diameter of the reference coin
            known_marker_size_units: Physical side length of the printed marker
            fallback_pixels_per_unit: Scale used when no reference is found
            geometry: Geometry backend for the coin's oriented box
            dictionaries: Marker dictionary names, tried in order
        """
        if known_coin_diameter_units <= 0:
            raise ValueError("Known coin diameter must be positive")
        if known_marker_size_units <= 0:
            raise ValueError("Known marker size must be positive")
        if fallback_pixels_per_unit <= 0:
            raise ValueError("Fallback pixels_per_unit must be positive")

        self.method = ReferenceMethod.parse(method)
        self.known_coin_diameter_units = known_coin_diameter_units
        self.known_marker_size_units = known_marker_size_units
        self.fallback_pixels_per_unit = fallback_pixels_per_unit
        self.geometry = geometry or OpenCVGeometry()
        self.dictionaries = tuple(dictionaries)

    def fallback(self) -> ScaleReference:
        return ScaleReference(
            pixels_per_unit=self.fallback_pixels_per_unit,
            method=self.method,
            calibrated=False,
        )

    def calibrate(
        self,
        image: Optional[np.ndarray] = None,
        reference_mask: Optional[np.ndarray] = None,
    ) -> ScaleReference:
        """Calibrate with the configured method.

        Args:
            image: Decoded image, required by the marker method
            reference_mask: Mask of the reference coin, used by the coin method

        Returns:
            ScaleReference; ``calibrated`` is False when the fallback was used
        """
        if self.method == ReferenceMethod.COIN:
            return self.calibrate_from_coin(reference_mask)
        if image is None:
            raise ValueError("Marker calibration requires an image")
        return self.calibrate_from_marker(image)

    def calibrate_from_coin(self, reference_mask: Optional[np.ndarray]) -> ScaleReference:
        """Scale from the oriented box of the reference coin's mask."""
        if reference_mask is None:
            logger.warning("No reference coin found, using fallback scale")
            return self.fallback()

        contour = self.geometry.largest_contour(binarize_mask(reference_mask))
        if contour is None or len(contour) == 0:
            logger.warning("Reference coin mask is empty, using fallback scale")
            return self.fallback()

        box = self.geometry.min_area_rect(contour)
        diameter_px = max(box.width, box.height)
        if diameter_px <= 0:
            logger.warning("Reference coin has zero diameter, using fallback scale")
            return self.fallback()

        pixels_per_unit = diameter_px / self.known_coin_diameter_units
        logger.debug(
            f"Coin diameter {diameter_px:.1f}px / {self.known_coin_diameter_units} "
            f"-> {pixels_per_unit:.2f} px/unit"
        )
        return ScaleReference(
            pixels_per_unit=pixels_per_unit,
            method=ReferenceMethod.COIN,
            calibrated=True,
            reference_px=diameter_px,
            reference_corners=list(box.corners),
        )

    def calibrate_from_marker(self, image: np.ndarray) -> ScaleReference:
        """Scale from the first fiducial marker found, dictionaries tried in order."""
        gray = _to_gray(image)

        for name in self.dictionaries:
            try:
                corners = self._detect_in_dictionary(gray, name)
            except cv2.error as e:
                logger.error(f"Marker detection failed for {name}: {e}")
                continue

            if corners is None:
                continue

            marker = np.asarray(corners, dtype=np.float64).reshape(-1, 2)
            width_px = float(np.linalg.norm(marker[0] - marker[1]))
            if width_px <= 0:
                logger.warning(f"Degenerate marker found with {name}, using fallback scale")
                return self.fallback()

            pixels_per_unit = width_px / self.known_marker_size_units
            logger.info(f"Marker found with {name}: {width_px:.1f}px -> {pixels_per_unit:.2f} px/unit")
            return ScaleReference(
                pixels_per_unit=pixels_per_unit,
                method=ReferenceMethod.ARUCO,
                calibrated=True,
                reference_px=width_px,
                reference_corners=[(float(x), float(y)) for x, y in marker],
                dictionary=name,
            )

        logger.warning("No marker found in any dictionary, using fallback scale")
        return self.fallback()

    def _detect_in_dictionary(self, gray: np.ndarray, name: str) -> Optional[np.ndarray]:
        """Corners (4, 2) of the first marker detected with one dictionary, or None."""
        dictionary = cv2.aruco.getPredefinedDictionary(getattr(cv2.aruco, name))

        if hasattr(cv2.aruco, "ArucoDetector"):
            detector = cv2.aruco.ArucoDetector(dictionary, cv2.aruco.DetectorParameters())
            corners, ids, _ = detector.detectMarkers(gray)
        else:
            corners, ids, _ = cv2.aruco.detectMarkers(
                gray, dictionary, parameters=cv2.aruco.DetectorParameters_create()
            )

        if ids is None or len(ids) == 0:
            return None
        logger.debug(f"{name}: detected {len(ids)} marker(s)")
        return corners[0]


def _to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 3 and image.shape[2] == 1:
        image = image[:, :, 0]

    if image.ndim == 2:
        gray = image
    elif image.shape[2] == 4:
        gray = cv2.cvtColor(image, cv2.COLOR_RGBA2GRAY)
    else:
        gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    if gray.dtype != np.uint8:
        gray = np.clip(gray, 0, 255).astype(np.uint8)
    return gray


def analyze_scale_distribution(
    references: List[ScaleReference],
    outlier_threshold: float = 2.0,
) -> dict:
    """Analyze distribution of pixels_per_unit across images and identify outliers.

    Only calibrated references take part; fallback scales are ignored.

    Args:
        references: One ScaleReference per image
        outlier_threshold: Number of standard deviations for outlier detection

    Returns:
        Dictionary containing statistics and outlier indices into ``references``
    """
    indices = [i for i, ref in enumerate(references) if ref.calibrated and ref.pixels_per_unit > 0]
    valid_values = np.array([references[i].pixels_per_unit for i in indices])

    if len(valid_values) == 0:
        return {
            "mean": 0.0,
            "median": 0.0,
            "std": 0.0,
            "min": 0.0,
            "max": 0.0,
            "count": 0,
            "outlier_indices": [],
        }

    mean = float(np.mean(valid_values))
    std = float(np.std(valid_values))

    z_scores = np.abs((valid_values - mean) / std) if std > 0 else np.zeros_like(valid_values)
    outlier_indices = [indices[k] for k in np.flatnonzero(z_scores > outlier_threshold)]

    return {
        "mean": mean,
        "median": float(np.median(valid_values)),
        "std": std,
        "min": float(np.min(valid_values)),
        "max": float(np.max(valid_values)),
        "count": len(valid_values),
        "outlier_indices": outlier_indices,
    }
