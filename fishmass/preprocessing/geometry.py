"""Geometry backends for mask contour and rotated-rectangle operations.

This module handles:
- Largest external contour extraction from a binary mask
- Minimal-area oriented bounding rectangles (OpenCV angle convention)
- Nearest-neighbour rotation of a mask about a point

Two interchangeable backends are provided. ``OpenCVGeometry`` is the default
used in production. ``ScikitImageGeometry`` is built on scikit-image and SciPy
only and is deterministic, which makes it convenient for unit tests.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import cv2
import numpy as np
from scipy.spatial import ConvexHull, QhullError
from skimage import measure
from skimage.transform import AffineTransform, warp

logger = logging.getLogger(__name__)


@dataclass
class OrientedBox:
    """Minimal rotated rectangle enclosing a contour.

    ``width`` is the side lying along direction ``angle`` (degrees, image
    coordinates with y pointing down), ``height`` the perpendicular side.
    """

    center: Tuple[float, float]
    width: float
    height: float
    angle: float
    corners: List[Tuple[float, float]] = field(default_factory=list)

    @property
    def long_side(self) -> float:
        return max(self.width, self.height)

    @property
    def short_side(self) -> float:
        return min(self.width, self.height)

    @property
    def alignment_angle(self) -> float:
        """Rotation (degrees) that brings the long side onto the x axis."""
        if self.width < self.height:
            return self.angle + 90.0
        return self.angle


def binarize_mask(mask: np.ndarray) -> np.ndarray:
    """Return a boolean copy of a mask given as bool, 0/1, 0/255 or probabilities."""
    if mask.dtype != bool:
        return mask > 0.5
    return mask


def rotation_matrix(center: Tuple[float, float], angle: float) -> np.ndarray:
    """2x3 affine matrix equivalent to ``cv2.getRotationMatrix2D(center, angle, 1.0)``."""
    theta = np.radians(angle)
    alpha = np.cos(theta)
    beta = np.sin(theta)
    cx, cy = center
    return np.array([
        [alpha, beta, (1 - alpha) * cx - beta * cy],
        [-beta, alpha, beta * cx + (1 - alpha) * cy],
    ])


def rect_corners(
    center: Tuple[float, float],
    width: float,
    height: float,
    angle: float,
) -> List[Tuple[float, float]]:
    """Corner points of a rotated rectangle, in drawing order."""
    theta = np.radians(angle)
    u = np.array([np.cos(theta), np.sin(theta)]) * (width / 2.0)
    v = np.array([-np.sin(theta), np.cos(theta)]) * (height / 2.0)
    c = np.asarray(center, dtype=float)
    points = [c - u + v, c - u - v, c + u - v, c + u + v]
    return [(float(p[0]), float(p[1])) for p in points]


class GeometryBackend(ABC):
    """Narrow interface over the vision operations used for measurement."""

    @abstractmethod
    def largest_contour(self, mask: np.ndarray) -> Optional[np.ndarray]:
        """Return the maximum-area external contour as an (N, 2) array of x, y."""

    @abstractmethod
    def min_area_rect(self, contour: np.ndarray) -> OrientedBox:
        """Return the minimal-area rotated rectangle enclosing ``contour``."""

    @abstractmethod
    def rotate_mask(
        self,
        mask: np.ndarray,
        center: Tuple[float, float],
        angle: float,
    ) -> np.ndarray:
        """Rotate a binary mask about ``center`` with nearest-neighbour sampling."""


class OpenCVGeometry(GeometryBackend):
    """Geometry backend built on OpenCV."""

    def largest_contour(self, mask: np.ndarray) -> Optional[np.ndarray]:
        mask_uint8 = binarize_mask(mask).astype(np.uint8) * 255
        contours, _ = cv2.findContours(mask_uint8, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        if not contours:
            return None
        largest = max(contours, key=cv2.contourArea)
        return largest.reshape(-1, 2)

    def min_area_rect(self, contour: np.ndarray) -> OrientedBox:
        rect = cv2.minAreaRect(np.asarray(contour, dtype=np.float32).reshape(-1, 1, 2))
        (cx, cy), (width, height), angle = rect
        corners = [(float(x), float(y)) for x, y in cv2.boxPoints(rect)]
        return OrientedBox(
            center=(float(cx), float(cy)),
            width=float(width),
            height=float(height),
            angle=float(angle),
            corners=corners,
        )

    def rotate_mask(
        self,
        mask: np.ndarray,
        center: Tuple[float, float],
        angle: float,
    ) -> np.ndarray:
        mask_uint8 = binarize_mask(mask).astype(np.uint8) * 255
        h, w = mask_uint8.shape[:2]
        matrix = cv2.getRotationMatrix2D((float(center[0]), float(center[1])), angle, 1.0)
        rotated = cv2.warpAffine(mask_uint8, matrix, (w, h), flags=cv2.INTER_NEAREST)
        return rotated > 127


class ScikitImageGeometry(GeometryBackend):
    """Geometry backend built on scikit-image and SciPy.

    Contours are traced at the 0.5 iso-level, so rectangle sides measure the
    pixel boundary rather than pixel centres (one pixel longer than OpenCV).
    """

    def largest_contour(self, mask: np.ndarray) -> Optional[np.ndarray]:
        binary = binarize_mask(mask)
        if not binary.any():
            return None

        # Pad so objects touching the border still produce closed contours
        padded = np.pad(binary.astype(float), 1)
        contours = measure.find_contours(padded, 0.5)
        if not contours:
            return None

        def polygon_area(contour: np.ndarray) -> float:
            y, x = contour[:, 0], contour[:, 1]
            return 0.5 * abs(np.dot(x, np.roll(y, 1)) - np.dot(y, np.roll(x, 1)))

        largest = max(contours, key=polygon_area)
        return np.column_stack([largest[:, 1] - 1, largest[:, 0] - 1])

    def min_area_rect(self, contour: np.ndarray) -> OrientedBox:
        points = np.unique(np.asarray(contour, dtype=float).reshape(-1, 2), axis=0)
        if len(points) == 1:
            cx, cy = points[0]
            return OrientedBox((float(cx), float(cy)), 0.0, 0.0, 0.0, rect_corners((cx, cy), 0.0, 0.0, 0.0))

        try:
            hull_points = points[ConvexHull(points).vertices]
            edges = np.roll(hull_points, -1, axis=0) - hull_points
        except QhullError:
            # Collinear points: the only candidate direction is end to end
            logger.debug("Degenerate contour, using extreme-point direction")
            hull_points = points
            edges = (points[-1] - points[0]).reshape(1, 2)

        best = None
        for dx, dy in edges:
            if dx == 0 and dy == 0:
                continue
            angle = float(np.degrees(np.arctan2(dy, dx)) % 90.0)
            theta = np.radians(angle)
            u = np.array([np.cos(theta), np.sin(theta)])
            v = np.array([-np.sin(theta), np.cos(theta)])
            pu = hull_points @ u
            pv = hull_points @ v
            width = pu.max() - pu.min()
            height = pv.max() - pv.min()
            area = width * height
            if best is None or area < best[0] - 1e-9:
                mid_u = (pu.max() + pu.min()) / 2.0
                mid_v = (pv.max() + pv.min()) / 2.0
                center = mid_u * u + mid_v * v
                best = (area, (float(center[0]), float(center[1])), float(width), float(height), angle)

        _, center, width, height, angle = best
        return OrientedBox(center, width, height, angle, rect_corners(center, width, height, angle))

    def rotate_mask(
        self,
        mask: np.ndarray,
        center: Tuple[float, float],
        angle: float,
    ) -> np.ndarray:
        binary = binarize_mask(mask)
        forward = AffineTransform(matrix=np.vstack([rotation_matrix(center, angle), [0.0, 0.0, 1.0]]))
        rotated = warp(
            binary.astype(float),
            forward.inverse,
            output_shape=binary.shape,
            order=0,
            mode="constant",
            cval=0.0,
            preserve_range=True,
        )
        return rotated > 0.5
