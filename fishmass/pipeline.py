"""Main pipeline orchestration module.

This module coordinates scale calibration, shape measurement, species matching,
biomass estimation and result composition for one image at a time. Model
inference stays with the segmentation and detection collaborators passed in.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from fishmass.biomass.estimator import AggregateResult, BiomassEstimator, ObjectEstimate
from fishmass.biomass.species import SpeciesRepository
from fishmass.matching.species_matcher import (
    DEFAULT_IOU_THRESHOLD,
    DetectionBox,
    SpeciesMatcher,
    count_species,
)
from fishmass.preprocessing.calibration import (
    DEFAULT_COIN_DIAMETER_UNITS,
    DEFAULT_MARKER_SIZE_UNITS,
    DEFAULT_PIXELS_PER_UNIT,
    ReferenceMethod,
    ScaleCalibrator,
    ScaleReference,
)
from fishmass.preprocessing.geometry import GeometryBackend
from fishmass.preprocessing.measurement import DEFAULT_CROSS_SECTION_RATIO, ShapeMeasurer
from fishmass.preprocessing.segmentation import Detector, Segmenter, SegmentationResult, fit_mask
from fishmass.visual.composer import (
    AnalysisResult,
    ColorContext,
    OutputMode,
    ResultComposer,
    describe_aggregate,
    result_title,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    cross_section_ratio_default: float = DEFAULT_CROSS_SECTION_RATIO
    reference_method: ReferenceMethod = ReferenceMethod.COIN
    known_coin_diameter_units: float = DEFAULT_COIN_DIAMETER_UNITS
    known_marker_size_units: float = DEFAULT_MARKER_SIZE_UNITS
    fallback_pixels_per_unit: float = DEFAULT_PIXELS_PER_UNIT
    output_mode: OutputMode = OutputMode.SEPARATE
    piles_mode: bool = False
    iou_threshold: float = DEFAULT_IOU_THRESHOLD
    pile_density: float = 1.0

    def __post_init__(self):
        self.reference_method = ReferenceMethod.parse(self.reference_method)
        self.output_mode = OutputMode.parse(self.output_mode)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "PipelineConfig":
        """Build from the ``calibration`` and ``analysis`` sections of a loaded YAML config."""
        calibration = config.get("calibration") or {}
        analysis = config.get("analysis") or {}

        mode = str(analysis.get("mode", "individual")).lower()
        if mode not in ("individual", "piles", "counts"):
            raise ValueError(f"Unknown analysis mode: {mode}. Must be individual, piles or counts")

        return cls(
            cross_section_ratio_default=float(
                analysis.get("cross_section_ratio_default", DEFAULT_CROSS_SECTION_RATIO)
            ),
            reference_method=calibration.get("reference_method", ReferenceMethod.COIN),
            known_coin_diameter_units=float(
                calibration.get("known_coin_diameter_units", DEFAULT_COIN_DIAMETER_UNITS)
            ),
            known_marker_size_units=float(
                calibration.get("known_marker_size_units", DEFAULT_MARKER_SIZE_UNITS)
            ),
            fallback_pixels_per_unit=float(
                calibration.get("fallback_pixels_per_unit", DEFAULT_PIXELS_PER_UNIT)
            ),
            output_mode=analysis.get("output_mode", OutputMode.SEPARATE),
            piles_mode=mode == "piles",
            iou_threshold=float(analysis.get("iou_threshold", DEFAULT_IOU_THRESHOLD)),
            pile_density=float(analysis.get("pile_density", 1.0)),
        )


@dataclass
class PipelineResult:
    """Everything one run produced."""

    aggregate: AggregateResult
    analyses: List[AnalysisResult] = field(default_factory=list)
    reference: Optional[ScaleReference] = None
    detections: List[DetectionBox] = field(default_factory=list)

    @property
    def calibrated(self) -> bool:
        return self.aggregate.calibrated

    @property
    def title(self) -> str:
        return result_title(self.calibrated, from_counts=self.aggregate.from_counts)

    @property
    def summary(self) -> str:
        return describe_aggregate(self.aggregate)


class BiomassPipeline:
    """Runs calibration -> measurement -> species matching -> estimation -> composition.

    Runs are serialized: a call made while another run is in flight waits for it.
    Collaborators are shared across runs and only ever read.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        object_segmenter: Optional[Segmenter] = None,
        detector: Optional[Detector] = None,
        reference_segmenter: Optional[Segmenter] = None,
        pile_segmenter: Optional[Segmenter] = None,
        repository: Optional[SpeciesRepository] = None,
        geometry: Optional[GeometryBackend] = None,
    ):
        """Initialize pipeline.

        Args:
            config: Pipeline configuration (defaults to PipelineConfig())
            object_segmenter: Segments individual objects (e.g. fish)
            detector: Detects species boxes used to label the segmented objects
            reference_segmenter: Segments the reference coin
            pile_segmenter: Segments bulk piles
            repository: Species profiles (defaults to the built-in table)
            geometry: Geometry backend shared by calibration and measurement
        """
        self.config = config or PipelineConfig()
        self.object_segmenter = object_segmenter
        self.detector = detector
        self.reference_segmenter = reference_segmenter
        self.pile_segmenter = pile_segmenter
        self.repository = repository or SpeciesRepository()

        self.calibrator = ScaleCalibrator(
            method=self.config.reference_method,
            known_coin_diameter_units=self.config.known_coin_diameter_units,
            known_marker_size_units=self.config.known_marker_size_units,
            fallback_pixels_per_unit=self.config.fallback_pixels_per_unit,
            geometry=geometry,
        )
        self.measurer = ShapeMeasurer(geometry=geometry, default_ratio=self.config.cross_section_ratio_default)
        self.matcher = SpeciesMatcher(iou_threshold=self.config.iou_threshold)
        self.estimator = BiomassEstimator(self.repository, pile_density=self.config.pile_density)
        self.composer = ResultComposer(mode=self.config.output_mode)

        self._lock = threading.Lock()

    def run(self, image: np.ndarray) -> PipelineResult:
        """Analyze one decoded image.

        Args:
            image: RGB (H, W, 3), RGBA or grayscale image array

        Returns:
            PipelineResult with exactly one AggregateResult (possibly empty)
        """
        _check_image(image)

        with self._lock:
            colors = ColorContext()
            reference = self._calibrate(image)
            shape = image.shape[:2]

            if self.config.piles_mode:
                detections = []
                estimates = self._estimate_piles(image, shape, reference)
            else:
                detections = self._detect(image)
                estimates = self._estimate_objects(image, shape, reference, detections)

            aggregate = self.estimator.aggregate(estimates, calibrated=reference.calibrated)
            analyses = self.composer.compose(image, aggregate, reference, colors)

            logger.info(
                f"Run complete: {len(aggregate.objects)} object(s), "
                f"{aggregate.total_weight:.0f}g, {aggregate.total_volume:.0f}cm^3, "
                f"calibrated={reference.calibrated}"
            )
            return PipelineResult(
                aggregate=aggregate,
                analyses=analyses,
                reference=reference,
                detections=detections,
            )

    def run_counts(self, image: np.ndarray) -> PipelineResult:
        """Population estimate from detector counts and average weights only."""
        _check_image(image)

        with self._lock:
            detections = self._detect(image)
            counts = count_species(detections)
            aggregate = self.estimator.estimate_from_counts(counts)
            logger.info(f"Counted {sum(counts.values())} object(s) in {len(counts)} class(es)")
            return PipelineResult(aggregate=aggregate, detections=detections)

    def _calibrate(self, image: np.ndarray) -> ScaleReference:
        try:
            return self._calibrate_reference(image)
        except Exception as e:
            logger.warning(f"Calibration failed, using fallback scale: {e}")
            return self.calibrator.fallback()

    def _calibrate_reference(self, image: np.ndarray) -> ScaleReference:
        if self.calibrator.method == ReferenceMethod.ARUCO:
            return self.calibrator.calibrate(image=image)

        references = self._segment("reference segmenter", self.reference_segmenter, image)
        if not references:
            return self.calibrator.calibrate(reference_mask=None)

        best = max(references, key=lambda r: r.confidence)
        return self.calibrator.calibrate(reference_mask=fit_mask(best.mask, image.shape[:2]))

    def _estimate_piles(self, image, shape, reference) -> List[ObjectEstimate]:
        estimates = []
        for result in self._segment("pile segmenter", self.pile_segmenter, image):
            try:
                mask = fit_mask(result.mask, shape)
                measurement = self.measurer.measure(
                    mask, self.measurer.default_ratio, reference.pixels_per_unit
                )
                estimates.append(self.estimator.estimate_pile(measurement, mask=mask, box=result.box))
            except Exception as e:
                logger.warning(f"Skipping pile '{result.class_name}': {e}")
        return estimates

    def _estimate_objects(self, image, shape, reference, detections) -> List[ObjectEstimate]:
        estimates = []
        for result in self._segment("object segmenter", self.object_segmenter, image):
            try:
                estimates.append(self._estimate_object(result, shape, reference, detections))
            except Exception as e:
                logger.warning(f"Skipping object '{result.class_name}': {e}")
        return estimates

    def _estimate_object(
        self,
        result: SegmentationResult,
        shape,
        reference: ScaleReference,
        detections: List[DetectionBox],
    ) -> ObjectEstimate:
        ppu = reference.pixels_per_unit
        mask = fit_mask(result.mask, shape)

        provisional = self.measurer.measure_provisional(mask, ppu, result.class_name, box=result.box)
        match = self.matcher.match(provisional.box, detections, fallback_label=result.class_name)
        profile = self.repository.lookup(match.label)
        final = self.measurer.finalize(
            provisional, mask, match.label, profile.cross_section_ratio, ppu
        )
        return self.estimator.estimate_accurate(final, mask=mask)

    # A failing collaborator counts as zero results; the run carries on
    def _segment(
        self,
        name: str,
        segmenter: Optional[Segmenter],
        image: np.ndarray,
    ) -> List[SegmentationResult]:
        if segmenter is None:
            return []
        try:
            return list(segmenter.segment(image) or [])
        except Exception as e:
            logger.warning(f"{name} failed, continuing without it: {e}")
            return []

    def _detect(self, image: np.ndarray) -> List[DetectionBox]:
        if self.detector is None:
            return []
        try:
            return list(self.detector.detect(image) or [])
        except Exception as e:
            logger.warning(f"Detector failed, continuing without it: {e}")
            return []


def _check_image(image: Optional[np.ndarray]) -> None:
    if image is None:
        raise ValueError("Image is required")
    if not isinstance(image, np.ndarray) or image.ndim not in (2, 3):
        raise ValueError(f"Expected a 2D or 3D image array, got {getattr(image, 'shape', type(image))}")
