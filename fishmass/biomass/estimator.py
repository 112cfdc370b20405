"""Weight and volume estimation and per-species aggregation.

This module handles:
- Per-object allometric weight (weight = a * length^b) from final measurements
- Bulk piles modelled as cones (water-equivalent density)
- Population estimates from species counts and average weights
- Grouping of estimates into per-species biomass summaries
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np

from fishmass.biomass.species import SpeciesRepository
from fishmass.preprocessing.measurement import FinalMeasurement, Measurement

logger = logging.getLogger(__name__)

PILE_LABEL = "Pile"
# g/cm^3, water-equivalent
DEFAULT_PILE_DENSITY = 1.0


class EstimationMode(str, Enum):
    ACCURATE = "accurate"
    PILE = "pile"
    COUNT = "count"


@dataclass
class ObjectEstimate:
    """Weight and volume of one measured object."""

    measurement: Measurement
    species: str
    weight: float
    volume: float
    mode: EstimationMode
    mask: Optional[np.ndarray] = field(default=None, repr=False)
    box: Optional[Tuple[float, float, float, float]] = None


@dataclass
class SpeciesSummary:
    species: str
    count: int
    total_weight: float
    total_volume: float


@dataclass
class AggregateResult:
    """Per-object estimates and per-species totals for one analysis run."""

    objects: List[ObjectEstimate] = field(default_factory=list)
    summaries: List[SpeciesSummary] = field(default_factory=list)
    calibrated: bool = False
    skipped: int = 0
    # Set for population estimates that never used a scale
    mode: Optional[EstimationMode] = None

    @property
    def from_counts(self) -> bool:
        return self.mode == EstimationMode.COUNT

    @property
    def total_weight(self) -> float:
        return float(sum(s.total_weight for s in self.summaries))

    @property
    def total_volume(self) -> float:
        return float(sum(s.total_volume for s in self.summaries))

    @property
    def total_count(self) -> int:
        return sum(s.count for s in self.summaries)

    @property
    def is_empty(self) -> bool:
        return not self.summaries

    def species_counts(self) -> Dict[str, int]:
        return {s.species: s.count for s in self.summaries}

    def species_distribution(self) -> List[dict]:
        """Share of each species in the total object count, most frequent first.

        Returns:
            List of ``{"species", "count", "percent"}`` dictionaries; ties keep
            the summary order
        """
        total = self.total_count
        if total == 0:
            return []
        ordered = sorted(self.summaries, key=lambda s: s.count, reverse=True)
        return [
            {"species": s.species, "count": s.count, "percent": 100.0 * s.count / total}
            for s in ordered
        ]

    def summary_dict(self) -> dict:
        """Return a dictionary summary for JSON output."""
        return {
            "calibrated": self.calibrated,
            "n_objects": len(self.objects),
            "skipped": self.skipped,
            "total_weight_g": round(self.total_weight, 2),
            "total_volume_cm3": round(self.total_volume, 2),
            "species": [
                {
                    "species": s.species,
                    "count": s.count,
                    "weight_g": round(s.total_weight, 2),
                    "volume_cm3": round(s.total_volume, 2),
                }
                for s in self.summaries
            ],
            "distribution": [
                {**share, "percent": round(share["percent"], 1)}
                for share in self.species_distribution()
            ],
        }


def allometric_weight(length: float, a: float, b: float) -> float:
    """Weight from length with the allometric formula a * length^b."""
    if length <= 0:
        return 0.0
    return float(a * length ** b)


def cone_volume(diameter: float, height: float) -> float:
    """Volume of a cone: (1/3) * pi * r^2 * h."""
    radius = diameter / 2.0
    return float(np.pi * radius ** 2 * height / 3.0)


class BiomassEstimator:
    """Converts measurements or counts into weight and volume."""

    def __init__(
        self,
        repository: Optional[SpeciesRepository] = None,
        pile_density: float = DEFAULT_PILE_DENSITY,
    ):
        if pile_density <= 0:
            raise ValueError("pile_density must be positive")
        self.repository = repository or SpeciesRepository()
        self.pile_density = pile_density

    def estimate_accurate(
        self,
        final: FinalMeasurement,
        mask: Optional[np.ndarray] = None,
        box: Optional[Tuple[float, float, float, float]] = None,
    ) -> ObjectEstimate:
        """Allometric weight of one object from its species-specific measurement."""
        profile = self.repository.lookup(final.species)
        measurement = final.measurement
        weight = allometric_weight(measurement.length_units, profile.a, profile.b)
        logger.debug(
            f"{final.species} ({profile.name}): length {measurement.length_units:.2f} "
            f"-> {weight:.1f}g, volume {measurement.volume_units:.1f}"
        )
        return ObjectEstimate(
            measurement=measurement,
            species=final.species,
            weight=weight,
            volume=measurement.volume_units,
            mode=EstimationMode.ACCURATE,
            mask=mask,
            box=box if box is not None else final.box,
        )

    def estimate_pile(
        self,
        measurement: Measurement,
        mask: Optional[np.ndarray] = None,
        box: Optional[Tuple[float, float, float, float]] = None,
    ) -> ObjectEstimate:
        """Treat a pile's oriented box as a cone (base diameter = depth, height = length)."""
        volume = cone_volume(measurement.depth_units, measurement.length_units)
        return ObjectEstimate(
            measurement=measurement,
            species=PILE_LABEL,
            weight=volume * self.pile_density,
            volume=volume,
            mode=EstimationMode.PILE,
            mask=mask,
            box=box,
        )

    def estimate_from_counts(
        self,
        counts: Mapping[str, int],
        calibrated: bool = False,
    ) -> AggregateResult:
        """Population biomass from species counts and average individual weight/volume."""
        summaries = []
        for species, count in counts.items():
            if count < 0:
                raise ValueError(f"Negative count for '{species}'")
            if count == 0:
                continue
            profile = self.repository.lookup(species)
            summaries.append(SpeciesSummary(
                species=species,
                count=int(count),
                total_weight=count * profile.avg_weight,
                total_volume=count * profile.avg_volume,
            ))

        summaries.sort(key=lambda s: s.total_weight, reverse=True)
        return AggregateResult(
            objects=[],
            summaries=summaries,
            calibrated=calibrated,
            mode=EstimationMode.COUNT,
        )

    def aggregate(
        self,
        estimates: List[ObjectEstimate],
        calibrated: bool,
    ) -> AggregateResult:
        """Group estimates by species and total them.

        Estimates with an empty measurement are left out and counted as skipped.
        Summaries are sorted by total weight, heaviest first.
        """
        kept = [e for e in estimates if not e.measurement.is_empty]
        skipped = len(estimates) - len(kept)
        if skipped:
            logger.warning(f"Excluded {skipped} object(s) with empty measurements")

        groups: Dict[str, SpeciesSummary] = {}
        for estimate in kept:
            summary = groups.get(estimate.species)
            if summary is None:
                summary = SpeciesSummary(estimate.species, 0, 0.0, 0.0)
                groups[estimate.species] = summary
            summary.count += 1
            summary.total_weight += estimate.weight
            summary.total_volume += estimate.volume

        summaries = sorted(groups.values(), key=lambda s: s.total_weight, reverse=True)
        return AggregateResult(
            objects=kept,
            summaries=summaries,
            calibrated=calibrated,
            skipped=skipped,
        )
