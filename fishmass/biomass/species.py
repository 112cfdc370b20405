"""Species allometric profiles.

Weight (g) = a * Length(cm)^b for per-object estimates, plus average weight
(g) and volume (cm^3) per individual for count-based population estimates.
"""

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_KEY = "default"


@dataclass(frozen=True)
class SpeciesProfile:
    name: str
    a: float
    b: float
    cross_section_ratio: float
    avg_weight: float
    avg_volume: float


# Indian / Indo-Pacific species
SPECIES_PROFILES: Dict[str, SpeciesProfile] = {
    "catfish": SpeciesProfile("catfish", 0.0046, 3.19, 0.80, 500.0, 500.0),
    "catla": SpeciesProfile("catla", 0.0200, 3.00, 0.45, 2000.0, 1950.0),
    "hilsa": SpeciesProfile("hilsa", 0.0158, 2.92, 0.40, 800.0, 780.0),
    "mackerel": SpeciesProfile("mackerel", 0.0045, 3.22, 0.55, 200.0, 190.0),
    "mud crab": SpeciesProfile("mud crab", 0.4300, 2.57, 0.30, 600.0, 550.0),
    "pomfret": SpeciesProfile("pomfret", 0.0324, 3.00, 0.15, 300.0, 290.0),
    "rohu": SpeciesProfile("rohu", 0.0130, 3.05, 0.55, 1500.0, 1450.0),
    "salmon": SpeciesProfile("salmon", 0.0100, 3.05, 0.55, 2500.0, 2400.0),
    "sardine": SpeciesProfile("sardine", 0.0093, 2.95, 0.50, 100.0, 95.0),
    "shrimp": SpeciesProfile("shrimp", 0.0039, 3.21, 0.80, 30.0, 28.0),
    "three spotted crab": SpeciesProfile("three spotted crab", 0.1340, 2.63, 0.30, 200.0, 190.0),
    "3 spotted crab": SpeciesProfile("3 spotted crab", 0.1340, 2.63, 0.30, 200.0, 190.0),
    "tuna": SpeciesProfile("tuna", 0.0145, 3.03, 0.60, 5000.0, 4800.0),
    DEFAULT_PROFILE_KEY: SpeciesProfile(DEFAULT_PROFILE_KEY, 0.0120, 3.00, 0.50, 500.0, 500.0),
}


class SpeciesRepository:
    """Case-insensitive species profile lookup with a guaranteed default."""

    def __init__(self, profiles: Optional[Mapping[str, SpeciesProfile]] = None):
        source = SPECIES_PROFILES if profiles is None else profiles
        self.profiles: Dict[str, SpeciesProfile] = {
            key.strip().lower(): profile for key, profile in source.items()
        }
        if DEFAULT_PROFILE_KEY not in self.profiles:
            self.profiles[DEFAULT_PROFILE_KEY] = SPECIES_PROFILES[DEFAULT_PROFILE_KEY]

        # Longest key first so "three spotted crab" beats "crab"-like prefixes
        self._match_order = sorted(
            (key for key in self.profiles if key != DEFAULT_PROFILE_KEY),
            key=lambda key: (-len(key), key),
        )

    @classmethod
    def from_yaml(cls, profiles_path: Path) -> "SpeciesRepository":
        """Built-in profiles overridden/extended by a YAML file.

        The file maps species names to ``a``, ``b``, ``cross_section_ratio``,
        ``avg_weight`` and ``avg_volume``. Missing fields keep the built-in
        value for known species and the default profile's value otherwise.
        """
        with open(profiles_path, 'r') as f:
            entries = yaml.safe_load(f) or {}
        if not isinstance(entries, dict):
            raise ValueError(f"Expected a mapping of species profiles in {profiles_path}")

        profiles = dict(SPECIES_PROFILES)
        for name, values in entries.items():
            key = str(name).strip().lower()
            base = profiles.get(key, SPECIES_PROFILES[DEFAULT_PROFILE_KEY])
            values = values or {}
            unknown = set(values) - {"a", "b", "cross_section_ratio", "avg_weight", "avg_volume"}
            if unknown:
                raise ValueError(f"Unknown fields for species '{name}': {sorted(unknown)}")
            profile = replace(base, name=key, **{k: float(v) for k, v in values.items()})
            if not 0.0 < profile.cross_section_ratio <= 1.0:
                raise ValueError(f"cross_section_ratio for '{name}' must be in (0, 1]")
            profiles[key] = profile

        logger.info(f"Loaded {len(entries)} species profiles from {profiles_path}")
        return cls(profiles)

    @property
    def default(self) -> SpeciesProfile:
        return self.profiles[DEFAULT_PROFILE_KEY]

    def lookup(self, species_name: str) -> SpeciesProfile:
        """Profile whose key occurs in ``species_name``, ignoring case.

        When several keys occur, the longest wins (ties alphabetical).
        Unknown names get the default profile.
        """
        query = (species_name or "").lower()
        for key in self._match_order:
            if key in query:
                return self.profiles[key]
        return self.default


_default_repository = SpeciesRepository()


def get_species_profile(species_name: str) -> SpeciesProfile:
    """Look up a built-in species profile."""
    return _default_repository.lookup(species_name)
