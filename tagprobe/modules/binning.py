"""
Kinematic Binning Maps for Tag-and-Probe Efficiencies

Maps continuous probe kinematics (supercluster Et, eta, number of good
primary vertices) onto discrete bin indices.

Edge policy (all schemes):
- Every bin is half-open [low, high), except the topmost bin which is
  closed on both ends [low, high].
- Values outside the scheme range map to OUT_OF_RANGE, never raise.

Binning schemes are a closed set (EtBinSet / EtaBinSet). Scheme names are
resolved once when the configuration is parsed; downstream code only ever
sees the enum members.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

import numpy as np

OUT_OF_RANGE: int = -1

# Pileup stratum sentinels. These two inactive states are distinct:
# COMBINED means pileup dependence is switched off, EXCLUDED means the
# vertex count is outside the configured pileup limits.
PU_EXCLUDED: int = -1
PU_COMBINED: int = -2

# ECAL barrel/endcap transition, boundaries inclusive
ECAL_GAP_LOW: float = 1.4442
ECAL_GAP_HIGH: float = 1.566

DEFAULT_PU_LIMITS: tuple[float, ...] = (0.0, 5.0, 10.0, 15.0, 20.0, 25.0, 30.0, 100.0)


@dataclass(frozen=True)
class BinningScheme:
    """
    Named, ordered partition of one kinematic axis.

    Attributes:
        name: Scheme name as used in configuration files
        edges: Strictly ascending bin edges (n_bins + 1 values)
        use_abs: Bin on |value| instead of value (eta schemes)
        exclude_gap: Probes in the ECAL gap must be dropped for this scheme
    """

    name: str
    edges: tuple[float, ...]
    use_abs: bool = False
    exclude_gap: bool = False

    def __post_init__(self) -> None:
        if len(self.edges) < 2:
            raise ValueError(f"Binning scheme {self.name} needs at least two edges")
        if any(hi <= lo for lo, hi in zip(self.edges[:-1], self.edges[1:])):
            raise ValueError(f"Binning scheme {self.name} edges must be strictly ascending")

    @property
    def n_bins(self) -> int:
        return len(self.edges) - 1

    def find_bin(self, value: float) -> int:
        """
        Locate the bin holding value.

        Args:
            value: Kinematic value (Et in GeV, eta)

        Returns:
            Bin index in [0, n_bins) or OUT_OF_RANGE
        """
        if value is None or math.isnan(value):
            return OUT_OF_RANGE
        x = abs(value) if self.use_abs else value

        low, high = self.edges[0], self.edges[-1]
        if x < low or x > high:
            return OUT_OF_RANGE
        # Topmost bin is closed
        if x == high:
            return self.n_bins - 1
        return int(np.searchsorted(self.edges, x, side="right")) - 1

    def bin_range(self, index: int) -> tuple[float, float]:
        """Return (low, high) edges of a bin."""
        if not 0 <= index < self.n_bins:
            raise IndexError(f"Bin {index} out of range for scheme {self.name}")
        return self.edges[index], self.edges[index + 1]


class EtBinSet(Enum):
    """Supercluster Et binning schemes (GeV)."""

    ETBINS1 = BinningScheme("ETBINS1", (10.0, 500.0))
    ETBINS2 = BinningScheme("ETBINS2", (10.0, 20.0, math.inf))
    ETBINS5 = BinningScheme("ETBINS5", (10.0, 20.0, 30.0, 40.0, 50.0, 500.0))
    ETBINS6 = BinningScheme("ETBINS6", (10.0, 15.0, 20.0, 30.0, 40.0, 50.0, 500.0))
    ETBINS7 = BinningScheme("ETBINS7", (10.0, 15.0, 20.0, 30.0, 40.0, 50.0, 100.0, 500.0))
    ETBINS8 = BinningScheme(
        "ETBINS8", (10.0, 15.0, 20.0, 30.0, 40.0, 50.0, 75.0, 100.0, 500.0)
    )
    ETBINS9 = BinningScheme(
        "ETBINS9", (10.0, 15.0, 20.0, 30.0, 40.0, 50.0, 60.0, 80.0, 100.0, 500.0)
    )

    @property
    def scheme(self) -> BinningScheme:
        return self.value


class EtaBinSet(Enum):
    """Supercluster eta binning schemes."""

    ETABINS1 = BinningScheme("ETABINS1", (0.0, 2.5), use_abs=True)
    # Barrel/endcap split: the only scheme that drops gap probes
    ETABINS2 = BinningScheme("ETABINS2", (0.0, 1.479, 2.5), use_abs=True, exclude_gap=True)
    ETABINS3 = BinningScheme("ETABINS3", (0.0, 0.8, 1.479, 2.5), use_abs=True)
    ETABINS5 = BinningScheme("ETABINS5", (0.0, 0.8, 1.4442, 1.566, 2.0, 2.5), use_abs=True)
    ETABINS4TEST = BinningScheme("ETABINS4TEST", (-2.5, -1.479, 0.0, 1.479, 2.5))

    @property
    def scheme(self) -> BinningScheme:
        return self.value


SchemeLike = BinningScheme | EtBinSet | EtaBinSet


def resolve_scheme(scheme: SchemeLike) -> BinningScheme:
    """Return the BinningScheme behind an enum member (or the scheme itself)."""
    if isinstance(scheme, (EtBinSet, EtaBinSet)):
        return scheme.value
    return scheme


def find_bin(value: float, scheme: SchemeLike) -> int:
    """Bin index of value in scheme, or OUT_OF_RANGE."""
    return resolve_scheme(scheme).find_bin(value)


def find_et_bin(et: float, scheme: SchemeLike) -> int:
    return find_bin(et, scheme)


def find_eta_bin(eta: float, scheme: SchemeLike) -> int:
    return find_bin(eta, scheme)


def number_of_et_bins(scheme: SchemeLike) -> int:
    return resolve_scheme(scheme).n_bins


def number_of_eta_bins(scheme: SchemeLike) -> int:
    return resolve_scheme(scheme).n_bins


def is_ecal_gap(eta: float) -> bool:
    """True if eta lies in the ECAL barrel/endcap gap (boundaries included)."""
    return ECAL_GAP_LOW <= abs(eta) <= ECAL_GAP_HIGH


def requires_gap_exclusion(scheme: SchemeLike) -> bool:
    return resolve_scheme(scheme).exclude_gap


def template_bin(et_index: int, eta_index: int, eta_scheme: SchemeLike) -> int:
    """
    Row-major composite index: n_eta * et_index + eta_index.

    Either component being OUT_OF_RANGE yields OUT_OF_RANGE.
    """
    if et_index == OUT_OF_RANGE or eta_index == OUT_OF_RANGE:
        return OUT_OF_RANGE
    return number_of_eta_bins(eta_scheme) * et_index + eta_index


def split_template_bin(index: int, eta_scheme: SchemeLike) -> tuple[int, int]:
    """Inverse of template_bin: composite index -> (et_index, eta_index)."""
    if index == OUT_OF_RANGE:
        return OUT_OF_RANGE, OUT_OF_RANGE
    return divmod(index, number_of_eta_bins(eta_scheme))


def find_pu_bin(n_vertices: float, limits: Sequence[float] = DEFAULT_PU_LIMITS) -> int:
    """
    Pileup bin of a vertex count, PU_EXCLUDED when outside the limits.

    Same edge policy as the kinematic schemes.
    """
    low, high = limits[0], limits[-1]
    if n_vertices < low or n_vertices > high:
        return PU_EXCLUDED
    if n_vertices == high:
        return len(limits) - 2
    return int(np.searchsorted(limits, n_vertices, side="right")) - 1


def pileup_stratum(
    n_vertices: float, dependence: bool, limits: Sequence[float] = DEFAULT_PU_LIMITS
) -> int:
    """
    Stratum used for template bookkeeping.

    Returns:
        PU_COMBINED when pileup dependence is disabled, otherwise the
        pileup bin index or PU_EXCLUDED.
    """
    if not dependence:
        return PU_COMBINED
    return find_pu_bin(n_vertices, limits)


def n_pu_strata(limits: Sequence[float] = DEFAULT_PU_LIMITS) -> int:
    return len(limits) - 1
