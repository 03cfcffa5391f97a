"""
Weighted invariant-mass histograms for pass / fail probe populations.

Thin wrapper around a `hist.Hist` with a single regular axis and Weight
storage. One instance exists per (kinematic bin, pass/fail, pileup stratum)
combination; it is filled during aggregation, frozen afterwards and then
either fitted or written to the template store.

Bin sums are accumulated exactly (non-overlapping partial sums) and
rounded once into the hist storage, so the contents do not depend on the
order in which probes are filled or histograms merged.
"""

from __future__ import annotations

import math

import numpy as np
from hist import Hist

from .binning import PU_COMBINED, PU_EXCLUDED
from .exceptions import HistogramFrozenError

DEFAULT_MASS_LOW: float = 60.0
DEFAULT_MASS_HIGH: float = 120.0
DEFAULT_MASS_BINS: int = 30

# Name fragment of probes outside the pileup limits (never templated)
PU_OUTSIDE_TAG: str = "puOutside"


def _add_exact(partials: list[float], x: float) -> None:
    """Add x to a list of non-overlapping partials whose sum stays exact."""
    i = 0
    for y in partials:
        if abs(x) < abs(y):
            x, y = y, x
        hi = x + y
        lo = y - (hi - x)
        if lo:
            partials[i] = lo
            i += 1
        x = hi
    partials[i:] = [x]


def stratum_tag(stratum: int) -> str:
    """Name fragment for a pileup stratum ('puCombined' or 'pu<k>')."""
    if stratum == PU_COMBINED:
        return "puCombined"
    if stratum == PU_EXCLUDED or stratum < 0:
        raise ValueError(f"No histogram name for excluded pileup stratum {stratum}")
    return f"pu{stratum}"


def histogram_name(kind: str, et_index: int, eta_index: int, stratum: int = PU_COMBINED) -> str:
    """e.g. pass_et0_eta1_puCombined, fail_et2_eta0_pu3"""
    if kind not in ("pass", "fail"):
        raise ValueError(f"Histogram kind must be 'pass' or 'fail', got {kind!r}")
    return f"{kind}_et{et_index}_eta{eta_index}_{stratum_tag(stratum)}"


class MassHistogram:
    """
    Fixed-width weighted histogram over [mass_low, mass_high].

    The window is closed: a mass exactly at mass_high is counted in the
    top bin rather than the overflow.
    """

    def __init__(
        self,
        n_bins: int = DEFAULT_MASS_BINS,
        mass_low: float = DEFAULT_MASS_LOW,
        mass_high: float = DEFAULT_MASS_HIGH,
        name: str = "mass",
    ) -> None:
        if n_bins <= 0:
            raise ValueError(f"n_bins must be positive, got {n_bins}")
        if mass_high <= mass_low:
            raise ValueError(f"Empty mass window [{mass_low}, {mass_high}]")
        self.name = name
        self._hist: Hist = Hist.new.Reg(n_bins, mass_low, mass_high, name="mass").Weight()
        self._frozen = False
        # Exact per-bin sums of weights and squared weights
        self._sumw: list[list[float]] = [[] for _ in range(n_bins)]
        self._sumw2: list[list[float]] = [[] for _ in range(n_bins)]

    @classmethod
    def from_hist(cls, h: Hist, name: str = "mass") -> "MassHistogram":
        """Wrap an existing one-axis regular hist.Hist (copied)."""
        axis = h.axes[0]
        obj = cls(len(axis), float(axis.edges[0]), float(axis.edges[-1]), name=name)
        view = obj._hist.view(flow=False)
        src = h.view(flow=False)
        if src.dtype.names and "variance" in src.dtype.names:
            view["value"] = src["value"]
            view["variance"] = src["variance"]
        else:
            # Double storage: Poisson variances
            view["value"] = np.asarray(src, dtype=float)
            view["variance"] = np.asarray(src, dtype=float)
        obj._sync_sums()
        return obj

    @classmethod
    def from_arrays(
        cls,
        values: np.ndarray,
        edges: np.ndarray,
        variances: np.ndarray | None = None,
        name: str = "mass",
    ) -> "MassHistogram":
        """Build from explicit bin contents (variances default to contents)."""
        edges = np.asarray(edges, dtype=float)
        values = np.asarray(values, dtype=float)
        if len(edges) != len(values) + 1:
            raise ValueError("edges must have one more entry than values")
        obj = cls(len(values), float(edges[0]), float(edges[-1]), name=name)
        view = obj._hist.view(flow=False)
        view["value"] = values
        view["variance"] = values if variances is None else np.asarray(variances, dtype=float)
        obj._sync_sums()
        return obj

    # Properties
    # --------------------------------------------------------------------------

    @property
    def n_bins(self) -> int:
        return len(self._hist.axes[0])

    @property
    def mass_low(self) -> float:
        return float(self._hist.axes[0].edges[0])

    @property
    def mass_high(self) -> float:
        return float(self._hist.axes[0].edges[-1])

    @property
    def edges(self) -> np.ndarray:
        return np.asarray(self._hist.axes[0].edges)

    @property
    def centers(self) -> np.ndarray:
        return np.asarray(self._hist.axes[0].centers)

    @property
    def bin_width(self) -> float:
        return (self.mass_high - self.mass_low) / self.n_bins

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    @property
    def hist(self) -> Hist:
        """The underlying hist.Hist (treat as read-only)."""
        return self._hist

    # Filling
    # --------------------------------------------------------------------------

    def fill(self, mass: float, weight: float = 1.0) -> bool:
        """
        Add weight at mass.

        Returns:
            False if mass is outside the window (nothing filled), else True

        Raises:
            HistogramFrozenError: If the histogram has been frozen
        """
        if self._frozen:
            raise HistogramFrozenError(f"Histogram '{self.name}' is frozen")
        if not self.mass_low <= mass <= self.mass_high:
            return False
        if mass == self.mass_high:
            mass = np.nextafter(self.mass_high, self.mass_low)
        i = int(self._hist.axes[0].index(mass))
        weight = float(weight)
        _add_exact(self._sumw[i], weight)
        _add_exact(self._sumw2[i], weight * weight)
        self._store_bin(i)
        return True

    def _store_bin(self, i: int) -> None:
        view = self._hist.view(flow=False)
        view["value"][i] = math.fsum(self._sumw[i])
        view["variance"][i] = math.fsum(self._sumw2[i])

    def _sync_sums(self) -> None:
        """Restart the exact sums from the current storage contents."""
        self._sumw = [[v] if v else [] for v in map(float, self.values())]
        self._sumw2 = [[v] if v else [] for v in map(float, self.variances())]

    def freeze(self) -> "MassHistogram":
        self._frozen = True
        return self

    # Read access
    # --------------------------------------------------------------------------

    def values(self) -> np.ndarray:
        return np.array(self._hist.values(flow=False), dtype=float)

    def variances(self) -> np.ndarray:
        return np.array(self._hist.variances(flow=False), dtype=float)

    def total(self) -> float:
        return float(self.values().sum())

    def same_binning(self, other: "MassHistogram") -> bool:
        return self.n_bins == other.n_bins and np.allclose(self.edges, other.edges)

    # Combination
    # --------------------------------------------------------------------------

    def merge(self, other: "MassHistogram") -> "MassHistogram":
        """
        Bin-wise sum of two histograms (neither operand is modified).

        Used to combine partial histograms from sharded aggregation.
        """
        if not self.same_binning(other):
            raise ValueError(
                f"Cannot merge '{self.name}' ({self.n_bins} bins) "
                f"with '{other.name}' ({other.n_bins} bins)"
            )
        merged = self.copy()
        for i in range(self.n_bins):
            for x in other._sumw[i]:
                _add_exact(merged._sumw[i], x)
            for x in other._sumw2[i]:
                _add_exact(merged._sumw2[i], x)
            merged._store_bin(i)
        return merged

    __add__ = merge

    def rebin(self, factor: int) -> "MassHistogram":
        """Merge groups of `factor` adjacent bins (n_bins must divide evenly)."""
        if factor < 1 or self.n_bins % factor != 0:
            raise ValueError(f"Cannot rebin {self.n_bins} bins by a factor of {factor}")
        if factor == 1:
            return self.copy()
        rebinned = MassHistogram(
            self.n_bins // factor, self.mass_low, self.mass_high, name=self.name
        )
        for i in range(self.n_bins):
            for x in self._sumw[i]:
                _add_exact(rebinned._sumw[i // factor], x)
            for x in self._sumw2[i]:
                _add_exact(rebinned._sumw2[i // factor], x)
        for j in range(rebinned.n_bins):
            rebinned._store_bin(j)
        return rebinned

    def copy(self) -> "MassHistogram":
        clone = MassHistogram(self.n_bins, self.mass_low, self.mass_high, name=self.name)
        clone._hist = self._hist.copy()
        clone._sumw = [list(p) for p in self._sumw]
        clone._sumw2 = [list(p) for p in self._sumw2]
        return clone

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MassHistogram):
            return NotImplemented
        return (
            self.same_binning(other)
            and np.array_equal(self.values(), other.values())
            and np.array_equal(self.variances(), other.variances())
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return (
            f"MassHistogram(name={self.name!r}, bins={self.n_bins}, "
            f"range=[{self.mass_low}, {self.mass_high}], total={self.total():.3f})"
        )
