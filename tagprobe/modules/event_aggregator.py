"""
Event Aggregation for Tag-and-Probe Efficiencies

Consumes streams of probe records, applies the probe acceptance cuts and
fills per-bin pass/fail mass histograms (plus, for simulation, the mass
templates used later as fixed shapes when fitting data).

Cut flow applied to every record, in this order:
    1. probe Et >= min_probe_et (10 GeV)
    2. probe not in the ECAL gap, if the eta scheme excludes the gap
    3. tag-probe mass inside [mass_low, mass_high]

Histogram filling is a commutative accumulation: the result does not
depend on the order in which records arrive, and partial aggregators
built on separate input shards can be merged bin by bin.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator

from .binning import (
    OUT_OF_RANGE,
    PU_COMBINED,
    PU_EXCLUDED,
    find_et_bin,
    find_eta_bin,
    is_ecal_gap,
    number_of_et_bins,
    number_of_eta_bins,
    pileup_stratum,
    requires_gap_exclusion,
)
from .config import EfficiencyConfig
from .exceptions import InputError
from .histograms import PU_OUTSIDE_TAG, MassHistogram, histogram_name


@dataclass(frozen=True)
class ProbeRecord:
    """One tag-probe pair outcome (GeV units)."""

    mass: float
    et: float
    eta: float
    n_good_vertices: int
    weight: float = 1.0
    passed: bool = True


@dataclass
class HistogramPair:
    """Pass and fail mass histograms for one (stratum, et, eta) key."""

    passing: MassHistogram
    failing: MassHistogram

    def select(self, passed: bool) -> MassHistogram:
        return self.passing if passed else self.failing

    def freeze(self) -> None:
        self.passing.freeze()
        self.failing.freeze()

    def merge(self, other: "HistogramPair") -> "HistogramPair":
        return HistogramPair(self.passing.merge(other.passing), self.failing.merge(other.failing))


@dataclass
class CutFlowCounters:
    """Running tag-probe pair counters for data-quality checks."""

    total: int = 0
    pass_et: int = 0
    pass_eta: int = 0
    in_mass_window: int = 0
    pass_entries: int = 0
    fail_entries: int = 0

    def merge(self, other: "CutFlowCounters") -> "CutFlowCounters":
        return CutFlowCounters(
            total=self.total + other.total,
            pass_et=self.pass_et + other.pass_et,
            pass_eta=self.pass_eta + other.pass_eta,
            in_mass_window=self.in_mass_window + other.in_mass_window,
            pass_entries=self.pass_entries + other.pass_entries,
            fail_entries=self.fail_entries + other.fail_entries,
        )


class EventAggregator:
    """
    Single-pass histogram builder for tag-and-probe pairs.

    Attributes:
        config: Run configuration
        counters: Cut-flow counters
        histograms: {(et, eta): HistogramPair} inclusive in pileup
        stratum_histograms: {(stratum, et, eta): HistogramPair}, only when
            pileup dependence is enabled
        pileup_outside: {(et, eta): HistogramPair} of probes outside the
            pileup limits, only when pileup dependence is enabled
        templates: {(stratum, et, eta): HistogramPair} at template binning,
            only for simulation; stratum is PU_COMBINED when pileup
            dependence is disabled
        total_pass / total_fail: Inclusive mass histograms of all selected probes
    """

    def __init__(self, config: EfficiencyConfig) -> None:
        self.config = config
        self.logger = logging.getLogger("TagProbe.EventAggregator")

        self.n_et = number_of_et_bins(config.et_binning)
        self.n_eta = number_of_eta_bins(config.eta_binning)
        self.exclude_gap = requires_gap_exclusion(config.eta_binning)
        self.fill_templates = not config.is_data

        self.counters = CutFlowCounters()
        self._frozen = False

        mass = config.mass
        self.total_pass = MassHistogram(mass.bins, mass.low, mass.high, name="hMassPass")
        self.total_fail = MassHistogram(mass.bins, mass.low, mass.high, name="hMassFail")

        self.histograms: dict[tuple[int, int], HistogramPair] = {}
        self.stratum_histograms: dict[tuple[int, int, int], HistogramPair] = {}
        self.pileup_outside: dict[tuple[int, int], HistogramPair] = {}
        self.templates: dict[tuple[int, int, int], HistogramPair] = {}

        # All cells exist up front so that empty bins are reported, not skipped
        for et_idx in range(self.n_et):
            for eta_idx in range(self.n_eta):
                self.histograms[(et_idx, eta_idx)] = self._new_pair(
                    et_idx, eta_idx, PU_COMBINED, mass.bins
                )
                if config.pileup_dependence:
                    self.pileup_outside[(et_idx, eta_idx)] = self._outside_pair(et_idx, eta_idx)
                for stratum in self.strata:
                    if config.pileup_dependence:
                        self.stratum_histograms[(stratum, et_idx, eta_idx)] = self._new_pair(
                            et_idx, eta_idx, stratum, mass.bins
                        )
                    if self.fill_templates:
                        self.templates[(stratum, et_idx, eta_idx)] = self._new_pair(
                            et_idx, eta_idx, stratum, mass.template_bins
                        )

    @property
    def strata(self) -> list[int]:
        """Pileup strata in use: [PU_COMBINED] or [0, ..., n-1]."""
        if self.config.pileup_dependence:
            return list(range(self.config.n_pu_strata))
        return [PU_COMBINED]

    def _new_pair(self, et_idx: int, eta_idx: int, stratum: int, n_bins: int) -> HistogramPair:
        mass = self.config.mass
        return HistogramPair(
            MassHistogram(n_bins, mass.low, mass.high, histogram_name("pass", et_idx, eta_idx, stratum)),
            MassHistogram(n_bins, mass.low, mass.high, histogram_name("fail", et_idx, eta_idx, stratum)),
        )

    def _outside_pair(self, et_idx: int, eta_idx: int) -> HistogramPair:
        mass = self.config.mass
        suffix = f"et{et_idx}_eta{eta_idx}_{PU_OUTSIDE_TAG}"
        return HistogramPair(
            MassHistogram(mass.bins, mass.low, mass.high, f"pass_{suffix}"),
            MassHistogram(mass.bins, mass.low, mass.high, f"fail_{suffix}"),
        )

    # Processing
    # --------------------------------------------------------------------------

    def add(self, record: ProbeRecord) -> bool:
        """
        Apply the cut flow to one record and fill histograms if accepted.

        Returns:
            True if the probe passed all cuts
        """
        counters = self.counters
        counters.total += 1
        if record.passed:
            counters.pass_entries += 1
        else:
            counters.fail_entries += 1

        if record.et < self.config.mass.min_probe_et:
            return False
        counters.pass_et += 1

        # Gap probes are dropped only for schemes that ask for it
        if self.exclude_gap and is_ecal_gap(record.eta):
            return False
        counters.pass_eta += 1

        mass = self.config.mass
        if record.mass < mass.low or record.mass > mass.high:
            return False
        counters.in_mass_window += 1

        (self.total_pass if record.passed else self.total_fail).fill(record.mass, record.weight)

        et_idx = find_et_bin(record.et, self.config.et_binning)
        eta_idx = find_eta_bin(record.eta, self.config.eta_binning)
        if et_idx == OUT_OF_RANGE or eta_idx == OUT_OF_RANGE:
            return True

        self.histograms[(et_idx, eta_idx)].select(record.passed).fill(record.mass, record.weight)

        stratum = pileup_stratum(
            record.n_good_vertices, self.config.pileup_dependence, self.config.pu_limits
        )
        if stratum == PU_EXCLUDED:
            # Out of the pileup range: no template, but still part of the efficiency
            self.pileup_outside[(et_idx, eta_idx)].select(record.passed).fill(record.mass, record.weight)
            return True

        if self.config.pileup_dependence:
            self.stratum_histograms[(stratum, et_idx, eta_idx)].select(record.passed).fill(
                record.mass, record.weight
            )
        if self.fill_templates:
            self.templates[(stratum, et_idx, eta_idx)].select(record.passed).fill(
                record.mass, record.weight
            )
        return True

    def process(self, records: Iterable[ProbeRecord]) -> int:
        """
        Aggregate a stream of records in a single pass.

        Returns:
            Number of accepted records
        """
        accepted = 0
        for record in records:
            if self.add(record):
                accepted += 1
        return accepted

    def process_pass_stream(self, records: Iterable[ProbeRecord]) -> int:
        """Aggregate a stream that must contain passing probes only."""
        return self.process(self._checked(records, passed=True))

    def process_fail_stream(self, records: Iterable[ProbeRecord]) -> int:
        """Aggregate a stream that must contain failing probes only."""
        return self.process(self._checked(records, passed=False))

    @staticmethod
    def _checked(records: Iterable[ProbeRecord], passed: bool) -> Iterator[ProbeRecord]:
        kind = "pass" if passed else "fail"
        for record in records:
            if record.passed != passed:
                raise InputError(f"Record with passed={record.passed} found in the {kind} stream")
            yield record

    # Completion
    # --------------------------------------------------------------------------

    def freeze(self) -> "EventAggregator":
        """Freeze every histogram; further fills raise HistogramFrozenError."""
        self.total_pass.freeze()
        self.total_fail.freeze()
        for group in (self.histograms, self.stratum_histograms, self.pileup_outside, self.templates):
            for pair in group.values():
                pair.freeze()
        self._frozen = True
        return self

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def merge(self, other: "EventAggregator") -> "EventAggregator":
        """
        Combine two aggregators built on disjoint input shards.

        Histograms are added bin by bin; counters are summed. Both inputs
        must share the same configuration.
        """
        if other.config != self.config:
            raise ValueError("Cannot merge aggregators with different configurations")
        merged = EventAggregator(self.config)
        merged.counters = self.counters.merge(other.counters)
        merged.total_pass = self.total_pass.merge(other.total_pass)
        merged.total_fail = self.total_fail.merge(other.total_fail)
        merged.histograms = {k: p.merge(other.histograms[k]) for k, p in self.histograms.items()}
        merged.stratum_histograms = {
            k: p.merge(other.stratum_histograms[k]) for k, p in self.stratum_histograms.items()
        }
        merged.pileup_outside = {k: p.merge(other.pileup_outside[k]) for k, p in self.pileup_outside.items()}
        merged.templates = {k: p.merge(other.templates[k]) for k, p in self.templates.items()}
        return merged

    def bin_histograms(self, et_idx: int, eta_idx: int) -> HistogramPair:
        return self.histograms[(et_idx, eta_idx)]

    def stratum_bin_histograms(self, et_idx: int, eta_idx: int) -> dict[int, HistogramPair]:
        """{stratum: HistogramPair} for one kinematic bin (pileup-dependent runs)."""
        return {
            stratum: self.stratum_histograms[(stratum, et_idx, eta_idx)]
            for stratum in self.strata
            if (stratum, et_idx, eta_idx) in self.stratum_histograms
        }

    def outside_bin_histograms(self, et_idx: int, eta_idx: int) -> HistogramPair | None:
        """Probes of one kinematic bin whose vertex count is outside the pileup limits."""
        return self.pileup_outside.get((et_idx, eta_idx))

    def format_counters(self) -> str:
        """Cut-flow block in the fixed-width layout used by the run log and report."""
        c = self.counters
        if self.config.eff_kind.value == "RECO":
            header = "Total tag(electron)-probe(supercluster) pairs"
        else:
            header = "Total tag-probe pairs"
        window = f"{self.config.mass.low:g}-{self.config.mass.high:g}"
        lines = [
            f"{header:<61}{c.total:15d}",
            f"{'               probe Et>' + format(self.config.mass.min_probe_et, 'g'):<61}{c.pass_et:15d}",
            f"{'               probe eta in acceptance':<61}{c.pass_eta:15d}",
            f"{'               tag-probe mass in ' + window + ' GeV window':<61}{c.in_mass_window:15d}",
            "",
            f"{'Number of probes, total':<61}{float(c.pass_entries + c.fail_entries):15.0f}",
            f"{'Number of probes, passed':<61}{float(c.pass_entries):15.0f}",
            f"{'Number of probes, failed':<61}{float(c.fail_entries):15.0f}",
        ]
        return "\n".join(lines)
