"""
Unit tests for the kinematic binning maps.

Covers bin lookup and edge policy, the ECAL gap predicate, composite bin
indices and the pileup stratum sentinels.
"""

from __future__ import annotations

import math

import numpy as np
import pytest

from tagprobe.modules.binning import (
    OUT_OF_RANGE,
    PU_COMBINED,
    PU_EXCLUDED,
    BinningScheme,
    EtaBinSet,
    EtBinSet,
    find_bin,
    find_et_bin,
    find_eta_bin,
    find_pu_bin,
    is_ecal_gap,
    n_pu_strata,
    number_of_et_bins,
    number_of_eta_bins,
    pileup_stratum,
    requires_gap_exclusion,
    split_template_bin,
    template_bin,
)


@pytest.mark.unit
class TestFindBin:
    """Test bin lookup and the [low, high) edge policy."""

    def test_interior_values(self) -> None:
        assert find_et_bin(15.0, EtBinSet.ETBINS2) == 0
        assert find_et_bin(35.0, EtBinSet.ETBINS5) == 2
        assert find_eta_bin(1.0, EtaBinSet.ETABINS3) == 1

    def test_lower_edge_belongs_to_upper_bin(self) -> None:
        """A value on an internal boundary goes to the bin it opens."""
        assert find_et_bin(20.0, EtBinSet.ETBINS2) == 1
        assert find_et_bin(20.0, EtBinSet.ETBINS5) == 1
        assert find_eta_bin(0.8, EtaBinSet.ETABINS3) == 1

    def test_first_edge_included(self) -> None:
        assert find_et_bin(10.0, EtBinSet.ETBINS1) == 0

    def test_top_edge_closed(self) -> None:
        """The topmost bin is closed on both ends."""
        assert find_et_bin(500.0, EtBinSet.ETBINS1) == 0
        assert find_et_bin(500.0, EtBinSet.ETBINS9) == number_of_et_bins(EtBinSet.ETBINS9) - 1
        assert find_eta_bin(2.5, EtaBinSet.ETABINS2) == 1

    def test_out_of_range(self) -> None:
        assert find_et_bin(9.99, EtBinSet.ETBINS1) == OUT_OF_RANGE
        assert find_et_bin(500.01, EtBinSet.ETBINS1) == OUT_OF_RANGE
        assert find_eta_bin(2.6, EtaBinSet.ETABINS1) == OUT_OF_RANGE
        assert find_eta_bin(-2.6, EtaBinSet.ETABINS4TEST) == OUT_OF_RANGE

    def test_open_ended_top_bin(self) -> None:
        """ETBINS2 extends to infinity."""
        assert find_et_bin(1.0e6, EtBinSet.ETBINS2) == 1
        assert find_et_bin(math.inf, EtBinSet.ETBINS2) == 1

    def test_nan_is_out_of_range(self) -> None:
        assert find_et_bin(math.nan, EtBinSet.ETBINS5) == OUT_OF_RANGE

    def test_absolute_eta_schemes(self) -> None:
        assert find_eta_bin(-1.0, EtaBinSet.ETABINS2) == find_eta_bin(1.0, EtaBinSet.ETABINS2) == 0
        assert find_eta_bin(-2.0, EtaBinSet.ETABINS2) == 1

    def test_signed_eta_scheme(self) -> None:
        assert find_eta_bin(-2.0, EtaBinSet.ETABINS4TEST) == 0
        assert find_eta_bin(-0.5, EtaBinSet.ETABINS4TEST) == 1
        assert find_eta_bin(0.0, EtaBinSet.ETABINS4TEST) == 2
        assert find_eta_bin(2.0, EtaBinSet.ETABINS4TEST) == 3

    @pytest.mark.parametrize("scheme", list(EtBinSet) + list(EtaBinSet))
    def test_result_always_valid_or_sentinel(self, scheme) -> None:
        n = scheme.scheme.n_bins
        for value in np.linspace(-600.0, 600.0, 2401):
            index = find_bin(float(value), scheme)
            assert index == OUT_OF_RANGE or 0 <= index < n

    @pytest.mark.parametrize("scheme", list(EtBinSet) + [EtaBinSet.ETABINS4TEST])
    def test_monotone_in_value(self, scheme) -> None:
        lo, hi = scheme.scheme.edges[0], min(scheme.scheme.edges[-1], 1000.0)
        indices = [find_bin(float(v), scheme) for v in np.linspace(lo, hi, 500)]
        assert all(b >= a for a, b in zip(indices[:-1], indices[1:]))

    def test_deterministic(self) -> None:
        assert [find_et_bin(42.0, EtBinSet.ETBINS8) for _ in range(5)] == [4] * 5


@pytest.mark.unit
class TestSchemes:
    """Test scheme definitions and enumerations."""

    def test_bin_counts(self) -> None:
        assert number_of_et_bins(EtBinSet.ETBINS1) == 1
        assert number_of_et_bins(EtBinSet.ETBINS2) == 2
        assert number_of_et_bins(EtBinSet.ETBINS6) == 6
        assert number_of_et_bins(EtBinSet.ETBINS9) == 9
        assert number_of_eta_bins(EtaBinSet.ETABINS1) == 1
        assert number_of_eta_bins(EtaBinSet.ETABINS2) == 2
        assert number_of_eta_bins(EtaBinSet.ETABINS5) == 5
        assert number_of_eta_bins(EtaBinSet.ETABINS4TEST) == 4

    def test_only_etabins2_excludes_gap(self) -> None:
        excluding = [s for s in EtaBinSet if requires_gap_exclusion(s)]
        assert excluding == [EtaBinSet.ETABINS2]

    def test_bin_range(self) -> None:
        assert EtBinSet.ETBINS5.scheme.bin_range(1) == (20.0, 30.0)
        with pytest.raises(IndexError):
            EtBinSet.ETBINS5.scheme.bin_range(5)

    def test_invalid_edges_rejected(self) -> None:
        with pytest.raises(ValueError):
            BinningScheme("bad", (10.0, 5.0))
        with pytest.raises(ValueError):
            BinningScheme("bad", (10.0,))

    def test_custom_scheme(self) -> None:
        scheme = BinningScheme("custom", (0.0, 1.0, 2.0))
        assert find_bin(1.0, scheme) == 1
        assert find_bin(2.0, scheme) == 1


@pytest.mark.unit
class TestEcalGap:
    """Test the barrel/endcap gap predicate."""

    @pytest.mark.parametrize("eta", [1.4442, 1.5, 1.566, -1.4442, -1.566])
    def test_inside_gap_boundaries_inclusive(self, eta: float) -> None:
        assert is_ecal_gap(eta)

    @pytest.mark.parametrize("eta", [0.0, 1.4441, 1.5661, 2.4, -1.0])
    def test_outside_gap(self, eta: float) -> None:
        assert not is_ecal_gap(eta)

    def test_gap_not_folded_into_find_bin(self) -> None:
        """Gap probes still have a bin; exclusion is the aggregator's job."""
        assert find_eta_bin(1.5, EtaBinSet.ETABINS2) == 1


@pytest.mark.unit
class TestCompositeIndex:
    """Test the row-major (et, eta) composite index."""

    def test_row_major(self) -> None:
        # ETABINS3 has 3 eta bins
        assert template_bin(0, 0, EtaBinSet.ETABINS3) == 0
        assert template_bin(0, 2, EtaBinSet.ETABINS3) == 2
        assert template_bin(1, 0, EtaBinSet.ETABINS3) == 3
        assert template_bin(4, 1, EtaBinSet.ETABINS3) == 13

    def test_invertible(self) -> None:
        n_et = number_of_et_bins(EtBinSet.ETBINS9)
        n_eta = number_of_eta_bins(EtaBinSet.ETABINS5)
        seen = set()
        for i in range(n_et):
            for j in range(n_eta):
                index = template_bin(i, j, EtaBinSet.ETABINS5)
                assert split_template_bin(index, EtaBinSet.ETABINS5) == (i, j)
                seen.add(index)
        assert seen == set(range(n_et * n_eta))

    def test_out_of_range_propagates(self) -> None:
        assert template_bin(OUT_OF_RANGE, 0, EtaBinSet.ETABINS1) == OUT_OF_RANGE
        assert template_bin(0, OUT_OF_RANGE, EtaBinSet.ETABINS1) == OUT_OF_RANGE
        assert split_template_bin(OUT_OF_RANGE, EtaBinSet.ETABINS1) == (OUT_OF_RANGE, OUT_OF_RANGE)


@pytest.mark.unit
class TestPileup:
    """Test pileup bins and the two inactive stratum sentinels."""

    def test_default_limits(self) -> None:
        assert n_pu_strata() == 7
        assert find_pu_bin(0) == 0
        assert find_pu_bin(5) == 1
        assert find_pu_bin(29) == 5
        assert find_pu_bin(100) == 6

    def test_out_of_range_is_excluded(self) -> None:
        assert find_pu_bin(101) == PU_EXCLUDED
        assert find_pu_bin(-1) == PU_EXCLUDED

    def test_dependence_off_is_combined(self) -> None:
        assert pileup_stratum(12, dependence=False) == PU_COMBINED
        # Even a vertex count outside the limits collapses to combined
        assert pileup_stratum(500, dependence=False) == PU_COMBINED

    def test_dependence_on(self) -> None:
        assert pileup_stratum(12, dependence=True) == 2
        assert pileup_stratum(500, dependence=True) == PU_EXCLUDED

    def test_sentinels_distinct(self) -> None:
        assert PU_COMBINED != PU_EXCLUDED
        assert PU_COMBINED < 0 and PU_EXCLUDED < 0

    def test_custom_limits(self) -> None:
        limits = (0, 10, 20)
        assert find_pu_bin(10, limits) == 1
        assert find_pu_bin(20, limits) == 1
        assert n_pu_strata(limits) == 2
