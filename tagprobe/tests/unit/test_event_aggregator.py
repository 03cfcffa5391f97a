"""
Unit tests for EventAggregator.

Covers the cut flow, per-bin and per-stratum filling, template filling for
simulation, order independence, sharded merging and the counter block.
"""

from __future__ import annotations

import random
from dataclasses import replace

import pytest

from tagprobe.modules.binning import PU_COMBINED
from tagprobe.modules.event_aggregator import EventAggregator
from tagprobe.modules.exceptions import HistogramFrozenError, InputError
from tagprobe.tests.utils import assert_histograms_equal, generate_probe_records, make_record


@pytest.mark.unit
class TestCutFlow:
    """Test the three acceptance cuts and the counters."""

    def test_low_et_rejected(self, mc_config) -> None:
        agg = EventAggregator(mc_config)
        assert not agg.add(make_record(et=9.9))
        assert agg.counters.total == 1
        assert agg.counters.pass_et == 0

    def test_mass_window(self, mc_config) -> None:
        agg = EventAggregator(mc_config)
        assert not agg.add(make_record(mass=59.0))
        assert not agg.add(make_record(mass=121.0))
        assert agg.add(make_record(mass=60.0))
        assert agg.add(make_record(mass=120.0))
        assert agg.counters.pass_eta == 4
        assert agg.counters.in_mass_window == 2

    def test_accepted_probe_fills_bin(self, mc_config) -> None:
        agg = EventAggregator(mc_config)
        agg.add(make_record(et=15.0, passed=True, weight=2.0))
        agg.add(make_record(et=25.0, passed=False))
        assert agg.bin_histograms(0, 0).passing.total() == pytest.approx(2.0)
        assert agg.bin_histograms(1, 0).failing.total() == pytest.approx(1.0)
        assert agg.bin_histograms(0, 0).failing.total() == 0.0

    def test_out_of_acceptance_eta_not_binned(self, mc_config) -> None:
        """|eta| > 2.5 passes the cuts but has no kinematic bin."""
        agg = EventAggregator(mc_config)
        assert agg.add(make_record(eta=2.7))
        assert all(p.passing.total() == 0 for p in agg.histograms.values())
        # Still counted in the inclusive histogram
        assert agg.total_pass.total() == 1.0

    def test_gap_probe_kept_without_gap_exclusion(self, mc_config) -> None:
        agg = EventAggregator(mc_config)
        assert agg.add(make_record(eta=1.5))
        assert agg.bin_histograms(1, 0).passing.total() == 1.0

    @pytest.mark.parametrize("eta", [1.4442, -1.4442, 1.566, -1.566, 1.5])
    def test_gap_probe_excluded_everywhere(self, make_config, eta: float) -> None:
        """Gap boundary probes leave pass, fail and template histograms untouched."""
        config = make_config(binning={"et": "ETBINS2", "eta": "ETABINS2"})
        agg = EventAggregator(config)
        assert not agg.add(make_record(eta=eta, passed=True))
        assert not agg.add(make_record(eta=eta, passed=False))

        assert agg.counters.pass_eta == 0
        for pair in agg.histograms.values():
            assert pair.passing.total() == 0 and pair.failing.total() == 0
        for pair in agg.templates.values():
            assert pair.passing.total() == 0 and pair.failing.total() == 0

    def test_counter_block_layout(self, mc_config) -> None:
        agg = EventAggregator(mc_config)
        agg.process(generate_probe_records(50, passed=True, seed=1))
        agg.process(generate_probe_records(30, passed=False, seed=2))
        lines = agg.format_counters().splitlines()

        assert lines[0].startswith("Total tag-probe pairs")
        assert lines[0].endswith(f"{80:15d}")
        assert "probe Et>10" in lines[1]
        assert "60-120 GeV window" in lines[3]
        assert lines[5].endswith(f"{80.0:15.0f}")
        assert all(len(line) == 61 + 15 for line in lines if line)

    def test_reco_header(self, make_config) -> None:
        agg = EventAggregator(make_config(eff_type="RECO"))
        assert agg.format_counters().startswith("Total tag(electron)-probe(supercluster) pairs")


@pytest.mark.unit
class TestTemplatesAndPileup:
    """Test template filling and the pileup strata."""

    def test_mc_fills_combined_templates(self, mc_config) -> None:
        agg = EventAggregator(mc_config)
        agg.add(make_record(et=30.0, mass=91.0))
        pair = agg.templates[(PU_COMBINED, 1, 0)]
        assert pair.passing.n_bins == mc_config.mass.template_bins
        assert pair.passing.total() == 1.0

    def test_data_has_no_templates(self, make_config) -> None:
        agg = EventAggregator(make_config(sample={"type": "DATA"}))
        agg.add(make_record())
        assert agg.templates == {}

    def test_stratum_histograms(self, make_config) -> None:
        config = make_config(pileup={"dependence": True})
        agg = EventAggregator(config)
        agg.add(make_record(n_good_vertices=3))
        agg.add(make_record(n_good_vertices=12, passed=False))
        strata = agg.stratum_bin_histograms(1, 0)
        assert sorted(strata) == list(range(7))
        assert strata[0].passing.total() == 1.0
        assert strata[2].failing.total() == 1.0
        assert agg.templates[(2, 1, 0)].failing.total() == 1.0

    def test_excluded_pileup_skips_strata_only(self, make_config) -> None:
        """Out-of-range vertex counts stay in the main histograms."""
        config = make_config(pileup={"dependence": True})
        agg = EventAggregator(config)
        assert agg.add(make_record(n_good_vertices=150))
        assert agg.bin_histograms(1, 0).passing.total() == 1.0
        assert all(p.passing.total() == 0 for p in agg.stratum_histograms.values())
        assert all(p.passing.total() == 0 for p in agg.templates.values())
        outside = agg.outside_bin_histograms(1, 0)
        assert outside.passing.total() == 1.0
        assert outside.passing.name == "pass_et1_eta0_puOutside"

    def test_pileup_ignored_without_dependence(self, mc_config) -> None:
        agg = EventAggregator(mc_config)
        agg.add(make_record(n_good_vertices=150))
        assert agg.templates[(PU_COMBINED, 1, 0)].passing.total() == 1.0
        assert agg.stratum_histograms == {}
        assert agg.outside_bin_histograms(1, 0) is None


@pytest.mark.unit
class TestStreams:
    """Test stream handling, ordering, freezing and merging."""

    def test_mixed_stream_rejected(self, mc_config) -> None:
        agg = EventAggregator(mc_config)
        with pytest.raises(InputError):
            agg.process_pass_stream([make_record(passed=True), make_record(passed=False)])

    def test_fail_stream(self, mc_config) -> None:
        agg = EventAggregator(mc_config)
        n = agg.process_fail_stream(generate_probe_records(40, passed=False, seed=3))
        assert agg.counters.fail_entries == 40
        assert agg.total_fail.total() == pytest.approx(n)

    def test_order_independent(self, make_config) -> None:
        """Any permutation of weighted probes gives bin-wise identical histograms."""
        config = make_config(pileup={"dependence": True})
        rng = random.Random(11)
        records = generate_probe_records(1200, passed=True, seed=5) + generate_probe_records(
            800, passed=False, seed=6
        )
        records = [replace(r, weight=rng.choice([0.1, 0.2, 0.3, 0.7, 1.3])) for r in records]

        reference = EventAggregator(config)
        reference.process(records)
        for _ in range(3):
            shuffled = list(records)
            rng.shuffle(shuffled)
            other = EventAggregator(config)
            other.process(shuffled)

            assert other.counters == reference.counters
            for table in ("histograms", "stratum_histograms", "templates"):
                mine, theirs = getattr(other, table), getattr(reference, table)
                assert mine.keys() == theirs.keys()
                for key in theirs:
                    assert_histograms_equal(mine[key].passing, theirs[key].passing)
                    assert_histograms_equal(mine[key].failing, theirs[key].failing)
            assert other.total_pass == reference.total_pass
            assert other.total_fail == reference.total_fail

    def test_freeze(self, mc_config) -> None:
        agg = EventAggregator(mc_config)
        agg.freeze()
        assert agg.is_frozen
        with pytest.raises(HistogramFrozenError):
            agg.add(make_record())

    def test_merge_equals_single_pass(self, mc_config) -> None:
        records = generate_probe_records(200, passed=True, seed=8)
        whole = EventAggregator(mc_config)
        whole.process(records)

        first = EventAggregator(mc_config)
        first.process(records[:120])
        second = EventAggregator(mc_config)
        second.process(records[120:])
        merged = first.merge(second)

        assert merged.counters == whole.counters
        for key in whole.histograms:
            assert_histograms_equal(merged.histograms[key].passing, whole.histograms[key].passing)
        for key in whole.templates:
            assert_histograms_equal(merged.templates[key].passing, whole.templates[key].passing)

    def test_merge_requires_same_config(self, mc_config, make_config) -> None:
        other = make_config(binning={"et": "ETBINS5"})
        with pytest.raises(ValueError):
            EventAggregator(mc_config).merge(EventAggregator(other))
