"""
Unit tests for reading selected-events ROOT files.
"""

from __future__ import annotations

import numpy as np
import pytest
import uproot

from tagprobe.modules.exceptions import InputError
from tagprobe.modules.probe_loader import (
    count_entries,
    load_probe_records,
    selected_events_path,
    write_probe_file,
)
from tagprobe.tests.utils import create_probe_root_file, generate_probe_records, records_to_arrays


@pytest.fixture
def probe_file(tmp_test_dir):
    pass_records = generate_probe_records(120, passed=True, seed=31, weight=0.5)
    fail_records = generate_probe_records(45, passed=False, seed=32, weight=0.5)
    path = create_probe_root_file(tmp_test_dir / "selectEvents_MC_ID.root", pass_records, fail_records)
    return path, pass_records, fail_records


@pytest.mark.unit
class TestLoading:
    def test_records_match(self, probe_file) -> None:
        path, pass_records, _ = probe_file
        loaded = list(load_probe_records(path, passed=True))
        assert len(loaded) == len(pass_records)
        assert all(r.passed for r in loaded)
        assert loaded[0].mass == pytest.approx(pass_records[0].mass)
        assert loaded[-1].n_good_vertices == pass_records[-1].n_good_vertices
        assert loaded[3].weight == pytest.approx(0.5)

    def test_fail_tree(self, probe_file) -> None:
        path, _, fail_records = probe_file
        loaded = list(load_probe_records(path, passed=False))
        assert len(loaded) == len(fail_records)
        assert not any(r.passed for r in loaded)

    def test_count_entries(self, probe_file) -> None:
        path, _, _ = probe_file
        assert count_entries(path) == (120, 45)

    def test_unit_weights_without_weight_branch(self, tmp_test_dir) -> None:
        records = generate_probe_records(10, passed=True, seed=33, weight=3.0)
        fails = generate_probe_records(5, passed=False, seed=34)
        path = create_probe_root_file(tmp_test_dir / "noweight.root", records, fails, with_weight=False)
        loaded = list(load_probe_records(path, passed=True))
        assert [r.weight for r in loaded] == [1.0] * 10

    def test_small_chunks(self, probe_file) -> None:
        path, pass_records, _ = probe_file
        loaded = list(load_probe_records(path, passed=True, step_size=17))
        assert len(loaded) == len(pass_records)


@pytest.mark.unit
class TestErrors:
    def test_missing_file(self, tmp_test_dir) -> None:
        with pytest.raises(InputError, match="not found"):
            list(load_probe_records(tmp_test_dir / "missing.root", passed=True))
        with pytest.raises(InputError):
            count_entries(tmp_test_dir / "missing.root")

    def test_missing_tree(self, tmp_test_dir) -> None:
        path = tmp_test_dir / "onlypass.root"
        arrays = records_to_arrays(generate_probe_records(5, passed=True, seed=35))
        with uproot.recreate(path) as f:
            f["passTree"] = arrays
        with pytest.raises(InputError, match="failTree"):
            list(load_probe_records(path, passed=False))

    def test_missing_branch(self, tmp_test_dir) -> None:
        arrays = records_to_arrays(generate_probe_records(5, passed=True, seed=36))
        del arrays["nGoodPV"]
        path = write_probe_file(tmp_test_dir / "nobranch.root", arrays, arrays)
        with pytest.raises(InputError, match="nGoodPV"):
            list(load_probe_records(path, passed=True))


@pytest.mark.unit
class TestPaths:
    def test_default_location(self, mc_config) -> None:
        path = selected_events_path(mc_config)
        assert path == mc_config.run_dir / "selectEvents_MC_ID.root"

    def test_reweighted_location(self, make_config) -> None:
        config = make_config(sample={"type": "DATA"}, pileup={"reweight": True})
        assert selected_events_path(config).name == "selectEvents_DATA_ID_PU.root"

    def test_explicit_input_file(self, make_config, tmp_test_dir) -> None:
        target = tmp_test_dir / "probes.root"
        config = make_config(paths={"input_file": str(target)})
        assert selected_events_path(config) == target


@pytest.mark.unit
def test_written_branches(tmp_test_dir) -> None:
    arrays = records_to_arrays(generate_probe_records(8, passed=True, seed=37))
    path = write_probe_file(tmp_test_dir / "w.root", arrays, arrays)
    with uproot.open(path) as f:
        tree = f["passTree"]
        assert set(tree.keys()) == {"mass", "et", "eta", "nGoodPV", "weight"}
        np.testing.assert_allclose(tree["mass"].array(library="np"), arrays["mass"])
