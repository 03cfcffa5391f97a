"""
Unit tests for EfficiencyResult and EfficiencyGrid.
"""

from __future__ import annotations

import math

import numpy as np
import pytest

from tagprobe.modules.binning import EtaBinSet, EtBinSet
from tagprobe.modules.config import CalcMethod
from tagprobe.modules.exceptions import IncompleteGridError
from tagprobe.modules.results import EfficiencyGrid, EfficiencyResult, ResultStatus


def _ok(value: float) -> EfficiencyResult:
    return EfficiencyResult(
        value=value,
        err_low=0.01,
        err_high=0.02,
        method=CalcMethod.COUNTnFIT,
        method_used=CalcMethod.COUNTnFIT,
        n_pass=value * 100,
        n_fail=(1 - value) * 100,
    )


@pytest.mark.unit
class TestEfficiencyResult:
    def test_properties(self) -> None:
        r = _ok(0.9)
        assert r.n_total == pytest.approx(100)
        assert r.err == pytest.approx(0.015)
        assert r.is_determined
        assert not r.is_degraded

    def test_undetermined(self) -> None:
        r = EfficiencyResult.undetermined(CalcMethod.FITnFIT)
        assert math.isnan(r.value) and math.isnan(r.err_low)
        assert r.status is ResultStatus.UNDETERMINED
        assert r.method_used is CalcMethod.FITnFIT
        assert r.note == "no events"

    def test_immutable(self) -> None:
        r = _ok(0.5)
        with pytest.raises(AttributeError):
            r.value = 0.6


@pytest.mark.unit
class TestEfficiencyGrid:
    def test_shape_and_completion(self) -> None:
        grid = EfficiencyGrid(EtBinSet.ETBINS6, EtaBinSet.ETABINS2)
        assert grid.shape == (6, 2)
        assert len(grid.missing()) == 12
        for i in range(6):
            for j in range(2):
                grid[i, j] = _ok(0.5 + 0.05 * i)
        assert grid.is_complete
        grid.assert_complete()

    def test_missing_reported(self) -> None:
        grid = EfficiencyGrid(EtBinSet.ETBINS2, EtaBinSet.ETABINS3)
        grid[0, 1] = _ok(0.8)
        with pytest.raises(IncompleteGridError) as excinfo:
            grid.assert_complete()
        assert (0, 1) not in excinfo.value.missing
        assert len(excinfo.value.missing) == 5

    def test_index_checks(self) -> None:
        grid = EfficiencyGrid(EtBinSet.ETBINS2, EtaBinSet.ETABINS1)
        with pytest.raises(IndexError):
            grid[2, 0] = _ok(0.5)
        with pytest.raises(KeyError):
            grid[0, 0]
        assert grid.get(0, 0) is None

    def test_row_major_order(self) -> None:
        grid = EfficiencyGrid(EtBinSet.ETBINS2, EtaBinSet.ETABINS2)
        for i, j in [(1, 1), (0, 1), (1, 0), (0, 0)]:
            grid[i, j] = _ok(0.5)
        assert [(i, j) for i, j, _ in grid.items()] == [(0, 0), (0, 1), (1, 0), (1, 1)]

    def test_arrays(self) -> None:
        grid = EfficiencyGrid(EtBinSet.ETBINS2, EtaBinSet.ETABINS1)
        grid[0, 0] = _ok(0.7)
        grid[1, 0] = EfficiencyResult.undetermined(CalcMethod.COUNTnFIT)
        values = grid.values()
        assert values.shape == (2, 1)
        assert values[0, 0] == pytest.approx(0.7)
        assert np.isnan(values[1, 0])
        assert grid.errors_high()[0, 0] == pytest.approx(0.02)

    def test_dataframe(self) -> None:
        grid = EfficiencyGrid(EtBinSet.ETBINS2, EtaBinSet.ETABINS2)
        for i in range(2):
            for j in range(2):
                grid[i, j] = _ok(0.6)
        df = grid.to_dataframe()
        assert list(df["bin"]) == [0, 1, 2, 3]
        assert list(df["eta_index"]) == [0, 1, 0, 1]
        assert df.loc[1, "eta_low"] == pytest.approx(1.479)
        assert set(df["status"]) == {"ok"}
