"""
Unit tests for the exception hierarchy.
"""

from __future__ import annotations

import pytest

from tagprobe.modules.binning import PU_COMBINED
from tagprobe.modules.exceptions import (
    AnalysisError,
    ConfigurationError,
    EfficiencyError,
    FitConvergenceFailure,
    HistogramFrozenError,
    IncompleteGridError,
    InputError,
    TemplateMissingError,
)


@pytest.mark.unit
class TestHierarchy:
    @pytest.mark.parametrize(
        "exc",
        [
            ConfigurationError("x"),
            InputError("x"),
            TemplateMissingError(0, 0, 0),
            FitConvergenceFailure("et0_eta0", 3),
            EfficiencyError("x"),
            IncompleteGridError([(0, 0)]),
            HistogramFrozenError("x"),
        ],
    )
    def test_all_derive_from_analysis_error(self, exc: Exception) -> None:
        assert isinstance(exc, AnalysisError)

    def test_missing_template_is_input_error(self) -> None:
        with pytest.raises(InputError):
            raise TemplateMissingError(PU_COMBINED, 2, 1, file_path="t.root")


@pytest.mark.unit
class TestMessages:
    def test_template_missing(self) -> None:
        err = TemplateMissingError(3, 2, 1, file_path="templates.root")
        assert "stratum=3" in str(err)
        assert "et=2" in str(err) and "eta=1" in str(err)
        assert "templates.root" in str(err)

    def test_fit_failure(self) -> None:
        err = FitConvergenceFailure("et0_eta0", 3, "MIGRAD minimum not valid")
        assert str(err) == "Fit for et0_eta0 did not converge after 3 attempt(s): MIGRAD minimum not valid"
        assert err.attempts == 3

    def test_incomplete_grid_preview(self) -> None:
        missing = [(i, 0) for i in range(12)]
        err = IncompleteGridError(missing)
        assert "12 unpopulated" in str(err)
        assert str(err).endswith(", ...")
        assert err.missing == missing
