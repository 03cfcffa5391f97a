"""
Per-bin efficiency results and the (Et x eta) results grid.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator

import numpy as np
import pandas as pd

from .binning import SchemeLike, number_of_et_bins, number_of_eta_bins, resolve_scheme, template_bin
from .config import CalcMethod
from .exceptions import IncompleteGridError
from .mass_fitter import FitResult


class ResultStatus(Enum):
    OK = "ok"
    UNDETERMINED = "undetermined"  # no events in the bin
    DEGRADED = "degraded"  # fit failed, fallback method used
    FAILED = "failed"  # fit failed and fallback disabled


@dataclass(frozen=True)
class EfficiencyResult:
    """
    Efficiency estimate for one kinematic bin.

    `value` is NaN whenever the efficiency could not be determined; the
    status says why. A computed efficiency of exactly zero has status OK.

    Attributes:
        value: Efficiency in [0, 1], or NaN
        err_low: Lower uncertainty (positive number)
        err_high: Upper uncertainty (positive number)
        method: Method requested for the bin
        method_used: Method that actually produced the value
        n_pass: Passing count (raw weighted sum, or signal yield for fits)
        n_fail: Failing count (as n_pass)
        status: Quality flag
        note: Free-text diagnostic
        fits: Fit results that went into the estimate (for the fit log)
    """

    value: float
    err_low: float
    err_high: float
    method: CalcMethod
    method_used: CalcMethod
    n_pass: float
    n_fail: float
    status: ResultStatus = ResultStatus.OK
    note: str = ""
    fits: tuple[FitResult, ...] = field(default=(), compare=False, repr=False)

    @classmethod
    def undetermined(
        cls,
        method: CalcMethod,
        n_pass: float = 0.0,
        n_fail: float = 0.0,
        note: str = "no events",
        status: ResultStatus = ResultStatus.UNDETERMINED,
        fits: tuple[FitResult, ...] = (),
    ) -> "EfficiencyResult":
        return cls(
            value=math.nan,
            err_low=math.nan,
            err_high=math.nan,
            method=method,
            method_used=method,
            n_pass=n_pass,
            n_fail=n_fail,
            status=status,
            note=note,
            fits=fits,
        )

    @property
    def n_total(self) -> float:
        return self.n_pass + self.n_fail

    @property
    def err(self) -> float:
        """Symmetrized uncertainty."""
        return 0.5 * (self.err_low + self.err_high)

    @property
    def is_determined(self) -> bool:
        return not math.isnan(self.value)

    @property
    def is_degraded(self) -> bool:
        return self.status is ResultStatus.DEGRADED


class EfficiencyGrid:
    """
    Dense (n_et x n_eta) container of EfficiencyResults.

    Cells start empty; the grid is complete once every cell holds a result.
    """

    def __init__(self, et_scheme: SchemeLike, eta_scheme: SchemeLike) -> None:
        self.et_scheme = et_scheme
        self.eta_scheme = eta_scheme
        self.n_et = number_of_et_bins(et_scheme)
        self.n_eta = number_of_eta_bins(eta_scheme)
        self._cells: dict[tuple[int, int], EfficiencyResult] = {}

    def _check_index(self, et_idx: int, eta_idx: int) -> None:
        if not (0 <= et_idx < self.n_et and 0 <= eta_idx < self.n_eta):
            raise IndexError(
                f"Bin (et={et_idx}, eta={eta_idx}) outside a {self.n_et}x{self.n_eta} grid"
            )

    def set(self, et_idx: int, eta_idx: int, result: EfficiencyResult) -> None:
        self._check_index(et_idx, eta_idx)
        self._cells[(et_idx, eta_idx)] = result

    def get(self, et_idx: int, eta_idx: int) -> EfficiencyResult | None:
        self._check_index(et_idx, eta_idx)
        return self._cells.get((et_idx, eta_idx))

    def __getitem__(self, key: tuple[int, int]) -> EfficiencyResult:
        result = self.get(*key)
        if result is None:
            raise KeyError(f"Bin {key} has no result")
        return result

    def __setitem__(self, key: tuple[int, int], result: EfficiencyResult) -> None:
        self.set(key[0], key[1], result)

    def __len__(self) -> int:
        return len(self._cells)

    @property
    def shape(self) -> tuple[int, int]:
        return (self.n_et, self.n_eta)

    def missing(self) -> list[tuple[int, int]]:
        return [
            (i, j)
            for i in range(self.n_et)
            for j in range(self.n_eta)
            if (i, j) not in self._cells
        ]

    @property
    def is_complete(self) -> bool:
        return not self.missing()

    def assert_complete(self) -> None:
        """Raise IncompleteGridError if any cell has no result."""
        missing = self.missing()
        if missing:
            raise IncompleteGridError(missing)

    def items(self) -> Iterator[tuple[int, int, EfficiencyResult]]:
        """(et, eta, result) in row-major order, skipping empty cells."""
        for i in range(self.n_et):
            for j in range(self.n_eta):
                if (i, j) in self._cells:
                    yield i, j, self._cells[(i, j)]

    def _matrix(self, attr: str) -> np.ndarray:
        out = np.full(self.shape, np.nan)
        for i, j, result in self.items():
            out[i, j] = getattr(result, attr)
        return out

    def values(self) -> np.ndarray:
        return self._matrix("value")

    def errors_low(self) -> np.ndarray:
        return self._matrix("err_low")

    def errors_high(self) -> np.ndarray:
        return self._matrix("err_high")

    def to_dataframe(self) -> pd.DataFrame:
        """One row per populated cell, ordered by composite bin index."""
        et = resolve_scheme(self.et_scheme)
        eta = resolve_scheme(self.eta_scheme)
        rows = []
        for i, j, r in self.items():
            et_lo, et_hi = et.bin_range(i)
            eta_lo, eta_hi = eta.bin_range(j)
            rows.append(
                {
                    "bin": template_bin(i, j, self.eta_scheme),
                    "et_scheme": et.name,
                    "eta_scheme": eta.name,
                    "et_index": i,
                    "eta_index": j,
                    "et_low": et_lo,
                    "et_high": et_hi,
                    "eta_low": eta_lo,
                    "eta_high": eta_hi,
                    "efficiency": r.value,
                    "err_low": r.err_low,
                    "err_high": r.err_high,
                    "n_pass": r.n_pass,
                    "n_fail": r.n_fail,
                    "method": r.method.value,
                    "method_used": r.method_used.value,
                    "status": r.status.value,
                }
            )
        return pd.DataFrame(rows)
