"""
Efficiency Reporting

Writes the outputs of one efficiency run from a complete EfficiencyGrid:

- text summary: run metadata, cut-flow counters and the per-bin table
- numeric table (CSV) for the downstream scale-factor step
- fit log: one block per bin with the fit parameters

All formatting is deterministic: the same grid (and metadata) always
produces byte-identical files. Every writer refuses an incomplete grid.
"""

from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd

from .binning import EtaBinSet, EtBinSet, resolve_scheme, template_bin
from .config import CalcMethod, EfficiencyConfig
from .exceptions import InputError
from .results import EfficiencyGrid, EfficiencyResult, ResultStatus

logger = logging.getLogger("TagProbe.Reporter")

RULER = "=" * 80
THIN_RULER = "-" * 80
FLOAT_FORMAT = "%.6e"

TABLE_COLUMNS = [
    "bin",
    "et_scheme",
    "eta_scheme",
    "et_index",
    "eta_index",
    "et_low",
    "et_high",
    "eta_low",
    "eta_high",
    "efficiency",
    "err_low",
    "err_high",
    "n_pass",
    "n_fail",
    "method",
    "method_used",
    "status",
]


def output_paths(config: EfficiencyConfig) -> dict[str, Path]:
    """Output files of a run, all under <output_dir>/<dir_tag>/."""
    stem = f"efficiency_{config.label}{config.pileup_tag}"
    run_dir = config.run_dir
    return {
        "report": run_dir / f"{stem}.txt",
        "table": run_dir / f"{stem}.csv",
        "fitlog": run_dir / f"{stem}_fitlog.dat",
        "figure": run_dir / f"{stem}.png",
    }


def _fmt(x: float, spec: str = ".4f") -> str:
    return "nan" if x != x else format(x, spec)


def _range_text(low: float, high: float, abs_value: bool) -> str:
    text = f"{low:g}-{high:g}"
    return f"|{text}|" if abs_value else text


def format_bin_line(et_idx: int, eta_idx: int, result: EfficiencyResult, grid: EfficiencyGrid) -> str:
    et = resolve_scheme(grid.et_scheme)
    eta = resolve_scheme(grid.eta_scheme)
    et_range = _range_text(*et.bin_range(et_idx), abs_value=False)
    eta_range = _range_text(*eta.bin_range(eta_idx), abs_value=eta.use_abs)
    if result.is_determined:
        value = (
            f"{_fmt(result.value)} -{_fmt(result.err_low)} +{_fmt(result.err_high)}"
        )
    else:
        value = f"{'undetermined':<28}"
    return (
        f"{template_bin(et_idx, eta_idx, grid.eta_scheme):4d}  {et_range:<12}{eta_range:<14}"
        f"{value:<28}{result.n_pass:12.1f}{result.n_fail:12.1f}  "
        f"{result.method_used.value:<12}{result.status.value}"
    )


def format_report(
    grid: EfficiencyGrid,
    config: EfficiencyConfig,
    counters: str | None = None,
) -> str:
    """
    Plain-text run summary.

    Args:
        grid: Complete efficiency grid
        config: Run configuration (metadata header)
        counters: Optional pre-formatted cut-flow block

    Raises:
        IncompleteGridError: If any grid cell is empty
    """
    grid.assert_complete()
    et = resolve_scheme(grid.et_scheme)
    eta = resolve_scheme(grid.eta_scheme)

    lines = [
        RULER,
        "TAG-AND-PROBE EFFICIENCY SUMMARY",
        RULER,
        f"{'Sample':<22}{config.sample_type.value}",
        f"{'Efficiency':<22}{config.eff_kind.value}",
        f"{'Method':<22}{config.calc_method.value}",
        f"{'Et binning':<22}{et.name} ({et.n_bins} bins)",
        f"{'Eta binning':<22}{eta.name} ({eta.n_bins} bins)",
        f"{'Pileup reweight':<22}{'yes' if config.pileup_reweight else 'no'}",
        f"{'Pileup dependence':<22}{'yes' if config.pileup_dependence else 'no'}",
        f"{'Directory tag':<22}{config.dir_tag}",
    ]
    if config.calc_method is not CalcMethod.COUNTnCOUNT:
        model = "MC templates" if config.use_templates else config.fitting.signal_model.value
        lines.append(f"{'Signal model':<22}{model}")
    if config.ntuple_files:
        lines.append("Ntuple files:")
        lines.extend(f"    {name}" for name in config.ntuple_files)

    if counters:
        lines += ["", THIN_RULER, counters]

    lines += [
        "",
        THIN_RULER,
        f"{'bin':>4}  {'Et [GeV]':<12}{'eta':<14}{'efficiency':<28}{'n_pass':>12}{'n_fail':>12}  "
        f"{'method':<12}status",
        THIN_RULER,
    ]
    for i, j, result in grid.items():
        lines.append(format_bin_line(i, j, result, grid))

    n_undetermined = sum(1 for _, _, r in grid.items() if not r.is_determined)
    n_degraded = sum(1 for _, _, r in grid.items() if r.is_degraded)
    lines += [
        THIN_RULER,
        f"Bins: {len(grid)}   undetermined: {n_undetermined}   degraded: {n_degraded}",
        RULER,
    ]
    return "\n".join(lines) + "\n"


def write_report(
    grid: EfficiencyGrid, config: EfficiencyConfig, path: str | Path, counters: str | None = None
) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(format_report(grid, config, counters))
    logger.info(f"Wrote summary: {path}")
    return path


def write_efficiency_table(grid: EfficiencyGrid, path: str | Path) -> Path:
    """
    Serialize the grid as CSV, one row per bin in composite-index order.

    Raises:
        IncompleteGridError: If any grid cell is empty
    """
    grid.assert_complete()
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = grid.to_dataframe()[TABLE_COLUMNS]
    df.to_csv(path, index=False, float_format=FLOAT_FORMAT, na_rep="nan", lineterminator="\n")
    logger.info(f"Wrote efficiency table: {path}")
    return path


def read_efficiency_table(path: str | Path) -> EfficiencyGrid:
    """
    Load a CSV written by write_efficiency_table back into a grid.

    Raises:
        InputError: If the file is missing or malformed
    """
    path = Path(path)
    if not path.exists():
        raise InputError(f"Efficiency table not found: {path}")
    try:
        df = pd.read_csv(path)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise InputError(f"Cannot parse efficiency table {path}: {e}")

    missing = [c for c in TABLE_COLUMNS if c not in df.columns]
    if missing:
        raise InputError(f"Efficiency table {path} is missing columns: {missing}")
    if df.empty:
        raise InputError(f"Efficiency table {path} has no rows")

    try:
        et_scheme = EtBinSet[df["et_scheme"].iloc[0]]
        eta_scheme = EtaBinSet[df["eta_scheme"].iloc[0]]
    except KeyError as e:
        raise InputError(f"Unknown binning scheme {e} in {path}")

    grid = EfficiencyGrid(et_scheme, eta_scheme)
    for row in df.itertuples(index=False):
        grid.set(
            int(row.et_index),
            int(row.eta_index),
            EfficiencyResult(
                value=float(row.efficiency),
                err_low=float(row.err_low),
                err_high=float(row.err_high),
                method=CalcMethod(row.method),
                method_used=CalcMethod(row.method_used),
                n_pass=float(row.n_pass),
                n_fail=float(row.n_fail),
                status=ResultStatus(row.status),
            ),
        )
    return grid


def format_fit_log(grid: EfficiencyGrid) -> str:
    """One block per bin: method, status, efficiency and every fit that fed it."""
    grid.assert_complete()
    blocks = []
    for i, j, result in grid.items():
        lines = [
            RULER,
            f"Bin {template_bin(i, j, grid.eta_scheme)} (et{i}, eta{j})",
            f"  method: {result.method.value}   used: {result.method_used.value}   "
            f"status: {result.status.value}",
            f"  efficiency: {_fmt(result.value, '.6f')} -{_fmt(result.err_low, '.6f')} "
            f"+{_fmt(result.err_high, '.6f')}",
            f"  n_pass: {result.n_pass:.3f}   n_fail: {result.n_fail:.3f}",
        ]
        if result.note:
            lines.append(f"  note: {result.note}")
        if not result.fits:
            lines.append("  (no fit)")
        for fit in result.fits:
            lines.append(fit.format_log())
        blocks.append("\n".join(lines))
    return "\n".join(blocks) + "\n"


def write_fit_log(grid: EfficiencyGrid, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(format_fit_log(grid))
    logger.info(f"Wrote fit log: {path}")
    return path
