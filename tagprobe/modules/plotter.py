"""
Diagnostic figures for an efficiency run

- plot_bin_fits: pass/fail mass histograms per bin with the fitted
  signal + background overlaid (when the bin was fitted)
- plot_efficiency_grid: efficiency vs Et, one series per eta bin
"""

from __future__ import annotations

import logging
from pathlib import Path

import matplotlib
import matplotlib.pyplot as plt
import mplhep as hep
import numpy as np

from .binning import resolve_scheme
from .event_aggregator import EventAggregator
from .results import EfficiencyGrid, EfficiencyResult

logging.getLogger("matplotlib.font_manager").setLevel(logging.ERROR)

matplotlib.rcParams["font.family"] = "sans-serif"
matplotlib.rcParams["font.sans-serif"] = ["DejaVu Sans", "Arial", "Helvetica", "sans-serif"]

plt.style.use(hep.style.LHCb2)

# Override the serif font set by the style
matplotlib.rcParams["font.family"] = "sans-serif"

logger = logging.getLogger("TagProbe.Plotter")

# Bins drawn per figure; larger grids are truncated
MAX_BINS_PER_FIGURE = 24


def _fit_curves(result: EfficiencyResult, channel: str) -> tuple[np.ndarray, np.ndarray] | None:
    """Summed (signal, background) expectation of every fit of a bin for one channel."""
    signal = background = None
    for fit in result.fits:
        comp = fit.components.get(channel)
        if comp is None:
            continue
        signal = comp["signal"] if signal is None else signal + comp["signal"]
        background = comp["background"] if background is None else background + comp["background"]
    if signal is None:
        return None
    return signal, background


def plot_bin_fits(grid: EfficiencyGrid, aggregator: EventAggregator, output_file: str | Path) -> Path:
    """
    Draw pass and fail mass histograms for each bin side by side.

    Args:
        grid: Efficiency results (fits supply the overlaid curves)
        aggregator: Frozen aggregator holding the bin histograms
        output_file: PNG to write

    Returns:
        Path of the written figure
    """
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)

    cells = list(grid.items())[:MAX_BINS_PER_FIGURE]
    if len(grid) > MAX_BINS_PER_FIGURE:
        logger.warning(f"Only the first {MAX_BINS_PER_FIGURE} of {len(grid)} bins are drawn")

    n_rows = max(len(cells), 1)
    fig, axes = plt.subplots(n_rows, 2, figsize=(14, 4.5 * n_rows), squeeze=False)

    for row, (i, j, result) in enumerate(cells):
        pair = aggregator.bin_histograms(i, j)
        for col, (channel, hist) in enumerate((("pass", pair.passing), ("fail", pair.failing))):
            ax = axes[row, col]
            ax.errorbar(
                hist.centers,
                hist.values(),
                yerr=np.sqrt(np.clip(hist.variances(), 0, None)),
                fmt="o",
                color="black",
                markersize=3,
                capsize=2,
                elinewidth=1,
                label="Data",
            )
            curves = _fit_curves(result, channel)
            if curves is not None:
                signal, background = curves
                hep.histplot(signal + background, hist.edges, ax=ax, color="blue", label="Total fit")
                hep.histplot(background, hist.edges, ax=ax, color="red", linestyle="--", label="Background")

            eff = "undetermined" if not result.is_determined else f"{result.value:.4f}"
            ax.set_title(f"et{i} eta{j} {channel}  (eff = {eff})", fontsize=12)
            ax.set_xlabel(r"$M(e^+e^-)$ [GeV]", fontsize=12)
            ax.set_ylabel(f"Pairs / {hist.bin_width:g} GeV", fontsize=12)
            ax.set_ylim(bottom=0)
            ax.legend(fontsize=9, loc="upper right")

    plt.tight_layout()
    plt.savefig(output_file, dpi=100, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"Created plot: {output_file}")
    return output_file


def plot_efficiency_grid(grid: EfficiencyGrid, output_file: str | Path) -> Path:
    """Efficiency vs Et with asymmetric errors, one series per eta bin."""
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    et = resolve_scheme(grid.et_scheme)
    eta = resolve_scheme(grid.eta_scheme)

    # Open top Et edge drawn at twice the last finite edge
    edges = np.array(et.edges, dtype=float)
    if not np.isfinite(edges[-1]):
        edges[-1] = 2 * edges[-2]
    centers = 0.5 * (edges[:-1] + edges[1:])
    half_widths = 0.5 * np.diff(edges)

    values = grid.values()
    err_low = grid.errors_low()
    err_high = grid.errors_high()

    fig, ax = plt.subplots(figsize=(10, 7))
    for j in range(grid.n_eta):
        low, high = eta.bin_range(j)
        label = f"{low:g} < {'|η|' if eta.use_abs else 'η'} < {high:g}"
        ax.errorbar(
            centers,
            values[:, j],
            xerr=half_widths,
            yerr=[err_low[:, j], err_high[:, j]],
            fmt="o",
            markersize=5,
            capsize=2,
            label=label,
        )
    ax.set_xscale("log")
    ax.set_xlabel(r"Probe $E_T$ [GeV]", fontsize=14)
    ax.set_ylabel("Efficiency", fontsize=14)
    ax.set_ylim(0, 1.1)
    ax.grid(alpha=0.3, linestyle="--")
    ax.legend(fontsize=12, loc="lower right")

    plt.tight_layout()
    plt.savefig(output_file, dpi=100, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"Created plot: {output_file}")
    return output_file
