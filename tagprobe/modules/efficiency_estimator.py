"""
Efficiency Estimation per Kinematic Bin

Turns the pass/fail mass histograms of one (Et, eta) bin into an
EfficiencyResult with one of three methods:

COUNTnCOUNT:
    eff = N_pass / (N_pass + N_fail) over the whole mass window, no
    background subtraction. Uncertainty: Clopper-Pearson central interval
    at 68.27% CL, used identically for every bin.

COUNTnFIT:
    Pass and fail histograms are fitted independently with signal +
    exponential background; the COUNTnCOUNT formula is applied to the two
    fitted signal yields.

FITnFIT:
    Simultaneous fit with a shared signal shape. eff = Np / (Np + Nf) with
    the uncertainty propagated from the fit covariance of the two
    correlated yields, or (efficiency_as_parameter) eff fitted directly with
    MINOS errors. When a yield lands on its limit (eff near 0 or 1) the bin
    is refitted with eff as a parameter and its interval is profiled inside
    [0, 1]. A fit whose total signal yield is compatible with zero counts as
    failed.

For data the signal shapes come from MC templates held fixed in the fit.
A bin whose fit does not converge falls back to COUNTnCOUNT and is marked
DEGRADED. With pileup dependence the bin result is the event-count
weighted average of the per-stratum results, with probes outside the
pileup limits estimated as one more stratum.
"""

from __future__ import annotations

import functools
import logging
import math
import warnings
from dataclasses import dataclass, replace
from multiprocessing import Pool
from typing import Sequence

import numpy as np
from scipy import stats
from tqdm import tqdm

from ..utils.logging_config import get_tqdm_kwargs
from .binning import PU_COMBINED, PU_EXCLUDED
from .config import CalcMethod, EfficiencyConfig
from .event_aggregator import EventAggregator, HistogramPair
from .exceptions import EfficiencyError, EmptyBinWarning, FitConvergenceFailure
from .histograms import PU_OUTSIDE_TAG, stratum_tag
from .mass_fitter import EFFICIENCY_PARAM, FitResult, MassFitter
from .results import EfficiencyGrid, EfficiencyResult, ResultStatus
from .template_store import TemplateStore

# Central interval, one Gaussian sigma
CONFIDENCE_LEVEL: float = 0.6827

logger = logging.getLogger("TagProbe.EfficiencyEstimator")


def clopper_pearson(n_pass: float, n_total: float, cl: float = CONFIDENCE_LEVEL) -> tuple[float, float]:
    """
    Clopper-Pearson interval for n_pass successes out of n_total.

    Weighted (non-integer) sums are used as they are.

    Returns:
        (lower, upper) bounds of the efficiency
    """
    alpha = 1.0 - cl
    n_fail = n_total - n_pass
    lower = 0.0 if n_pass <= 0 else float(stats.beta.ppf(alpha / 2, n_pass, n_fail + 1))
    upper = 1.0 if n_fail <= 0 else float(stats.beta.ppf(1 - alpha / 2, n_pass + 1, n_fail))
    return lower, upper


def count_n_count(
    n_pass: float,
    n_fail: float,
    method: CalcMethod = CalcMethod.COUNTnCOUNT,
    label: str = "",
) -> EfficiencyResult:
    """
    Counting efficiency with Clopper-Pearson errors.

    Args:
        n_pass: Passing (weighted) count
        n_fail: Failing (weighted) count
        method: Method recorded on the result (COUNTnFIT reuses this formula)
        label: Bin label for diagnostics

    Returns:
        EfficiencyResult; UNDETERMINED (NaN) when n_pass + n_fail == 0

    Raises:
        EfficiencyError: If either count is negative
    """
    if n_pass < 0 or n_fail < 0:
        raise EfficiencyError(f"Negative counts for {label or 'bin'}: pass={n_pass}, fail={n_fail}")

    n_total = n_pass + n_fail
    if n_total == 0:
        warnings.warn(f"No pass or fail events in {label or 'bin'}", EmptyBinWarning, stacklevel=2)
        return EfficiencyResult.undetermined(method, n_pass, n_fail)

    eff = n_pass / n_total
    lower, upper = clopper_pearson(n_pass, n_total)
    return EfficiencyResult(
        value=eff,
        err_low=max(eff - lower, 0.0),
        err_high=max(upper - eff, 0.0),
        method=method,
        method_used=method,
        n_pass=n_pass,
        n_fail=n_fail,
    )


def ratio_efficiency(fit: FitResult) -> tuple[float, float]:
    """
    eff = Np / (Np + Nf) and its error from the yield covariance.

    d(eff)/dNp = Nf / N^2, d(eff)/dNf = -Np / N^2
    """
    n_p = fit.value("n_sig_pass")
    n_f = fit.value("n_sig_fail")
    n = n_p + n_f
    if n <= 0:
        return math.nan, math.nan
    grad = np.array([n_f / n**2, -n_p / n**2])
    cov = np.array(
        [
            [fit.cov("n_sig_pass", "n_sig_pass"), fit.cov("n_sig_pass", "n_sig_fail")],
            [fit.cov("n_sig_fail", "n_sig_pass"), fit.cov("n_sig_fail", "n_sig_fail")],
        ]
    )
    return n_p / n, float(np.sqrt(max(grad @ cov @ grad, 0.0)))


def _no_signal(fit: FitResult) -> bool:
    """Total signal yield compatible with its lower limit of zero."""
    if "n_sig" in fit.parameters:
        return fit.at_limit("n_sig", side="lower")
    return fit.at_limit("n_sig_pass", side="lower") and fit.at_limit("n_sig_fail", side="lower")


def combine_strata(
    results: Sequence[EfficiencyResult], method: CalcMethod, label: str = ""
) -> EfficiencyResult:
    """
    Weighted average of per-stratum results, weights = stratum event counts.

    Undetermined strata carry no weight. Errors are combined as
    sqrt(sum (w_i * err_i)^2) / sum w_i, separately for low and high.
    """
    usable = [r for r in results if r.is_determined and r.n_total > 0]
    n_pass = sum(r.n_pass for r in results)
    n_fail = sum(r.n_fail for r in results)
    fits = tuple(f for r in results for f in r.fits)
    if not usable:
        return EfficiencyResult.undetermined(
            method, n_pass, n_fail, note="no populated pileup stratum", fits=fits
        )

    weights = np.array([r.n_total for r in usable])
    w_sum = weights.sum()
    value = float(np.dot(weights, [r.value for r in usable]) / w_sum)
    err_low = float(np.sqrt(np.sum((weights * [r.err_low for r in usable]) ** 2)) / w_sum)
    err_high = float(np.sqrt(np.sum((weights * [r.err_high for r in usable]) ** 2)) / w_sum)

    degraded = [r for r in results if r.status in (ResultStatus.DEGRADED, ResultStatus.FAILED)]
    status = ResultStatus.DEGRADED if degraded else ResultStatus.OK
    methods_used = {r.method_used for r in usable}
    method_used = method if len(methods_used) != 1 else methods_used.pop()
    note = f"{len(degraded)} stratum fit(s) fell back" if degraded else ""
    if degraded:
        logger.info(f"{label}: {note}")

    return EfficiencyResult(
        value=value,
        err_low=err_low,
        err_high=err_high,
        method=method,
        method_used=method_used,
        n_pass=n_pass,
        n_fail=n_fail,
        status=status,
        note=note,
        fits=fits,
    )


@dataclass
class BinTask:
    """Inputs of one independent estimate (picklable for worker processes)."""

    et_index: int
    eta_index: int
    stratum: int
    histograms: HistogramPair
    templates: HistogramPair | None = None

    @property
    def label(self) -> str:
        tag = PU_OUTSIDE_TAG if self.stratum == PU_EXCLUDED else stratum_tag(self.stratum)
        return f"et{self.et_index}_eta{self.eta_index}_{tag}"


class EfficiencyEstimator:
    """
    Per-bin efficiency estimation for one run configuration.

    Args:
        config: Run configuration (method, binning, fit settings)
    """

    def __init__(self, config: EfficiencyConfig) -> None:
        self.config = config
        self.method = config.calc_method
        self.fitter = MassFitter(config.fitting)
        self.logger = logging.getLogger("TagProbe.EfficiencyEstimator")

    # Single bin
    # --------------------------------------------------------------------------

    def estimate(
        self,
        pass_hist,
        fail_hist,
        method: CalcMethod | None = None,
        templates: HistogramPair | None = None,
        label: str = "",
    ) -> EfficiencyResult:
        """
        Efficiency of one bin from its pass/fail histograms.

        Args:
            pass_hist: MassHistogram of passing probes
            fail_hist: MassHistogram of failing probes
            method: Overrides the configured method
            templates: Fixed signal shapes (pass, fail) for data fits
            label: Bin label for logs

        Returns:
            EfficiencyResult (never raises on fit failure)
        """
        method = method or self.method
        n_pass = pass_hist.total()
        n_fail = fail_hist.total()

        if method is CalcMethod.COUNTnCOUNT or n_pass + n_fail <= 0:
            return self._count(n_pass, n_fail, method, label)

        try:
            if method is CalcMethod.COUNTnFIT:
                return self._count_n_fit(pass_hist, fail_hist, templates, label)
            return self._fit_n_fit(pass_hist, fail_hist, templates, label)
        except FitConvergenceFailure as e:
            return self._fallback(n_pass, n_fail, method, label, str(e))

    def _count(self, n_pass: float, n_fail: float, method: CalcMethod, label: str) -> EfficiencyResult:
        try:
            result = count_n_count(n_pass, n_fail, method=method, label=label)
        except EfficiencyError as e:
            self.logger.warning(str(e))
            return EfficiencyResult.undetermined(method, n_pass, n_fail, note=str(e))
        if not result.is_determined:
            self.logger.warning(f"{label}: no events, efficiency undetermined")
        return result

    def _count_n_fit(self, pass_hist, fail_hist, templates, label) -> EfficiencyResult:
        fits = []
        yields = []
        for channel, hist in (("pass", pass_hist), ("fail", fail_hist)):
            if hist.total() <= 0:
                yields.append(0.0)
                continue
            template = templates.select(channel == "pass") if templates else None
            fit = self.fitter.fit_channel(hist, template, channel=channel, label=label)
            fits.append(fit)
            yields.append(fit.signal_yield(channel))

        result = count_n_count(yields[0], yields[1], method=CalcMethod.COUNTnFIT, label=label)
        return replace(result, fits=tuple(fits))

    def _fit_n_fit(self, pass_hist, fail_hist, templates, label) -> EfficiencyResult:
        def fit_both(efficiency_as_parameter=None):
            fit = self.fitter.fit_simultaneous(
                pass_hist,
                fail_hist,
                pass_template=templates.passing if templates else None,
                fail_template=templates.failing if templates else None,
                label=label,
                efficiency_as_parameter=efficiency_as_parameter,
            )
            if _no_signal(fit):
                raise FitConvergenceFailure(label, fit.attempts, "no signal: fitted signal yield is zero")
            return fit

        fit = fit_both()
        if EFFICIENCY_PARAM not in fit.parameters and (
            fit.at_limit("n_sig_pass") or fit.at_limit("n_sig_fail")
        ):
            # The yield covariance is singular on a limit
            self.logger.info(f"{label}: signal yield on a limit, refitting with the efficiency as parameter")
            fit = fit_both(efficiency_as_parameter=True)

        if EFFICIENCY_PARAM in fit.parameters:
            value = fit.value(EFFICIENCY_PARAM)
            lo, hi = fit.minos_errors[EFFICIENCY_PARAM]
            err_low, err_high = abs(lo), abs(hi)
        else:
            value, err = ratio_efficiency(fit)
            err_low = err_high = err

        return EfficiencyResult(
            value=value,
            err_low=err_low,
            err_high=err_high,
            method=CalcMethod.FITnFIT,
            method_used=CalcMethod.FITnFIT,
            n_pass=fit.signal_yield("pass"),
            n_fail=fit.signal_yield("fail"),
            fits=(fit,),
        )

    def _fallback(
        self, n_pass: float, n_fail: float, method: CalcMethod, label: str, reason: str
    ) -> EfficiencyResult:
        if not self.config.fitting.fallback_to_count:
            self.logger.error(f"{label}: {reason}; no fallback configured")
            return EfficiencyResult.undetermined(
                method, n_pass, n_fail, note=reason, status=ResultStatus.FAILED
            )
        self.logger.warning(f"{label}: {reason}; falling back to COUNTnCOUNT")
        counted = self._count(n_pass, n_fail, CalcMethod.COUNTnCOUNT, label)
        return EfficiencyResult(
            value=counted.value,
            err_low=counted.err_low,
            err_high=counted.err_high,
            method=method,
            method_used=CalcMethod.COUNTnCOUNT,
            n_pass=n_pass,
            n_fail=n_fail,
            status=ResultStatus.DEGRADED,
            note=reason,
        )

    # Whole grid
    # --------------------------------------------------------------------------

    def build_tasks(
        self, aggregator: EventAggregator, template_store: TemplateStore | None = None
    ) -> list[BinTask]:
        """
        One task per (et, eta) bin, or per (stratum, et, eta) with pileup dependence.

        With pileup dependence, probes outside the pileup limits form one more
        task per bin (stratum PU_EXCLUDED); its data fits use the sum of the
        bin's stratum templates. Templates are loaded here, in the calling
        process.

        Raises:
            TemplateMissingError: If a template needed for a data fit is absent
        """
        if self.config.use_templates and template_store is None:
            raise ValueError("Data fits need a template store")

        tasks = []
        for et_idx in range(aggregator.n_et):
            for eta_idx in range(aggregator.n_eta):
                if self.config.pileup_dependence:
                    pairs = aggregator.stratum_bin_histograms(et_idx, eta_idx)
                else:
                    pairs = {PU_COMBINED: aggregator.bin_histograms(et_idx, eta_idx)}
                stratum_templates = []
                for stratum, pair in pairs.items():
                    templates = None
                    if self.config.use_templates:
                        templates = HistogramPair(*template_store.load(stratum, et_idx, eta_idx))
                        stratum_templates.append(templates)
                    tasks.append(BinTask(et_idx, eta_idx, stratum, pair, templates))

                outside = aggregator.outside_bin_histograms(et_idx, eta_idx)
                if outside is None or outside.passing.total() + outside.failing.total() <= 0:
                    continue
                templates = None
                if self.config.use_templates:
                    templates = functools.reduce(HistogramPair.merge, stratum_templates)
                tasks.append(BinTask(et_idx, eta_idx, PU_EXCLUDED, outside, templates))
        return tasks

    def run_task(self, task: BinTask) -> EfficiencyResult:
        return self.estimate(
            task.histograms.passing,
            task.histograms.failing,
            templates=task.templates,
            label=task.label,
        )

    def estimate_grid(
        self, aggregator: EventAggregator, template_store: TemplateStore | None = None
    ) -> EfficiencyGrid:
        """
        Estimate every bin and collect the results into a complete grid.

        Bins are independent: with fitting.n_workers > 1 they are
        distributed over a process pool.
        """
        tasks = self.build_tasks(aggregator, template_store)
        n_workers = self.config.fitting.n_workers
        self.logger.info(f"Estimating {len(tasks)} bin(s) with {self.method.value}, {n_workers} worker(s)")

        bar_kwargs = get_tqdm_kwargs(desc="Estimating efficiencies", total=len(tasks), unit="bin")
        if n_workers > 1 and len(tasks) > 1:
            with Pool(processes=n_workers) as pool:
                results = list(tqdm(pool.imap(_run_task, [(self.config, t) for t in tasks]), **bar_kwargs))
        else:
            results = [self.run_task(t) for t in tqdm(tasks, **bar_kwargs)]

        grid = EfficiencyGrid(self.config.et_binning, self.config.eta_binning)
        by_bin: dict[tuple[int, int], list[EfficiencyResult]] = {}
        for task, result in zip(tasks, results):
            by_bin.setdefault((task.et_index, task.eta_index), []).append(result)

        for (et_idx, eta_idx), bin_results in by_bin.items():
            if self.config.pileup_dependence:
                label = f"et{et_idx}_eta{eta_idx}"
                grid.set(et_idx, eta_idx, combine_strata(bin_results, self.method, label))
            else:
                grid.set(et_idx, eta_idx, bin_results[0])
        return grid


def _run_task(args: tuple[EfficiencyConfig, BinTask]) -> EfficiencyResult:
    """Process-pool entry point."""
    config, task = args
    return EfficiencyEstimator(config).run_task(task)

