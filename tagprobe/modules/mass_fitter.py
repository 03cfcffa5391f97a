"""
Binned maximum-likelihood mass fits for tag-and-probe efficiencies.

Each fit is an extended binned Poisson likelihood minimized with MINUIT
(iminuit). Two configurations are provided:

- Single channel: signal + exponential background on one histogram
  (COUNTnFIT fits the pass and fail histograms independently)
- Simultaneous: pass and fail histograms fitted together with a shared
  signal shape and independent yields and backgrounds (FITnFIT). The
  efficiency can optionally be a fit parameter itself, in which case
  MINOS gives its asymmetric errors. Near a limit (efficiency close to
  0 or 1, or no signal) the interval comes from profiling the likelihood
  instead and stays inside the limits.

When MC templates are supplied the signal shape is held fixed to the
template and only the yields and the background slopes float.

A fit that does not converge is retried from alternate starting points
with the more careful MIGRAD strategy; after `max_attempts` failures a
FitConvergenceFailure is raised for the caller to handle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import NamedTuple

import numpy as np
from iminuit import Minuit
from scipy import optimize

from .config import FitSettings
from .exceptions import FitConvergenceFailure
from .fit_models import (
    ParamSpec,
    SignalShape,
    exponential_fractions,
    make_signal_shape,
    template_fractions,
)
from .histograms import MassHistogram

CHANNELS = ("pass", "fail")
EFFICIENCY_PARAM = "efficiency"


class AttemptSeed(NamedTuple):
    """Starting point of one fit attempt."""

    signal_fraction: float
    slope: float
    sigma: float
    strategy: int


_ATTEMPT_SEEDS = [
    AttemptSeed(0.9, -0.02, 2.0, 1),
    AttemptSeed(0.6, -0.05, 1.0, 2),
    AttemptSeed(0.3, 0.0, 3.5, 2),
    AttemptSeed(0.95, -0.1, 1.5, 2),
]


def attempt_seed(attempt: int) -> AttemptSeed:
    """Seed for 1-based attempt number; cycles through the alternates."""
    return _ATTEMPT_SEEDS[(attempt - 1) % len(_ATTEMPT_SEEDS)]


@dataclass
class FitResult:
    """
    Outcome of one converged mass fit.

    Attributes:
        label: Bin label used in logs
        attempts: Attempt on which the fit converged
        nll: Minimum of the negative log-likelihood
        edm: Estimated distance to minimum
        parameters: Best-fit values by name
        errors: Parabolic (HESSE) errors by name
        minos_errors: {name: (lower, upper)} asymmetric interval (MINOS, or the
            profile likelihood near a limit); lower <= 0
        names: Parameter order of `covariance`
        covariance: Covariance matrix of all parameters
        components: {channel: {"edges", "data", "signal", "background"}}
        limits: {name: (low, high)} parameter limits of the fit
    """

    label: str
    attempts: int
    nll: float
    edm: float
    parameters: dict[str, float]
    errors: dict[str, float]
    minos_errors: dict[str, tuple[float, float]] = field(default_factory=dict)
    names: list[str] = field(default_factory=list)
    covariance: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))
    components: dict[str, dict[str, np.ndarray]] = field(default_factory=dict)
    limits: dict[str, tuple[float, float]] = field(default_factory=dict)

    def value(self, name: str) -> float:
        return self.parameters[name]

    def error(self, name: str) -> float:
        return self.errors[name]

    def at_limit(self, name: str, side: str = "both") -> bool:
        """
        True when the parameter is within one parabolic error of a limit.

        `side` is "lower", "upper" or "both".
        """
        if name not in self.limits:
            return False
        return _near_limit(self.parameters[name], self.errors.get(name, 0.0), *self.limits[name], side=side)

    def cov(self, a: str, b: str) -> float:
        return float(self.covariance[self.names.index(a), self.names.index(b)])

    def signal_yield(self, channel: str) -> float:
        """Fitted signal yield in the mass window for 'pass' or 'fail'."""
        if f"n_sig_{channel}" in self.parameters:
            return self.parameters[f"n_sig_{channel}"]
        eff = self.parameters[EFFICIENCY_PARAM]
        n_sig = self.parameters["n_sig"]
        return n_sig * eff if channel == "pass" else n_sig * (1.0 - eff)

    def signal_yield_error(self, channel: str) -> float:
        if f"n_sig_{channel}" in self.errors:
            return self.errors[f"n_sig_{channel}"]
        # n_sig * eff (or n_sig * (1 - eff)), linear propagation
        eff = self.parameters[EFFICIENCY_PARAM]
        n_sig = self.parameters["n_sig"]
        frac = eff if channel == "pass" else 1.0 - eff
        sign = 1.0 if channel == "pass" else -1.0
        grad = np.array([frac, sign * n_sig])
        sub = np.array(
            [
                [self.cov("n_sig", "n_sig"), self.cov("n_sig", EFFICIENCY_PARAM)],
                [self.cov(EFFICIENCY_PARAM, "n_sig"), self.cov(EFFICIENCY_PARAM, EFFICIENCY_PARAM)],
            ]
        )
        return float(np.sqrt(max(grad @ sub @ grad, 0.0)))

    def format_log(self) -> str:
        """Human-readable parameter table for the fit log."""
        lines = [
            f"Fit: {self.label}",
            f"  converged on attempt {self.attempts}",
            f"  -log(L) = {self.nll:.4f}   EDM = {self.edm:.3e}",
        ]
        for name in self.names:
            line = f"  {name:<16}{self.parameters[name]:14.5g} +- {self.errors[name]:<12.4g}"
            if name in self.minos_errors:
                lo, hi = self.minos_errors[name]
                line += f"  minos [{lo:+.4g}, {hi:+.4g}]"
            lines.append(line)
        return "\n".join(lines)


class _BinnedModel:
    """Extended signal + background model over one or two channels."""

    def __init__(
        self,
        channels: dict[str, tuple[MassHistogram, MassHistogram | None]],
        signal_shape: SignalShape,
        efficiency_as_parameter: bool,
        label: str,
    ) -> None:
        hists = [h for h, _ in channels.values()]
        for h in hists[1:]:
            if not h.same_binning(hists[0]):
                raise ValueError(f"Channel histograms for {label} have different binning")

        self.channels = list(channels)
        self.edges = hists[0].edges
        self.data = {ch: np.clip(h.values(), 0.0, None) for ch, (h, _) in channels.items()}
        self.signal_shape = signal_shape
        self.efficiency_as_parameter = efficiency_as_parameter and len(self.channels) == 2

        templates = {ch: t for ch, (_, t) in channels.items() if t is not None}
        if templates and len(templates) != len(self.channels):
            raise ValueError(f"Templates must be given for all channels or none ({label})")
        self.template_fracs: dict[str, np.ndarray] = {}
        for ch, template in templates.items():
            fracs = template_fractions(template, self.edges)
            if not fracs.any():
                raise FitConvergenceFailure(label, 0, f"signal template for '{ch}' is empty")
            self.template_fracs[ch] = fracs
        self.use_templates = bool(self.template_fracs)
        self.names: list[str] = []

    def param_specs(self, seed: AttemptSeed) -> list[ParamSpec]:
        specs: list[ParamSpec] = []
        if not self.use_templates:
            for spec in self.signal_shape.param_specs():
                start = seed.sigma if spec.name == "sigma" else spec.start
                specs.append(ParamSpec(spec.name, start, spec.low, spec.high, spec.fixed))

        totals = {ch: float(self.data[ch].sum()) for ch in self.channels}
        if self.efficiency_as_parameter:
            n_all = totals["pass"] + totals["fail"]
            eff0 = totals["pass"] / n_all if n_all > 0 else 0.5
            specs.append(ParamSpec("n_sig", seed.signal_fraction * n_all, 0.0, max(2.0 * n_all, 10.0)))
            specs.append(ParamSpec(EFFICIENCY_PARAM, min(max(eff0, 0.02), 0.98), 0.0, 1.0))
        else:
            for ch in self.channels:
                n = totals[ch]
                specs.append(ParamSpec(f"n_sig_{ch}", seed.signal_fraction * n, 0.0, max(2.0 * n, 10.0)))

        for ch in self.channels:
            n = totals[ch]
            specs.append(ParamSpec(f"n_bkg_{ch}", (1.0 - seed.signal_fraction) * n, 0.0, max(2.0 * n, 10.0)))
            specs.append(ParamSpec(f"slope_{ch}", seed.slope, -1.0, 1.0))
        self.names = [s.name for s in specs]
        return specs

    def components(self, params: dict[str, float]) -> dict[str, tuple[np.ndarray, np.ndarray]]:
        """{channel: (expected signal, expected background)} per bin."""
        shared = None
        if not self.use_templates:
            shared = self.signal_shape.fractions(self.edges, params)

        out = {}
        for ch in self.channels:
            sig_fracs = self.template_fracs[ch] if self.use_templates else shared
            if self.efficiency_as_parameter:
                eff = params[EFFICIENCY_PARAM]
                n_sig = params["n_sig"] * (eff if ch == "pass" else 1.0 - eff)
            else:
                n_sig = params[f"n_sig_{ch}"]
            bkg_fracs = exponential_fractions(self.edges, params[f"slope_{ch}"])
            out[ch] = (n_sig * sig_fracs, params[f"n_bkg_{ch}"] * bkg_fracs)
        return out

    def nll(self, x: np.ndarray) -> float:
        params = dict(zip(self.names, x))
        total = 0.0
        for ch, (sig, bkg) in self.components(params).items():
            mu = np.clip(sig + bkg, 1e-12, None)
            n = self.data[ch]
            total += float(np.sum(mu - n * np.log(mu)))
        if not np.isfinite(total):
            return 1e30
        return total


class MassFitter:
    """
    MINUIT driver for the pass/fail mass fits of one efficiency run.

    Args:
        settings: Fit settings from the run configuration
    """

    def __init__(self, settings: FitSettings | None = None) -> None:
        self.settings = settings or FitSettings()
        self.signal_shape = make_signal_shape(
            self.settings.signal_model.value, self.settings.z_mass, self.settings.z_width
        )
        self.logger = logging.getLogger("TagProbe.MassFitter")

    def fit_channel(
        self,
        hist: MassHistogram,
        template: MassHistogram | None = None,
        channel: str = "pass",
        label: str = "",
    ) -> FitResult:
        """
        Fit signal + background to a single histogram.

        Args:
            hist: Data histogram
            template: Optional fixed signal shape
            channel: 'pass' or 'fail', used for parameter names
            label: Bin label for logs and errors

        Raises:
            FitConvergenceFailure: If no attempt converges
        """
        if channel not in CHANNELS:
            raise ValueError(f"Unknown channel {channel!r}")
        model = _BinnedModel({channel: (hist, template)}, self.signal_shape, False, label)
        return self._minimize(model, f"{label} [{channel}]")

    def fit_simultaneous(
        self,
        pass_hist: MassHistogram,
        fail_hist: MassHistogram,
        pass_template: MassHistogram | None = None,
        fail_template: MassHistogram | None = None,
        label: str = "",
        efficiency_as_parameter: bool | None = None,
    ) -> FitResult:
        """
        Simultaneous pass/fail fit with a shared signal shape.

        Args:
            pass_hist: Passing-probe histogram
            fail_hist: Failing-probe histogram
            pass_template: Optional fixed signal shape for passing probes
            fail_template: Optional fixed signal shape for failing probes
            label: Bin label for logs and errors
            efficiency_as_parameter: Fit (n_sig, efficiency) instead of the
                two signal yields; defaults to the run setting

        Raises:
            FitConvergenceFailure: If no attempt converges
        """
        if efficiency_as_parameter is None:
            efficiency_as_parameter = self.settings.efficiency_as_parameter
        model = _BinnedModel(
            {"pass": (pass_hist, pass_template), "fail": (fail_hist, fail_template)},
            self.signal_shape,
            efficiency_as_parameter,
            label,
        )
        return self._minimize(model, label)

    def _minimize(self, model: _BinnedModel, label: str) -> FitResult:
        reason = ""
        max_attempts = self.settings.max_attempts
        for attempt in range(1, max_attempts + 1):
            seed = attempt_seed(attempt)
            specs = model.param_specs(seed)

            m = Minuit(model.nll, [s.start for s in specs], name=model.names)
            m.errordef = Minuit.LIKELIHOOD
            m.strategy = seed.strategy
            for spec in specs:
                m.limits[spec.name] = (spec.low, spec.high)
                m.fixed[spec.name] = spec.fixed

            m.migrad(ncall=self.settings.max_calls)
            if m.valid:
                m.hesse()

            converged, reason = _check_convergence(m)
            if converged:
                if attempt > 1:
                    self.logger.info(f"Fit {label} converged on attempt {attempt}/{max_attempts}")
                return self._build_result(m, model, label, attempt)
            self.logger.debug(f"Fit {label} attempt {attempt}/{max_attempts} failed: {reason}")

        self.logger.warning(f"Fit {label} failed after {max_attempts} attempt(s): {reason}")
        raise FitConvergenceFailure(label, max_attempts, reason)

    def _build_result(self, m: Minuit, model: _BinnedModel, label: str, attempt: int) -> FitResult:
        names = list(model.names)
        limits = {name: (float(m.limits[name][0]), float(m.limits[name][1])) for name in names}
        minos_errors: dict[str, tuple[float, float]] = {}
        if EFFICIENCY_PARAM in names:
            minos_errors[EFFICIENCY_PARAM] = self._efficiency_interval(m, model, limits, label)

        parameters = {name: float(m.values[name]) for name in names}
        components = {}
        for ch, (sig, bkg) in model.components(parameters).items():
            components[ch] = {
                "edges": model.edges,
                "data": model.data[ch],
                "signal": sig,
                "background": bkg,
            }

        return FitResult(
            label=label,
            attempts=attempt,
            nll=float(m.fval),
            edm=float(m.fmin.edm),
            parameters=parameters,
            errors={name: float(m.errors[name]) for name in names},
            minos_errors=minos_errors,
            names=names,
            covariance=np.array(m.covariance, dtype=float),
            components=components,
            limits=limits,
        )

    def _efficiency_interval(
        self, m: Minuit, model: _BinnedModel, limits: dict[str, tuple[float, float]], label: str
    ) -> tuple[float, float]:
        """
        MINOS errors of the efficiency, or its profile-likelihood interval
        when the efficiency or the signal yield sits on a limit.

        Raises:
            FitConvergenceFailure: If neither interval can be determined
        """
        on_limit = any(
            _near_limit(float(m.values[name]), float(m.errors[name]), *limits[name])
            for name in (EFFICIENCY_PARAM, "n_sig")
        )
        if not on_limit:
            try:
                m.minos(EFFICIENCY_PARAM)
                merr = m.merrors[EFFICIENCY_PARAM]
                if merr.is_valid and not (merr.at_lower_limit or merr.at_upper_limit):
                    return float(merr.lower), float(merr.upper)
                self.logger.info(f"MINOS interval for {label} unusable, profiling the likelihood")
            except RuntimeError as e:
                self.logger.info(f"MINOS failed for {label} ({e}), profiling the likelihood")

        low, high = profile_interval(m, model, EFFICIENCY_PARAM, label)
        best = float(m.values[EFFICIENCY_PARAM])
        return low - best, high - best


def profile_interval(m: Minuit, model: _BinnedModel, name: str, label: str = "") -> tuple[float, float]:
    """
    Likelihood-ratio interval of one parameter, clipped to its limits.

    The parameter is fixed at trial values while all others are minimized
    again; each end lies where -log(L) has risen by `errordef`, or on the
    limit when the rise never gets that large.

    Raises:
        FitConvergenceFailure: If the profile cannot be evaluated
    """
    best = float(m.values[name])
    low, high = (float(v) for v in m.limits[name])
    start = [float(m.values[n]) for n in model.names]
    nll_min = float(m.fval)

    def rise(x: float) -> float:
        trial = Minuit(model.nll, start, name=model.names)
        trial.errordef = m.errordef
        trial.strategy = 1
        for n in model.names:
            trial.limits[n] = m.limits[n]
            trial.fixed[n] = m.fixed[n]
        trial.fixed[name] = True
        trial.values[name] = x
        trial.migrad()
        if not np.isfinite(trial.fval):
            raise FitConvergenceFailure(label, 1, f"profile of {name} not finite at {x:.6g}")
        # Never below the global minimum
        return max(float(trial.fval) - nll_min, 0.0) - m.errordef

    ends = []
    for bound in (low, high):
        if abs(bound - best) <= 1e-12 * max(1.0, abs(best)) or rise(bound) <= 0.0:
            ends.append(bound)
            continue
        try:
            ends.append(float(optimize.brentq(rise, best, bound, xtol=1e-7)))
        except ValueError as e:
            raise FitConvergenceFailure(label, 1, f"profile of {name} has no crossing: {e}") from e
    return ends[0], ends[1]


def _near_limit(value: float, error: float, low: float, high: float, side: str = "both") -> bool:
    tol = max(error, 1e-3 * (high - low))
    below = value - low < tol
    above = high - value < tol
    if side == "lower":
        return below
    if side == "upper":
        return above
    return below or above


def _check_convergence(m: Minuit) -> tuple[bool, str]:
    """Converged means a valid minimum with a positive-definite covariance."""
    if not m.valid:
        return False, "MIGRAD minimum not valid"
    if m.covariance is None or not m.fmin.has_posdef_covar:
        return False, "covariance matrix not positive definite"
    free = [i for i, name in enumerate(m.parameters) if not m.fixed[name]]
    cov = np.array(m.covariance, dtype=float)[np.ix_(free, free)]
    if not np.all(np.isfinite(cov)):
        return False, "covariance matrix has non-finite entries"
    # Parameters sitting at a limit give (numerically) zero eigenvalues
    eigenvalues = np.linalg.eigvalsh(cov)
    if eigenvalues.min() < -1e-9 * max(abs(eigenvalues.max()), 1.0):
        return False, "covariance matrix not positive definite"
    return True, ""
