"""
Line shapes for the tag-and-probe mass fits.

Every shape returns per-bin *fractions*: the probability content of each
histogram bin, normalized to one over the fit window. Expected bin counts
are then simply yield * fractions, which keeps yields equal to the number
of events inside the mass window.

Signal:
- Voigtian: Breit-Wigner (Z mass and width fixed) convolved with a
  Gaussian resolution; free mean shift and sigma
- BW x Crystal Ball: same Breit-Wigner convolved numerically with a
  Crystal Ball resolution; free mean shift and sigma, tail fixed
- Template: fixed MC mass shape (data fits)

Background: exponential with free slope.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np
from scipy import stats
from scipy.special import voigt_profile

from .histograms import MassHistogram

# Sub-samples per bin for numerical bin integration
N_SUBSAMPLES: int = 8


@dataclass(frozen=True)
class ParamSpec:
    """Start value and limits of one fit parameter."""

    name: str
    start: float
    low: float | None = None
    high: float | None = None
    fixed: bool = False


def integrate_density(density: Callable[[np.ndarray], np.ndarray], edges: np.ndarray) -> np.ndarray:
    """
    Bin fractions of an (unnormalized) density, by midpoint sub-sampling.

    Args:
        density: Vectorized function of mass
        edges: Histogram bin edges

    Returns:
        Array of len(edges) - 1 fractions summing to one (zeros if the
        density vanishes over the whole window)
    """
    edges = np.asarray(edges, dtype=float)
    widths = np.diff(edges)
    offsets = (np.arange(N_SUBSAMPLES) + 0.5) / N_SUBSAMPLES
    points = edges[:-1, None] + widths[:, None] * offsets[None, :]
    values = density(points.ravel()).reshape(points.shape)
    content = np.clip(values, 0.0, None).mean(axis=1) * widths
    total = content.sum()
    if not np.isfinite(total) or total <= 0:
        return np.zeros_like(content)
    return content / total


class SignalShape:
    """Base class for parametric signal shapes."""

    name = "signal"

    def param_specs(self, prefix: str = "") -> list[ParamSpec]:
        raise NotImplementedError

    def fractions(self, edges: np.ndarray, params: dict[str, float], prefix: str = "") -> np.ndarray:
        raise NotImplementedError


class VoigtianShape(SignalShape):
    """Non-relativistic Breit-Wigner (x) Gaussian."""

    name = "voigtian"

    def __init__(self, mass: float = 91.1876, width: float = 2.4952) -> None:
        self.mass = mass
        self.width = width

    def param_specs(self, prefix: str = "") -> list[ParamSpec]:
        return [
            ParamSpec(f"{prefix}mean_shift", 0.0, -5.0, 5.0),
            ParamSpec(f"{prefix}sigma", 2.0, 0.2, 10.0),
        ]

    def fractions(self, edges: np.ndarray, params: dict[str, float], prefix: str = "") -> np.ndarray:
        center = self.mass + params[f"{prefix}mean_shift"]
        sigma = params[f"{prefix}sigma"]
        # voigt_profile takes the Lorentzian half width at half maximum
        gamma = 0.5 * self.width
        return integrate_density(lambda x: voigt_profile(x - center, sigma, gamma), edges)


class BreitWignerCrystalBallShape(SignalShape):
    """
    Breit-Wigner (x) Crystal Ball, convolved on a fine grid.

    The Crystal Ball tail parameters (alpha, n) are held fixed; the
    resolution core (mean shift, sigma) floats.
    """

    name = "bw_cb"

    def __init__(
        self,
        mass: float = 91.1876,
        width: float = 2.4952,
        alpha: float = 1.5,
        n: float = 5.0,
        grid_step: float = 0.05,
    ) -> None:
        self.mass = mass
        self.width = width
        self.alpha = alpha
        self.n = n
        self.grid_step = grid_step

    def param_specs(self, prefix: str = "") -> list[ParamSpec]:
        return [
            ParamSpec(f"{prefix}mean_shift", 0.0, -5.0, 5.0),
            ParamSpec(f"{prefix}sigma", 2.0, 0.2, 10.0),
        ]

    def fractions(self, edges: np.ndarray, params: dict[str, float], prefix: str = "") -> np.ndarray:
        shift = params[f"{prefix}mean_shift"]
        sigma = params[f"{prefix}sigma"]
        edges = np.asarray(edges, dtype=float)

        # Pad the window so that the convolution is not truncated at its edges
        pad = 10.0 * sigma + 5.0 * self.width
        dx = self.grid_step
        grid = np.arange(edges[0] - pad, edges[-1] + pad + dx, dx)
        bw = stats.cauchy.pdf(grid, loc=self.mass, scale=0.5 * self.width)

        half = int(np.ceil(pad / dx))
        t = np.arange(-half, half + 1) * dx
        kernel = stats.crystalball.pdf((t - shift) / sigma, self.alpha, self.n) / sigma

        conv = np.convolve(bw, kernel, mode="same") * dx
        return integrate_density(lambda x: np.interp(x, grid, conv), edges)


def make_signal_shape(model: str, mass: float, width: float) -> SignalShape:
    """Signal shape by configuration name ('voigtian' or 'bw_cb')."""
    if model == "voigtian":
        return VoigtianShape(mass, width)
    if model == "bw_cb":
        return BreitWignerCrystalBallShape(mass, width)
    raise ValueError(f"Unknown signal model: {model}")


def exponential_fractions(edges: np.ndarray, slope: float) -> np.ndarray:
    """Bin fractions of exp(slope * m), integrated analytically."""
    edges = np.asarray(edges, dtype=float)
    x = edges - edges[0]
    if abs(slope) < 1e-9:
        content = np.diff(x)
    else:
        # Shift by the largest exponent to stay finite for either sign of slope
        ref = max(slope * x[0], slope * x[-1])
        cdf = np.exp(slope * x - ref) / slope
        content = np.diff(cdf)
    content = np.abs(content)
    return content / content.sum()


def template_fractions(template: MassHistogram, edges: np.ndarray) -> np.ndarray:
    """
    Fixed shape from an MC template, brought to the binning of `edges`.

    The template binning must be an integer refinement of the target
    binning over the same window. Negative bins (negative MC weights) are
    clipped to zero.

    Returns:
        Normalized fractions, or all zeros if the template is empty
    """
    edges = np.asarray(edges, dtype=float)
    n_target = len(edges) - 1
    if template.n_bins % n_target != 0 or not np.isclose(template.mass_low, edges[0]) or not np.isclose(
        template.mass_high, edges[-1]
    ):
        raise ValueError(
            f"Template '{template.name}' ({template.n_bins} bins on "
            f"[{template.mass_low}, {template.mass_high}]) is incompatible with "
            f"{n_target} bins on [{edges[0]}, {edges[-1]}]"
        )
    values = template.rebin(template.n_bins // n_target).values()
    values = np.clip(values, 0.0, None)
    total = values.sum()
    if total <= 0:
        return np.zeros(n_target)
    return values / total
