"""
Run configuration for the tag-and-probe efficiency stage

A run is described by a single TOML file (see config/efficiency.toml). The
file is parsed once into a frozen EfficiencyConfig of closed enums; no
component downstream of this module looks at configuration strings again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import tomli

from .binning import DEFAULT_PU_LIMITS, EtaBinSet, EtBinSet
from .exceptions import ConfigurationError


class SampleType(Enum):
    DATA = "DATA"
    MC = "MC"


class EfficiencyKind(Enum):
    RECO = "RECO"
    ID = "ID"
    HLT = "HLT"
    HLTleg1 = "HLTleg1"
    HLTleg2 = "HLTleg2"

    @property
    def is_hlt(self) -> bool:
        return self.value.startswith("HLT")


class CalcMethod(Enum):
    COUNTnCOUNT = "COUNTnCOUNT"
    COUNTnFIT = "COUNTnFIT"
    FITnFIT = "FITnFIT"


class SignalModel(Enum):
    VOIGTIAN = "voigtian"  # Breit-Wigner (x) Gaussian
    BW_CB = "bw_cb"  # Breit-Wigner (x) Crystal Ball


def _parse_enum(enum_cls: type[Enum], value: Any, key: str) -> Any:
    """Look up an enum member by value, raising ConfigurationError if unknown."""
    for member in enum_cls:
        if member.value == value or member.name == value:
            return member
    allowed = ", ".join(str(m.name) for m in enum_cls)
    raise ConfigurationError(f"Unrecognized value {value!r} for '{key}'. Allowed: {allowed}")


@dataclass(frozen=True)
class MassWindow:
    low: float = 60.0
    high: float = 120.0
    bins: int = 30
    template_bins: int = 60
    min_probe_et: float = 10.0

    @property
    def template_rebin_factor(self) -> int:
        return self.template_bins // self.bins


@dataclass(frozen=True)
class FitSettings:
    signal_model: SignalModel = SignalModel.VOIGTIAN
    z_mass: float = 91.1876
    z_width: float = 2.4952
    max_attempts: int = 3
    max_calls: int = 20000
    efficiency_as_parameter: bool = False
    fallback_to_count: bool = True
    n_workers: int = 1


@dataclass(frozen=True)
class EfficiencyConfig:
    """
    Typed configuration for one efficiency measurement.

    Attributes:
        sample_type: DATA or MC
        eff_kind: Efficiency being measured (RECO, ID, HLT*)
        calc_method: Method chosen for eff_kind
        et_binning: Et binning scheme
        eta_binning: Eta binning scheme
        pileup_reweight: Input probes carry pileup-reweighted weights
        pileup_dependence: Estimate per pileup stratum and combine
        pu_limits: Pileup stratum edges (number of good vertices)
        dir_tag: Directory tag used to locate inputs and outputs
        ntuple_files: Source ntuples (reported only)
    """

    sample_type: SampleType
    eff_kind: EfficiencyKind
    calc_method: CalcMethod
    et_binning: EtBinSet
    eta_binning: EtaBinSet
    pileup_reweight: bool = False
    pileup_dependence: bool = False
    pu_limits: tuple[float, ...] = DEFAULT_PU_LIMITS
    dir_tag: str = "default"
    ntuple_files: tuple[str, ...] = ()
    mass: MassWindow = field(default_factory=MassWindow)
    fitting: FitSettings = field(default_factory=FitSettings)
    input_file: str | None = None
    output_dir: str = "./results"
    templates_file: str | None = None

    @property
    def is_data(self) -> bool:
        return self.sample_type is SampleType.DATA

    @property
    def use_templates(self) -> bool:
        """Data fits take their signal shapes from MC templates."""
        return self.is_data and self.calc_method is not CalcMethod.COUNTnCOUNT

    @property
    def n_pu_strata(self) -> int:
        return len(self.pu_limits) - 1

    @property
    def pileup_tag(self) -> str:
        tag = "_PU" if self.pileup_reweight else ""
        if self.pileup_dependence:
            tag += "_varPU"
        return tag

    @property
    def label(self) -> str:
        return "_".join(
            [
                self.sample_type.value,
                self.eff_kind.value,
                self.calc_method.value,
                self.et_binning.name,
                self.eta_binning.name,
            ]
        )

    @property
    def template_label(self) -> str:
        """Same as label but without the sample, so DATA finds the MC templates."""
        return "_".join(
            [
                self.eff_kind.value,
                self.calc_method.value,
                self.et_binning.name,
                self.eta_binning.name,
            ]
        )

    @property
    def run_dir(self) -> Path:
        return Path(self.output_dir) / self.dir_tag

    @property
    def templates_path(self) -> Path:
        if self.templates_file:
            return Path(self.templates_file)
        return self.run_dir / f"mass_templates_{self.template_label}{self.pileup_tag}.root"


def _load_toml(config_path: Path) -> dict[str, Any]:
    """
    Load TOML configuration file with proper error handling

    Raises:
        ConfigurationError: If file not found or parsing fails
    """
    try:
        with open(config_path, "rb") as f:
            return tomli.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    except tomli.TOMLDecodeError as e:
        raise ConfigurationError(f"Error parsing TOML file {config_path}: {e}")


def _require(table: dict[str, Any], key: str, section: str) -> Any:
    if key not in table:
        raise ConfigurationError(f"Missing required key '{key}' in [{section}]")
    return table[key]


def _method_for_kind(methods: dict[str, Any], eff_kind: EfficiencyKind) -> CalcMethod:
    """Pick the calculation method for eff_kind; HLT legs fall back to the HLT entry."""
    if eff_kind.value in methods:
        return _parse_enum(CalcMethod, methods[eff_kind.value], f"calc_methods.{eff_kind.value}")
    if eff_kind.is_hlt and "HLT" in methods:
        return _parse_enum(CalcMethod, methods["HLT"], "calc_methods.HLT")
    raise ConfigurationError(
        f"No calculation method configured for efficiency kind {eff_kind.value}\n"
        f"Add '{eff_kind.value} = \"COUNTnCOUNT\"' (or COUNTnFIT / FITnFIT) to [calc_methods]"
    )


def config_from_dict(
    raw: dict[str, Any],
    eff_type: str,
    pileup_dependence: bool | None = None,
    pileup_reweight: bool | None = None,
) -> EfficiencyConfig:
    """
    Validate a parsed TOML document and build an EfficiencyConfig.

    Args:
        raw: Parsed TOML tables
        eff_type: Efficiency kind to measure ("RECO", "ID", "HLT", ...)
        pileup_dependence: Optional override of [pileup].dependence
        pileup_reweight: Optional override of [pileup].reweight

    Raises:
        ConfigurationError: On any missing or invalid setting
    """
    sample = _require(raw, "sample", "root")
    binning = _require(raw, "binning", "root")
    methods = _require(raw, "calc_methods", "root")
    pileup = raw.get("pileup", {})
    mass_raw = raw.get("mass", {})
    fit_raw = raw.get("fitting", {})
    paths = raw.get("paths", {})

    eff_kind = _parse_enum(EfficiencyKind, eff_type, "eff_type")

    try:
        mass = MassWindow(
            low=float(mass_raw.get("low", 60.0)),
            high=float(mass_raw.get("high", 120.0)),
            bins=int(mass_raw.get("bins", 30)),
            template_bins=int(mass_raw.get("template_bins", 60)),
            min_probe_et=float(mass_raw.get("min_probe_et", 10.0)),
        )
        fitting = FitSettings(
            signal_model=_parse_enum(
                SignalModel, fit_raw.get("signal_model", "voigtian"), "fitting.signal_model"
            ),
            z_mass=float(fit_raw.get("z_mass", 91.1876)),
            z_width=float(fit_raw.get("z_width", 2.4952)),
            max_attempts=int(fit_raw.get("max_attempts", 3)),
            max_calls=int(fit_raw.get("max_calls", 20000)),
            efficiency_as_parameter=bool(fit_raw.get("efficiency_as_parameter", False)),
            fallback_to_count=bool(fit_raw.get("fallback_to_count", True)),
            n_workers=int(fit_raw.get("n_workers", 1)),
        )
        pu_limits = tuple(float(x) for x in pileup.get("limits", DEFAULT_PU_LIMITS))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid numeric configuration value: {e}")

    if mass.high <= mass.low:
        raise ConfigurationError(f"Mass window is empty: [{mass.low}, {mass.high}]")
    if mass.bins <= 0 or mass.template_bins <= 0:
        raise ConfigurationError("Mass histogram bin counts must be positive")
    if mass.template_bins % mass.bins != 0:
        raise ConfigurationError(
            f"template_bins ({mass.template_bins}) must be a multiple of bins ({mass.bins})"
        )
    if len(pu_limits) < 2 or any(b <= a for a, b in zip(pu_limits[:-1], pu_limits[1:])):
        raise ConfigurationError(f"Pileup limits must be strictly ascending: {list(pu_limits)}")
    if fitting.max_attempts < 1:
        raise ConfigurationError("fitting.max_attempts must be at least 1")
    if fitting.n_workers < 1:
        raise ConfigurationError("fitting.n_workers must be at least 1")

    return EfficiencyConfig(
        sample_type=_parse_enum(SampleType, _require(sample, "type", "sample"), "sample.type"),
        eff_kind=eff_kind,
        calc_method=_method_for_kind(methods, eff_kind),
        et_binning=_parse_enum(EtBinSet, _require(binning, "et", "binning"), "binning.et"),
        eta_binning=_parse_enum(EtaBinSet, _require(binning, "eta", "binning"), "binning.eta"),
        pileup_reweight=(
            bool(pileup.get("reweight", False)) if pileup_reweight is None else pileup_reweight
        ),
        pileup_dependence=(
            bool(pileup.get("dependence", False))
            if pileup_dependence is None
            else pileup_dependence
        ),
        pu_limits=pu_limits,
        dir_tag=str(sample.get("dir_tag", "default")),
        ntuple_files=tuple(str(f) for f in sample.get("ntuple_files", [])),
        mass=mass,
        fitting=fitting,
        input_file=paths.get("input_file"),
        output_dir=str(paths.get("output_dir", "./results")),
        templates_file=paths.get("templates_file"),
    )


def load_config(
    config_path: str | Path,
    eff_type: str,
    pileup_dependence: bool | None = None,
    pileup_reweight: bool | None = None,
) -> EfficiencyConfig:
    """
    Read and validate a run configuration file.

    Args:
        config_path: Path to the TOML file
        eff_type: Efficiency kind to measure
        pileup_dependence: Optional command-line override
        pileup_reweight: Optional command-line override

    Returns:
        EfficiencyConfig
    """
    raw = _load_toml(Path(config_path))
    return config_from_dict(
        raw,
        eff_type,
        pileup_dependence=pileup_dependence,
        pileup_reweight=pileup_reweight,
    )
