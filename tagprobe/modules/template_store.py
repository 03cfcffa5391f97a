"""
Mass template persistence (ROOT files via uproot).

Simulation runs write one pass and one fail histogram per
(pileup stratum, Et bin, eta bin); data runs read them back as fixed
signal shapes. Histograms are stored as TH1D under their canonical names
(pass_et<i>_eta<j>_<puTag>) next to a TObjString describing the binning
the templates were built with.

Usage:
    with TemplateStore(path, mode="w") as store:
        store.save(stratum, et_idx, eta_idx, pass_hist, fail_hist)

    with TemplateStore(path) as store:
        pass_hist, fail_hist = store.load(stratum, et_idx, eta_idx)
"""

from __future__ import annotations

import logging
from pathlib import Path

import uproot

from .config import EfficiencyConfig
from .event_aggregator import HistogramPair
from .exceptions import ConfigurationError, InputError, TemplateMissingError
from .histograms import MassHistogram, histogram_name

SCHEME_INFO_KEY = "scheme_info"


def scheme_info(config: EfficiencyConfig) -> str:
    """Binning fingerprint stored with (and checked against) a template file."""
    mass = config.mass
    return (
        f"et={config.et_binning.name} eta={config.eta_binning.name} "
        f"mass={mass.low:g}-{mass.high:g} bins={mass.template_bins} "
        f"pileup_dependence={int(config.pileup_dependence)}"
    )


class TemplateStore:
    """
    Keyed store of template histogram pairs.

    Args:
        path: ROOT file
        mode: 'r' to read an existing file, 'w' to (re)create it
    """

    def __init__(self, path: str | Path, mode: str = "r") -> None:
        if mode not in ("r", "w"):
            raise ValueError(f"mode must be 'r' or 'w', got {mode!r}")
        self.path = Path(path)
        self.mode = mode
        self._file = None
        self._saved: set[tuple[int, int, int]] = set()
        self.logger = logging.getLogger("TagProbe.TemplateStore")

    def open(self) -> "TemplateStore":
        if self._file is not None:
            return self
        if self.mode == "r":
            if not self.path.exists():
                raise InputError(
                    f"Template file not found: {self.path}\n"
                    "Run the MC sample with the same configuration first to build templates"
                )
            try:
                self._file = uproot.open(self.path)
            except (OSError, ValueError) as e:
                raise InputError(f"Cannot open template file {self.path}: {e}")
        else:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = uproot.recreate(self.path)
        self.logger.debug(f"Opened template file {self.path} (mode={self.mode})")
        return self

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> "TemplateStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_open(self, mode: str) -> None:
        if self._file is None:
            raise RuntimeError(f"Template store {self.path} is not open")
        if self.mode != mode:
            raise RuntimeError(f"Template store {self.path} opened with mode={self.mode!r}")

    # Writing
    # --------------------------------------------------------------------------

    def save(
        self,
        stratum: int,
        et_index: int,
        eta_index: int,
        pass_hist: MassHistogram,
        fail_hist: MassHistogram,
    ) -> None:
        """Store the template pair for (stratum, et, eta); each key once per file."""
        self._require_open("w")
        key = (stratum, et_index, eta_index)
        if key in self._saved:
            raise ValueError(f"Template key {key} already written to {self.path}")
        self._file[histogram_name("pass", et_index, eta_index, stratum)] = pass_hist.hist
        self._file[histogram_name("fail", et_index, eta_index, stratum)] = fail_hist.hist
        self._saved.add(key)

    def save_all(self, templates: dict[tuple[int, int, int], HistogramPair]) -> int:
        """Store every pair of an aggregator's template map; returns the count."""
        for (stratum, et_idx, eta_idx), pair in sorted(templates.items()):
            self.save(stratum, et_idx, eta_idx, pair.passing, pair.failing)
        self.logger.info(f"Wrote {len(templates)} template pair(s) to {self.path}")
        return len(templates)

    def write_scheme_info(self, config: EfficiencyConfig) -> None:
        self._require_open("w")
        self._file[SCHEME_INFO_KEY] = scheme_info(config)

    # Reading
    # --------------------------------------------------------------------------

    def has(self, stratum: int, et_index: int, eta_index: int) -> bool:
        self._require_open("r")
        return all(
            histogram_name(kind, et_index, eta_index, stratum) in self._file
            for kind in ("pass", "fail")
        )

    def load(self, stratum: int, et_index: int, eta_index: int) -> tuple[MassHistogram, MassHistogram]:
        """
        Load the template pair for (stratum, et, eta).

        Raises:
            TemplateMissingError: If either histogram is absent
        """
        self._require_open("r")
        pair = []
        for kind in ("pass", "fail"):
            name = histogram_name(kind, et_index, eta_index, stratum)
            if name not in self._file:
                raise TemplateMissingError(stratum, et_index, eta_index, file_path=str(self.path))
            pair.append(MassHistogram.from_hist(self._file[name].to_hist(), name=name).freeze())
        return pair[0], pair[1]

    def check_scheme_info(self, config: EfficiencyConfig) -> None:
        """
        Verify that the file was built with the binning of config.

        Raises:
            ConfigurationError: On a binning mismatch or missing fingerprint
        """
        self._require_open("r")
        if SCHEME_INFO_KEY not in self._file:
            raise ConfigurationError(f"Template file {self.path} has no '{SCHEME_INFO_KEY}' record")
        stored = str(self._file[SCHEME_INFO_KEY])
        expected = scheme_info(config)
        if stored != expected:
            raise ConfigurationError(
                f"Template file {self.path} was built for a different binning\n"
                f"  file:     {stored}\n"
                f"  expected: {expected}"
            )
