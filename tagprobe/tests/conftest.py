"""
Global pytest fixtures and configuration for the test suite.

Provides reusable fixtures (temporary directories, run configurations,
toy probe samples) shared by the unit, integration and validation tests.
"""

from __future__ import annotations

import copy
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, Generator

import pytest
import tomli_w

from tagprobe.modules.config import EfficiencyConfig, config_from_dict


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests of a single component")
    config.addinivalue_line("markers", "integration: tests exercising several components together")
    config.addinivalue_line("markers", "validation: statistical checks on toy samples (slower)")


@pytest.fixture
def tmp_test_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test operations.

    Automatically cleaned up after test completion.

    Yields:
        Path to temporary directory
    """
    tmp_dir = Path(tempfile.mkdtemp(prefix="tagprobe_test_"))
    try:
        yield tmp_dir
    finally:
        if tmp_dir.exists():
            shutil.rmtree(tmp_dir)


@pytest.fixture
def tmp_output_dir(tmp_test_dir: Path) -> Path:
    """
    Create a temporary output directory.

    Args:
        tmp_test_dir: Temporary test directory fixture

    Returns:
        Path to output directory
    """
    output_dir = tmp_test_dir / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


@pytest.fixture
def sample_config_dict(tmp_output_dir: Path) -> dict[str, Any]:
    """
    Provide a minimal valid run configuration (MC, COUNTnCOUNT, 2x1 bins).

    Returns:
        Dictionary with the TOML tables of a run configuration
    """
    return {
        "sample": {"type": "MC", "dir_tag": "toy", "ntuple_files": ["toy_DY.root"]},
        "calc_methods": {"RECO": "COUNTnCOUNT", "ID": "COUNTnCOUNT", "HLT": "COUNTnCOUNT"},
        "binning": {"et": "ETBINS2", "eta": "ETABINS1"},
        "pileup": {"reweight": False, "dependence": False, "limits": [0, 5, 10, 15, 20, 25, 30, 100]},
        "mass": {"low": 60.0, "high": 120.0, "bins": 30, "template_bins": 60, "min_probe_et": 10.0},
        "fitting": {"signal_model": "voigtian", "max_attempts": 3},
        "paths": {"output_dir": str(tmp_output_dir)},
    }


@pytest.fixture
def make_config(sample_config_dict: dict[str, Any]) -> Callable[..., EfficiencyConfig]:
    """
    Factory building an EfficiencyConfig from the sample dictionary.

    Usage:
        config = make_config(eff_type="ID", binning={"et": "ETBINS5"})

    Keyword tables are merged key by key into the sample dictionary.
    """

    def _make(eff_type: str = "ID", **tables: dict[str, Any]) -> EfficiencyConfig:
        raw = copy.deepcopy(sample_config_dict)
        for section, values in tables.items():
            raw.setdefault(section, {}).update(values)
        return config_from_dict(raw, eff_type)

    return _make


@pytest.fixture
def config_file(tmp_test_dir: Path, sample_config_dict: dict[str, Any]) -> Path:
    """
    Write the sample configuration to a TOML file.

    Returns:
        Path to the configuration file
    """
    path = tmp_test_dir / "efficiency.toml"
    with open(path, "wb") as f:
        tomli_w.dump(sample_config_dict, f)
    return path


@pytest.fixture
def mc_config(make_config: Callable[..., EfficiencyConfig]) -> EfficiencyConfig:
    """MC, ID efficiency, COUNTnCOUNT, ETBINS2 x ETABINS1."""
    return make_config()
