"""
Probe loading from selected-events ROOT files

The event-selection stage writes one ROOT file per (sample, efficiency
kind) holding two trees, `passTree` and `failTree`, with one entry per
tag-probe pair. This module streams those entries as ProbeRecord objects.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

import awkward as ak
import numpy as np
import uproot

from .config import EfficiencyConfig
from .event_aggregator import ProbeRecord
from .exceptions import InputError

PASS_TREE = "passTree"
FAIL_TREE = "failTree"
REQUIRED_BRANCHES = ["mass", "et", "eta", "nGoodPV"]
WEIGHT_BRANCH = "weight"

logger = logging.getLogger("TagProbe.ProbeLoader")


def selected_events_path(config: EfficiencyConfig) -> Path:
    """
    Location of the selected-events file for this run.

    Returns the configured input_file if set, otherwise
    <output_dir>/<dir_tag>/selectEvents_<SAMPLE>_<EFFKIND>[_PU].root
    """
    if config.input_file:
        return Path(config.input_file)
    name = f"selectEvents_{config.sample_type.value}_{config.eff_kind.value}"
    if config.pileup_reweight:
        name += "_PU"
    return config.run_dir / f"{name}.root"


def _open_tree(file: uproot.ReadOnlyDirectory, tree_name: str, file_path: Path):
    if tree_name not in file:
        available = list(file.keys())
        raise InputError(
            f"Tree '{tree_name}' not found in {file_path}\n" f"Available keys: {available}"
        )
    tree = file[tree_name]
    missing = [b for b in REQUIRED_BRANCHES if b not in tree.keys()]
    if missing:
        raise InputError(f"Tree '{tree_name}' in {file_path} is missing branches: {missing}")
    return tree


def load_probe_records(
    file_path: str | Path, passed: bool, step_size: int | str = "50 MB"
) -> Iterator[ProbeRecord]:
    """
    Stream ProbeRecords from passTree (passed=True) or failTree.

    The file is closed when the generator is exhausted or discarded.

    Args:
        file_path: Selected-events ROOT file
        passed: Which tree to read
        step_size: uproot chunk size

    Yields:
        ProbeRecord per tree entry

    Raises:
        InputError: If the file, tree or a required branch is missing
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise InputError(f"Selected-events file not found: {file_path}")

    tree_name = PASS_TREE if passed else FAIL_TREE
    try:
        with uproot.open(file_path) as file:
            tree = _open_tree(file, tree_name, file_path)
            has_weight = WEIGHT_BRANCH in tree.keys()
            branches = REQUIRED_BRANCHES + ([WEIGHT_BRANCH] if has_weight else [])
            if not has_weight:
                logger.info(f"No '{WEIGHT_BRANCH}' branch in {tree_name}, using unit weights")

            for chunk in tree.iterate(branches, step_size=step_size, library="ak"):
                mass = ak.to_numpy(chunk["mass"]).astype(float)
                et = ak.to_numpy(chunk["et"]).astype(float)
                eta = ak.to_numpy(chunk["eta"]).astype(float)
                npv = ak.to_numpy(chunk["nGoodPV"]).astype(int)
                if has_weight:
                    weight = ak.to_numpy(chunk[WEIGHT_BRANCH]).astype(float)
                else:
                    weight = np.ones(len(mass))
                for i in range(len(mass)):
                    yield ProbeRecord(
                        mass=float(mass[i]),
                        et=float(et[i]),
                        eta=float(eta[i]),
                        n_good_vertices=int(npv[i]),
                        weight=float(weight[i]),
                        passed=passed,
                    )
    except (OSError, ValueError) as e:
        raise InputError(f"Error reading ROOT file {file_path}: {e}")


def count_entries(file_path: str | Path) -> tuple[int, int]:
    """Raw (pass, fail) entry counts of a selected-events file."""
    file_path = Path(file_path)
    if not file_path.exists():
        raise InputError(f"Selected-events file not found: {file_path}")
    with uproot.open(file_path) as file:
        n_pass = _open_tree(file, PASS_TREE, file_path).num_entries
        n_fail = _open_tree(file, FAIL_TREE, file_path).num_entries
    return int(n_pass), int(n_fail)


def write_probe_file(
    file_path: str | Path,
    pass_arrays: dict[str, np.ndarray],
    fail_arrays: dict[str, np.ndarray],
) -> Path:
    """
    Write a selected-events file in the layout read by load_probe_records.

    Used to stage toy samples and to re-export filtered probes.
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with uproot.recreate(file_path) as file:
        file[PASS_TREE] = pass_arrays
        file[FAIL_TREE] = fail_arrays
    return file_path
