"""
Logging and Warning Configuration Utilities

Central control over log output, warning filters and progress bars for
the efficiency pipeline.

Usage:
    from tagprobe.utils.logging_config import setup_logging, suppress_warnings
    setup_logging(verbose=False)
    suppress_warnings()  # 'default': library noise off, EmptyBinWarning kept

    # Via environment variables:
    export TAGPROBE_WARNINGS=on   # Show every warning
    export TAGPROBE_WARNINGS=off  # Suppress all warnings
    export TAGPROBE_PROGRESS=off  # Disable tqdm bars
"""

from __future__ import annotations

import logging
import os
import warnings
from typing import Literal

import numpy as np

LOGGER_NAMESPACE = "TagProbe"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(verbose: bool = False, log_file: str | None = None) -> logging.Logger:
    """
    Configure the TagProbe logger hierarchy.

    Args:
        verbose: DEBUG level if True, INFO otherwise
        log_file: Optional file receiving the same records

    Returns:
        The root 'TagProbe' logger
    """
    logger = logging.getLogger(LOGGER_NAMESPACE)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S")
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="w")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Warnings (EmptyBinWarning included) go through logging as well
    logging.captureWarnings(True)
    logger.propagate = False
    return logger


def suppress_warnings(level: Literal["off", "error", "default", "all"] = "default") -> None:
    """
    Configure warning levels for the pipeline.

    Args:
        level: Warning level to set
            - 'off': Suppress all warnings, EmptyBinWarning included
            - 'error': Turn warnings into errors (library noise excepted)
            - 'default': Filter library noise, keep pipeline warnings
            - 'all': Show everything (useful for debugging)

    Environment variable TAGPROBE_WARNINGS overrides the level parameter.
    """
    env_level = os.environ.get("TAGPROBE_WARNINGS", "").lower()
    if env_level in ["on", "yes", "true", "1"]:
        level = "all"
    elif env_level in ["off", "no", "false", "0"]:
        level = "off"
    elif env_level in ["error", "default"]:
        level = env_level

    if level == "off":
        warnings.filterwarnings("ignore")
        np.seterr(all="ignore")

    elif level == "error":
        warnings.filterwarnings("error")
        warnings.filterwarnings("ignore", category=DeprecationWarning)
        warnings.filterwarnings("ignore", category=FutureWarning)

    elif level == "default":
        warnings.filterwarnings("default")
        warnings.filterwarnings("ignore", category=DeprecationWarning)
        np.seterr(all="ignore")

    elif level == "all":
        warnings.filterwarnings("default")
        np.seterr(all="warn")

    _suppress_library_warnings(level)


def _suppress_library_warnings(level: str) -> None:
    """Suppress known noisy warnings from specific libraries."""
    if level in ["off", "error", "default"]:
        warnings.filterwarnings("ignore", module="awkward.*")
        warnings.filterwarnings("ignore", module="uproot.*")

        # Matplotlib backend and font warnings
        warnings.filterwarnings("ignore", message=".*Matplotlib.*")
        logging.getLogger("matplotlib.font_manager").setLevel(logging.ERROR)

        # iminuit warns on every parameter that sits at a limit
        warnings.filterwarnings("ignore", module="iminuit.*")


def enable_progress_bars() -> bool:
    """
    Check if progress bars should be enabled.

    Can be controlled via TAGPROBE_PROGRESS environment variable.
    """
    env_progress = os.environ.get("TAGPROBE_PROGRESS", "on").lower()
    return env_progress in ["on", "yes", "true", "1"]


def get_tqdm_kwargs(desc: str = "", **kwargs) -> dict:
    """
    Get standard kwargs for tqdm progress bars with consistent styling.

    Args:
        desc: Description for the progress bar
        **kwargs: Additional tqdm parameters

    Returns:
        Dictionary of tqdm parameters
    """
    default_kwargs = {
        "desc": desc,
        "unit": "it",
        "ncols": 80,
        "bar_format": "{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]",
        "disable": not enable_progress_bars(),
    }
    default_kwargs.update(kwargs)
    return default_kwargs
