"""
Custom exceptions for the tag-and-probe efficiency pipeline

Provides a hierarchy of exceptions for better error handling and diagnostics.
All custom exceptions inherit from AnalysisError for easy catching.
"""

from __future__ import annotations


class AnalysisError(Exception):
    """
    Base exception for all tag-and-probe pipeline errors

    All custom exceptions inherit from this class, allowing users to catch
    all pipeline-specific errors with a single except clause.
    """

    pass


class ConfigurationError(AnalysisError):
    """
    Raised when configuration is invalid or missing required fields

    Examples:
    - Missing configuration file
    - Unknown sample type, efficiency kind, method or binning scheme
    - Inconsistent mass window or pileup limits
    """

    pass


class InputError(AnalysisError):
    """
    Raised when an input resource cannot be found or read

    Examples:
    - Selected-events ROOT file not found
    - passTree / failTree missing from the file
    - Required branch missing from a tree
    """

    pass


class TemplateMissingError(InputError):
    """
    Raised when a requested mass template is absent from the template store

    A missing template during data processing is a configuration error on
    the user's side (wrong directory tag, MC step not run), never something
    to paper over with an empty histogram.
    """

    def __init__(self, stratum: int, et_index: int, eta_index: int, file_path: str | None = None):
        """
        Initialize TemplateMissingError

        Args:
            stratum: Pileup stratum of the requested key
            et_index: Et bin index of the requested key
            eta_index: Eta bin index of the requested key
            file_path: Optional path to the template file
        """
        self.stratum = stratum
        self.et_index = et_index
        self.eta_index = eta_index
        self.file_path = file_path

        message = (
            f"Mass template not found for key "
            f"(stratum={stratum}, et={et_index}, eta={eta_index})"
        )
        if file_path:
            message += f" in file: {file_path}"

        super().__init__(message)


class FitConvergenceFailure(AnalysisError):
    """
    Raised when a mass fit does not converge after all retries

    Recoverable per bin: the estimator falls back to a simpler method
    and marks the result as degraded.
    """

    def __init__(self, bin_label: str, attempts: int, reason: str = ""):
        self.bin_label = bin_label
        self.attempts = attempts
        self.reason = reason

        message = f"Fit for {bin_label} did not converge after {attempts} attempt(s)"
        if reason:
            message += f": {reason}"

        super().__init__(message)


class EfficiencyError(AnalysisError):
    """
    Raised when efficiency inputs are unphysical

    Examples:
    - Negative pass or fail sums
    - Mismatched pass/fail histogram binning
    """

    pass


class IncompleteGridError(ConfigurationError):
    """Raised when an efficiency grid is emitted with unpopulated cells."""

    def __init__(self, missing: list[tuple[int, int]]):
        self.missing = list(missing)
        preview = ", ".join(f"({et},{eta})" for et, eta in self.missing[:10])
        if len(self.missing) > 10:
            preview += ", ..."
        super().__init__(f"Efficiency grid has {len(self.missing)} unpopulated cell(s): {preview}")


class HistogramFrozenError(AnalysisError):
    """Raised when filling a histogram after aggregation has completed."""

    pass


class EmptyBinWarning(UserWarning):
    """Issued when a kinematic bin has zero pass and zero fail probes."""

    pass
