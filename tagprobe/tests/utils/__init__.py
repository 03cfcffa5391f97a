"""
Test utilities and helper functions.

Provides toy-sample generation and result validation shared across the
test suite.
"""

from .mock_data_generator import (
    create_mock_config_toml,
    create_probe_root_file,
    generate_mass_sample,
    generate_probe_records,
    generate_toy_histogram,
    make_record,
    records_to_arrays,
)
from .test_helpers import (
    assert_arrays_close,
    assert_file_exists,
    assert_histograms_equal,
    assert_undetermined,
    assert_value_in_range,
    within_sigma,
)

__all__ = [
    "assert_arrays_close",
    "assert_file_exists",
    "assert_histograms_equal",
    "assert_undetermined",
    "assert_value_in_range",
    "within_sigma",
    "create_mock_config_toml",
    "create_probe_root_file",
    "generate_mass_sample",
    "generate_probe_records",
    "generate_toy_histogram",
    "make_record",
    "records_to_arrays",
]
