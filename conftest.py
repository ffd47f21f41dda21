"""
conftest.py
===========
Session-level pytest configuration for the test suite.

Custom marks
------------
large_scale
    Applied to tests that build trees with hundreds of tips.  They run by
    default; deselect them with ``-m "not large_scale"`` for a quick pass.

    Registration here suppresses PytestUnknownMarkWarning and makes the mark
    visible in ``pytest --markers``.

Warning filters
---------------
NumbaPerformanceWarning messages are filtered out during tests.  The tiny
alignments used here leave most parallel threads idle, which is expected
and not informative for correctness testing.
"""

import warnings

from numba.core.errors import NumbaPerformanceWarning


def pytest_configure(config):
    """
    Configure pytest before test collection begins.

    This runs very early in the pytest lifecycle, before any test modules
    are imported, which is important for catching warnings from numba
    kernel compilation.
    """
    config.addinivalue_line(
        "markers",
        "large_scale: tests on trees with hundreds of tips "
        "(deselect with -m 'not large_scale')",
    )

    # Must happen before any kernels are compiled
    warnings.filterwarnings("ignore", category=NumbaPerformanceWarning)


def pytest_unconfigure(config):
    """
    Clean up after all tests complete.

    Restore default warning behavior.
    """
    warnings.resetwarnings()
