"""
_logging.py
===========
Logging functions for phylocache.

All functions in this module have NO side effects except logging. They take
computed data as parameters and format/emit log messages.

This separation ensures:
- Logging can be easily disabled/mocked in tests
- Computation is separate from presentation
"""

import logging
from typing import List

logger = logging.getLogger(__name__)


# ============================================================================ #
# System and Backend Logging (called at module import time)
# ============================================================================ #


def log_optimization_status() -> None:
    """
    Log system capabilities and the numba runtime at INFO level.

    Called once at package import time.  Reports CPU count, Python and numba
    versions, the LLVM backend and the threading configuration.
    """
    import os
    import platform

    import llvmlite
    import numba

    cpu_count = os.cpu_count() or 1
    logger.info(
        f"System: {platform.machine()} ({platform.system()}), "
        f"{cpu_count} CPU cores, Python {platform.python_version()}"
    )
    logger.info(f"Numba {numba.__version__} loaded successfully")
    logger.info(f"LLVM backend: llvmlite {llvmlite.__version__}")
    # the threading layer is only known after the first parallel launch
    logger.info(f"Numba threading: {numba.get_num_threads()} threads configured")


def install_numba_warning_filter() -> None:
    """
    Capture NumbaPerformanceWarning and route it through our logger.

    numba issues performance warnings (e.g., "parallel=True but no prange
    found") via Python's warnings module.  This filter intercepts them and
    logs them at WARNING level so they appear in the same stream as other
    phylocache diagnostics.
    """
    import warnings

    from numba.core.errors import NumbaPerformanceWarning

    original_showwarning = warnings.showwarning

    def custom_showwarning(message, category, filename, lineno, file=None, line=None):
        if issubclass(category, NumbaPerformanceWarning):
            logger.warning(f"Numba performance issue: {message}")
            logger.warning(f"  at {filename}:{lineno}")
            return
        original_showwarning(message, category, filename, lineno, file, line)

    warnings.showwarning = custom_showwarning


def log_backend_availability(backends_available: List[str]) -> None:
    """
    Log which execution backends are available for the likelihood kernels.

    Parameters
    ----------
    backends_available : List[str]
        Available backends, least optimised first.
    """
    logger.info(f"Available backends: {', '.join(backends_available)}")
    if "cpu-parallel" in backends_available:
        logger.info("  cpu-parallel: LLVM-compiled parallel code (numba.njit + prange)")
    if "python" in backends_available:
        logger.info("  python: numpy reference implementation")
    logger.info(f"Default backend='best' will use: {backends_available[-1]}")


# ============================================================================ #
# Likelihood Logging (called during construction and evaluation)
# ============================================================================ #


def log_likelihood_construction(
    name: str,
    backend: str,
    n_nodes: int,
    n_patterns: int,
    n_categories: int,
    n_states: int,
    use_ambiguities: bool,
) -> None:
    """
    Summarise a newly constructed likelihood.

    Parameters
    ----------
    name : str
        Likelihood identifier.
    backend : str
        Resolved kernel backend.
    n_nodes, n_patterns, n_categories, n_states : int
        Dimensions of the partials buffers.
    use_ambiguities : bool
        Whether tips are stored as partials rather than state codes.
    """
    logger.info(
        "Likelihood '%s': %d nodes, %d patterns, %d rate categories, %d states "
        "(backend=%s, tips as %s)",
        name,
        n_nodes,
        n_patterns,
        n_categories,
        n_states,
        backend,
        "partials" if use_ambiguities else "states",
    )


def log_rescaling_enabled(name: str, attempt: int) -> None:
    """
    Announce that a likelihood switched to scaled partials after an underflow.

    Parameters
    ----------
    name : str
        Likelihood identifier.
    attempt : int
        1-based number of the recomputation about to run.
    """
    logger.info(
        "Likelihood '%s' underflowed; recomputing with partials rescaling "
        "(attempt %d)",
        name,
        attempt,
    )


def log_storage_growth(name: str, old_capacity: int, new_capacity: int) -> None:
    """
    Report a reallocation of node-indexed buffers.

    Parameters
    ----------
    name : str
        Owner of the buffers.
    old_capacity, new_capacity : int
        Node slots before and after growth.
    """
    logger.debug(
        "'%s': node storage grown from %d to %d slots", name, old_capacity, new_capacity
    )


def log_memory_footprint(name: str, memory_bytes: int) -> None:
    """
    Log the memory held by a likelihood's buffers.

    Parameters
    ----------
    name : str
        Likelihood identifier.
    memory_bytes : int
        Total bytes across partials, matrices and scale factors.
    """
    mem_mb = memory_bytes / (1024**2)
    mem_gb = memory_bytes / (1024**3)

    if mem_gb >= 1.0:
        logger.info("Likelihood '%s' buffers: %.2f GB", name, mem_gb)
    else:
        logger.info("Likelihood '%s' buffers: %.1f MB", name, mem_mb)

    system_threshold_gb = 16 * 0.8
    if mem_gb > system_threshold_gb:
        logger.warning(
            "Likelihood '%s' buffers (%.2f GB) exceed the typical system memory "
            "threshold (%.1f GB = 80%% of 16 GB). Consider fewer rate categories "
            "or splitting the alignment.",
            name,
            mem_gb,
            system_threshold_gb,
        )
