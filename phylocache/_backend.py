"""
_backend.py
===========
Backend detection and selection for the likelihood kernels.

Two execution backends exist:

  'python'        numpy reference kernels
  'cpu-parallel'  numba-compiled kernels, parallel over site patterns

Functions in this module have NO side effects - they only query system state.
Logging is done by the calling code, not here.
"""

from typing import List

import numba

from phylocache._context import get_backend_override


# ============================================================================ #
# Backend Detection (No Side Effects)
# ============================================================================ #


def check_numba_available() -> bool:
    """
    Check that numba's parallel runtime can be used.

    Returns
    -------
    bool
        True if numba reports at least one worker thread.
    """
    return numba.config.NUMBA_NUM_THREADS >= 1


def get_available_backends() -> List[str]:
    """
    Get list of available execution backends.

    Returns
    -------
    list[str]
        Available backends in preference order, least optimised first.

    Examples
    --------
    >>> get_available_backends()
    ['python', 'cpu-parallel']
    """
    backends = ["python"]
    if check_numba_available():
        backends.append("cpu-parallel")
    return backends


def get_best_backend() -> str:
    """
    Get the most optimized available backend.

    Returns
    -------
    str
        'cpu-parallel' when numba can run, else 'python'.
    """
    return get_available_backends()[-1]


def resolve_backend(backend: str = "best") -> str:
    """
    Resolve a requested backend name to an available backend.

    An active ``use_backend(...)`` override takes precedence over *backend*.

    Parameters
    ----------
    backend : str
        'best', 'python' or 'cpu-parallel'.

    Returns
    -------
    str
        Resolved backend name.

    Raises
    ------
    ValueError
        If the requested backend is unknown or not available.

    Examples
    --------
    >>> resolve_backend('python')
    'python'
    >>> with use_backend('python'):
    ...     resolve_backend('best')
    'python'
    """
    override = get_backend_override()
    if override is not None:
        backend = override

    if backend == "best":
        return get_best_backend()

    available = get_available_backends()
    if backend not in available:
        raise ValueError(
            f"Backend '{backend}' not available. "
            f"Available backends: {', '.join(available)}"
        )
    return backend


# ============================================================================ #
# Module-Level State Query (Read-Only)
# ============================================================================ #


def get_backend_info() -> dict:
    """
    Get comprehensive backend information.

    Returns
    -------
    dict
        Dictionary with keys:
        - 'numba_version': str
        - 'numba_threads': int
        - 'backends': list[str]
        - 'best_backend': str
        - 'override': str or None
    """
    return {
        "numba_version": numba.__version__,
        "numba_threads": numba.config.NUMBA_NUM_THREADS,
        "backends": get_available_backends(),
        "best_backend": get_best_backend(),
        "override": get_backend_override(),
    }
