"""
_context.py
===========
Context managers for phylocache.

Provides clean, Pythonic context managers for temporarily changing state:
- Logging control (suppress/change levels)
- Warning control (suppress specific warnings)
- Backend selection (force specific backend)

All context managers properly restore state on exit, even if exceptions occur.
"""

import logging
import warnings
from contextlib import contextmanager
from typing import Optional, Type


# Module-level state for backend override
_backend_override = None

_VALID_BACKENDS = ("best", "python", "cpu-parallel")


# ============================================================================ #
# Logging Context Managers
# ============================================================================ #


@contextmanager
def suppress_logger(logger_name: str, level: int = logging.CRITICAL):
    """
    Temporarily change a logger's level.

    Parameters
    ----------
    logger_name : str
        Name of the logger to suppress (e.g., 'phylocache._likelihood').
    level : int, default logging.CRITICAL
        Temporary logging level.

    Examples
    --------
    >>> # Silence rescaling notices during a burn-in
    >>> with suppress_logger('phylocache._likelihood'):
    ...     for _ in range(1000):
    ...         step()

    Notes
    -----
    - Exception-safe: Logger level restored even if exception raised
    - Nesting-safe: Can nest multiple suppress_logger contexts
    """
    logger = logging.getLogger(logger_name)
    original_level = logger.level

    try:
        logger.setLevel(level)
        yield
    finally:
        logger.setLevel(original_level)


@contextmanager
def quiet(level: int = logging.CRITICAL):
    """
    Temporarily suppress all phylocache logging.

    Every module logger is a child of the ``phylocache`` package logger, so
    raising the package logger's level silences them all.

    Parameters
    ----------
    level : int, default logging.CRITICAL

    Examples
    --------
    >>> with quiet():
    ...     lik = TreeLikelihood(patterns, tree_model, site_model)

    >>> with quiet(logging.WARNING):
    ...     lik.get_log_likelihood()
    """
    with suppress_logger("phylocache", level):
        yield


# ============================================================================ #
# Warning Context Managers
# ============================================================================ #


@contextmanager
def suppress_warnings(category: Optional[Type[Warning]] = None):
    """
    Temporarily suppress warnings.

    Parameters
    ----------
    category : Type[Warning] or None, default None
        Warning category to suppress. If None, suppresses all warnings.

    Examples
    --------
    >>> from numba.core.errors import NumbaPerformanceWarning
    >>> with suppress_warnings(NumbaPerformanceWarning):
    ...     lik.get_log_likelihood()
    """
    with warnings.catch_warnings():
        if category is None:
            warnings.simplefilter("ignore")
        else:
            warnings.filterwarnings("ignore", category=category)
        yield


# ============================================================================ #
# Backend Context Managers
# ============================================================================ #


@contextmanager
def use_backend(backend: str):
    """
    Temporarily force a specific backend for likelihood cores created inside
    the block.

    A core picks its kernels once, at construction, so the override affects
    likelihoods constructed inside the ``with`` block.

    Parameters
    ----------
    backend : str
        'python', 'cpu-parallel' or 'best'.

    Raises
    ------
    ValueError
        If requested backend is not available.

    Examples
    --------
    >>> with use_backend('python'):
    ...     reference = TreeLikelihood(patterns, tree_model, site_model)

    Notes
    -----
    **Not thread-safe**: uses module-level state.  Pass ``backend=`` to the
    likelihood constructor instead when that matters.
    """
    global _backend_override

    from ._backend import get_available_backends

    available = get_available_backends()
    if backend not in _VALID_BACKENDS or (backend != "best" and backend not in available):
        raise ValueError(
            f"Backend '{backend}' not available. "
            f"Available backends: {', '.join(available)}"
        )

    original_override = _backend_override
    try:
        _backend_override = backend
        yield
    finally:
        _backend_override = original_override


def get_backend_override() -> Optional[str]:
    """
    Get the current backend override, if any.

    Returns
    -------
    str or None

    Examples
    --------
    >>> get_backend_override() is None
    True
    >>> with use_backend('python'):
    ...     print(get_backend_override())
    python
    """
    return _backend_override


# ============================================================================ #
# Combined Context Managers
# ============================================================================ #


@contextmanager
def silent_benchmark(backend: str = "best"):
    """
    Suppress logging and warnings while forcing a specific backend.

    Examples
    --------
    >>> for backend in ['python', 'cpu-parallel']:
    ...     with silent_benchmark(backend):
    ...         lik = TreeLikelihood(patterns, tree_model, site_model)
    ...         start = time.time()
    ...         lik.get_log_likelihood()
    ...         print(f"{backend}: {time.time() - start:.3f}s")
    """
    with quiet():
        with use_backend(backend):
            with suppress_warnings():
                yield
