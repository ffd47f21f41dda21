"""
_utils.py
=========
General-purpose utility functions for phylocache.

These are standalone functions that don't depend on the main classes
and could be useful in multiple contexts.
"""


def format_newick(newick: str) -> str:
    """
    Format a NEWICK string for consistent representation.

    Ensures the NEWICK string:
    - Ends with a semicolon
    - Has no leading/trailing whitespace

    Parameters
    ----------
    newick : str
        NEWICK string to format.

    Returns
    -------
    str
        Formatted NEWICK string.

    Examples
    --------
    >>> format_newick('((A:1,B:1):1,(C:1,D:1):1)')
    '((A:1,B:1):1,(C:1,D:1):1);'

    >>> format_newick('  ((A:1,B:1):1);  ')
    '((A:1,B:1):1);'
    """
    newick = newick.strip()
    if not newick.endswith(';'):
        newick += ';'
    return newick


def format_number(value: float, decimal_places: int = None) -> str:
    """
    Render a branch length or trait value for NEWICK output.

    Parameters
    ----------
    value : float
    decimal_places : int or None
        Round to this many places; None prints ``repr``-precision.

    Examples
    --------
    >>> format_number(0.1 + 0.2, 3)
    '0.3'
    >>> format_number(2.0)
    '2.0'
    """
    if decimal_places is None:
        return repr(float(value))
    rounded = round(float(value), decimal_places)
    if rounded == 0.0:
        rounded = 0.0  # drop the sign of -0.0
    text = f"{rounded:.{decimal_places}f}"
    if "." in text:
        text = text.rstrip("0")
        if text.endswith("."):
            text += "0"
    return text


def format_trait_value(value, decimal_places: int = None) -> str:
    """
    Render one annotation value in BEAST comment syntax.

    Sequences become ``{a,b,c}``; floats go through :func:`format_number`.
    """
    if isinstance(value, (list, tuple)):
        return "{" + ",".join(format_trait_value(v, decimal_places) for v in value) + "}"
    if isinstance(value, float):
        return format_number(value, decimal_places)
    return str(value)
