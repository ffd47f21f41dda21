"""
_patterns.py
============
Taxon-indexed site patterns: unique alignment columns as integer-coded
states with per-pattern weights.

State codes ``0 .. state_count-1`` are observed states.  Any code outside
that range (negative or ``>= state_count``) is ambiguous or missing data
and contributes an all-ones tip partial when ambiguities are in use.
"""

import logging
from typing import Dict, Sequence

import numpy as np

logger = logging.getLogger(__name__)


class SitePatterns:
    """
    Compressed alignment.

    Parameters
    ----------
    taxa : sequence of str
        One name per row of *patterns*.
    patterns : int array, shape (n_taxa, n_patterns)
        Integer-coded states.
    weights : float array, shape (n_patterns,)
        Multiplicity of each pattern.
    state_count : int
    name : str, default 'patterns'

    Examples
    --------
    >>> sp = SitePatterns.from_strings({'A': 'ACGA', 'B': 'ACGA'}, 'ACGT')
    >>> sp.pattern_count, list(sp.weights)
    (3, [2.0, 1.0, 1.0])
    """

    def __init__(self, taxa: Sequence[str], patterns, weights, state_count: int,
                 name: str = "patterns"):
        self.name = name
        self.taxa = list(taxa)
        self.patterns = np.asarray(patterns, dtype=np.int32)
        self.weights = np.asarray(weights, dtype=np.float64)
        self.state_count = int(state_count)
        if self.patterns.ndim != 2 or self.patterns.shape[0] != len(self.taxa):
            raise ValueError(
                f"'{name}': patterns must have shape (n_taxa={len(self.taxa)}, "
                f"n_patterns), got {self.patterns.shape}."
            )
        if self.weights.shape[0] != self.patterns.shape[1]:
            raise ValueError(
                f"'{name}': {self.patterns.shape[1]} patterns but "
                f"{self.weights.shape[0]} weights."
            )
        if len(set(self.taxa)) != len(self.taxa):
            raise ValueError(f"'{name}': duplicate taxon names.")
        self._taxon_index = {t: i for i, t in enumerate(self.taxa)}

    @classmethod
    def from_alignment(cls, taxa: Sequence[str], sequences, state_count: int,
                       name: str = "patterns"):
        """
        Compress an integer-coded alignment into unique weighted columns.

        Columns are ordered as ``numpy.unique`` orders them (lexicographic).
        """
        data = np.asarray(sequences, dtype=np.int32)
        if data.ndim != 2:
            raise ValueError("alignment must be two-dimensional (taxa x sites)")
        unique, counts = np.unique(data, axis=1, return_counts=True)
        logger.debug(
            "'%s': %d sites compressed to %d patterns", name, data.shape[1], unique.shape[1]
        )
        return cls(taxa, unique, counts.astype(np.float64), state_count, name=name)

    @classmethod
    def from_strings(cls, sequences: Dict[str, str], alphabet: str,
                     name: str = "patterns", compress: bool = True):
        """
        Encode character sequences; characters not in *alphabet* become the
        ambiguous code ``len(alphabet)``.
        """
        taxa = list(sequences.keys())
        lengths = {len(s) for s in sequences.values()}
        if len(lengths) != 1:
            raise ValueError(f"'{name}': sequences differ in length {sorted(lengths)}")
        code = {c: i for i, c in enumerate(alphabet)}
        gap = len(alphabet)
        data = np.array(
            [[code.get(c, gap) for c in sequences[t]] for t in taxa], dtype=np.int32
        )
        if compress:
            return cls.from_alignment(taxa, data, len(alphabet), name=name)
        return cls(taxa, data, np.ones(data.shape[1]), len(alphabet), name=name)

    @property
    def pattern_count(self) -> int:
        return int(self.patterns.shape[1])

    @property
    def taxon_count(self) -> int:
        return len(self.taxa)

    def taxon_index(self, name: str) -> int:
        """Row of *name*, or -1 if the taxon is absent."""
        return self._taxon_index.get(name, -1)

    def get_pattern_states(self, taxon: int) -> np.ndarray:
        return self.patterns[taxon]

    def subset(self, first: int, last: int, name: str = None) -> "SitePatterns":
        """Patterns ``first .. last-1`` as a new object."""
        return SitePatterns(
            self.taxa, self.patterns[:, first:last], self.weights[first:last],
            self.state_count, name=name or f"{self.name}[{first}:{last}]",
        )
