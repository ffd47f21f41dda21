"""
tests/test_patterns.py
======================
Tests for SitePatterns compression, subsetting and tip partials.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from phylocache._likelihood import tip_partials_from_states
from phylocache._patterns import SitePatterns


class TestCompression:
    def test_duplicate_columns_merged(self):
        sp = SitePatterns.from_strings({"A": "ACGA", "B": "ACGA"}, "ACGT")
        assert sp.pattern_count == 3
        assert list(sp.weights) == [2.0, 1.0, 1.0]
        assert sp.weights.sum() == 4

    def test_uncompressed(self):
        sp = SitePatterns.from_strings({"A": "ACGA", "B": "ACGA"}, "ACGT", compress=False)
        assert sp.pattern_count == 4
        assert list(sp.weights) == [1.0] * 4
        assert list(sp.get_pattern_states(0)) == [0, 1, 2, 0]

    def test_unknown_characters_ambiguous(self):
        sp = SitePatterns.from_strings({"A": "A-", "B": "N?"}, "ACGT", compress=False)
        assert list(sp.get_pattern_states(0)) == [0, 4]
        assert list(sp.get_pattern_states(1)) == [4, 4]

    def test_from_alignment(self):
        sp = SitePatterns.from_alignment(["x", "y"], [[0, 1, 0], [1, 1, 1]], 2)
        assert sp.pattern_count == 2
        assert sorted(sp.weights) == [1.0, 2.0]
        assert sp.state_count == 2

    def test_weights_preserve_site_count(self):
        rng = np.random.default_rng(3)
        seqs = {f"t{i}": "".join(rng.choice(list("AC"), 50)) for i in range(3)}
        sp = SitePatterns.from_strings(seqs, "AC")
        assert sp.weights.sum() == 50
        assert sp.pattern_count <= 8


class TestValidation:
    def test_ragged_sequences(self):
        with pytest.raises(ValueError, match="differ in length"):
            SitePatterns.from_strings({"A": "AC", "B": "A"}, "ACGT")

    def test_duplicate_taxa(self):
        with pytest.raises(ValueError, match="duplicate"):
            SitePatterns(["A", "A"], [[0], [1]], [1.0], 4)

    def test_weight_count(self):
        with pytest.raises(ValueError, match="weights"):
            SitePatterns(["A", "B"], [[0, 1], [1, 0]], [1.0], 4)

    def test_shape(self):
        with pytest.raises(ValueError, match="shape"):
            SitePatterns(["A", "B", "C"], [[0, 1], [1, 0]], [1.0, 1.0], 4)


class TestQueries:
    @pytest.fixture
    def sp(self):
        return SitePatterns.from_strings(
            {"A": "ACGT", "B": "ACGA", "C": "TCGA"}, "ACGT", name="dna", compress=False
        )

    def test_taxon_index(self, sp):
        assert sp.taxon_index("B") == 1
        assert sp.taxon_index("Z") == -1
        assert sp.taxon_count == 3

    def test_subset(self, sp):
        sub = sp.subset(1, 3)
        assert sub.pattern_count == 2
        assert sub.name == "dna[1:3]"
        assert list(sub.get_pattern_states(2)) == [1, 2]
        assert list(sub.weights) == [1.0, 1.0]
        assert sub.taxa == sp.taxa

    def test_subset_name(self, sp):
        assert sp.subset(0, 2, name="codon1").name == "codon1"


class TestTipPartials:
    def test_one_hot(self):
        p = tip_partials_from_states([0, 3, 1], 4)
        assert np.array_equal(p, [[1, 0, 0, 0], [0, 0, 0, 1], [0, 1, 0, 0]])

    def test_ambiguous_is_all_ones(self):
        p = tip_partials_from_states([4, -1], 4)
        assert np.array_equal(p, np.ones((2, 4)))
