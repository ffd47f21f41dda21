"""
tests/test_newick.py
====================
Tests for NEWICK output with branch-length modes and trait annotations.

Tree fixture
------------
  (C:2,(A:1,B:1):1);

  Node IDs: C=0  A=1  B=2  AB=3  root=4
  heights:  tips 0, AB=1, root=2
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from phylocache._branchrates import StrictClock
from phylocache._newick import (
    BranchLengthType,
    TraitIntent,
    TreeTrait,
    newick,
    newick_no_lengths,
)
from phylocache._tree import Tree
from phylocache._treemodel import TreeModel


class HeightProvider:
    """Node heights as a NODE trait."""

    def tree_traits(self):
        return [TreeTrait("height", TraitIntent.NODE, lambda t, n: t.get_node_height(n))]


class HiddenProvider:
    def tree_traits(self):
        return [TreeTrait("secret", TraitIntent.NODE, lambda t, n: 1.0, loggable=False)]


@pytest.fixture(scope="module")
def tree():
    return Tree("(C:2,(A:1,B:1):1);")


class TestLengths:
    def test_time_lengths(self, tree):
        assert newick(tree) == "(C:2.0,(A:1.0,B:1.0):1.0);"

    def test_no_lengths(self, tree):
        assert newick(tree, lengths=BranchLengthType.NO_BRANCH_LENGTHS) == "(C,(A,B));"
        assert newick_no_lengths(tree) == "(C,(A,B));"

    def test_substitution_lengths(self, tree):
        clock = StrictClock(2.0)
        s = newick(tree, lengths=BranchLengthType.LENGTHS_AS_SUBSTITUTIONS, branch_rates=clock)
        assert s == "(C:4.0,(A:2.0,B:2.0):2.0);"

    def test_substitution_lengths_need_rates(self, tree):
        with pytest.raises(ValueError, match="No branch rates"):
            newick(tree, lengths=BranchLengthType.LENGTHS_AS_SUBSTITUTIONS)

    def test_decimal_places(self):
        t = Tree("(C:0.5,(A:0.123456,B:0.123456):0.376544);")
        assert newick(t, decimal_places=3) == "(C:0.5,(A:0.123,B:0.123):0.377);"


class TestLabels:
    def test_numeric_labels(self, tree):
        s = newick(tree, labels=False, lengths=BranchLengthType.NO_BRANCH_LENGTHS)
        assert s == "(1,(2,3));"

    def test_id_map(self, tree):
        s = newick(
            tree,
            labels=False,
            id_map={"A": 10, "B": 20, "C": 30},
            lengths=BranchLengthType.NO_BRANCH_LENGTHS,
        )
        assert s == "(30,(10,20));"


class TestTraits:
    def test_node_trait(self, tree):
        s = newick(tree, trait_providers=[HeightProvider()])
        assert s == (
            "(C[&height=0.0]:2.0,(A[&height=0.0]:1.0,B[&height=0.0]:1.0)"
            "[&height=1.0]:1.0)[&height=2.0];"
        )

    def test_branch_trait(self, tree):
        s = newick(tree, trait_providers=[StrictClock(0.5)])
        assert s == (
            "(C:[&rate=0.5]2.0,(A:[&rate=0.5]1.0,B:[&rate=0.5]1.0):[&rate=0.5]1.0);"
        )

    def test_non_loggable_trait_skipped(self, tree):
        assert newick(tree, trait_providers=[HiddenProvider()]) == newick(tree)

    def test_annotations_parse_back(self, tree):
        s = newick(tree, trait_providers=[HeightProvider(), StrictClock(0.5)])
        back = Tree(s)
        assert back.get_node_attribute(3, "height") == 1.0
        assert back.get_node_attribute(1, "rate") == 0.5
        assert back.get_branch_length(3) == pytest.approx(1.0)

    def test_trait_string_list(self, tree):
        trait = TreeTrait("set", TraitIntent.NODE, lambda t, n: [1, 2.5])
        assert trait.trait_string(tree, 0) == "{1,2.5}"


class TestTreeModelOutput:
    def test_after_edit(self):
        tm = TreeModel.from_newick("(C:2,(A:1,B:1):1);")
        tm.set_node_height(3, 1.5)
        assert newick(tm) == "(C:2.0,(A:1.5,B:1.5):0.5);"
