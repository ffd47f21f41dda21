"""
_rearrange.py
=============
In-place rearrangements of a ``TreeModel``.  Every edit runs inside
``TreeModel.editing()``, so the tree is validated once at the end and
listeners see a single coalesced batch of events.

Mau-Newton-Larget slide
-----------------------
  mnl_canonical, mnl_reconstruct

A binary tree is flattened into an in-order sequence (tips at even
positions, internal nodes at odd positions) with a random left/right choice
at every internal node.  After a height in the sequence changes, the tree
is rebuilt from the sequence: the highest internal node in each range
becomes the root of that range.  Together these implement the node-slide
move of Mau, Newton and Larget (Biometrics 55, 1999)::

    with tree_model.editing():
        order = mnl_canonical(tree_model, rng)
        tree_model.set_node_height(node, new_height)
        mnl_reconstruct(tree_model, order)

Child ordering
--------------
  rotate_by_name, rotate_by_comparator,
  node_density_comparator, node_density_min_height_comparator

Rotations only reorder the two children of binary nodes (via
``swap_children``); the topology and heights are untouched.

Heights
-------
  correct_to_ultrametric
"""

import math
from typing import Callable, List, Sequence

import numpy as np

from phylocache._errors import StructuralError
from phylocache._traversal import leaf_count, min_node_height, postorder, unique_newick

Comparator = Callable[[int, int], int]


# ============================================================================ #
# Mau-Newton-Larget slide
# ============================================================================ #


def mnl_canonical(tree, rng: np.random.Generator = None) -> List[int]:
    """
    Flatten a binary tree into a randomised in-order node sequence.

    Parameters
    ----------
    tree : Tree or TreeModel
        Must be binary.
    rng : numpy.random.Generator, optional
        Source of the left/right coin flips.  Defaults to a fresh
        ``numpy.random.default_rng()``.

    Returns
    -------
    list of int
        ``node_count`` node ids.  External nodes sit at even positions and
        internal nodes at odd positions; each internal node lies between
        the nodes of its two subtrees.

    Raises
    ------
    StructuralError   if an internal node does not have exactly two children.
    """
    if rng is None:
        rng = np.random.default_rng()
    order = []
    stack = [(tree.get_root(), False)]
    while stack:
        node, expanded = stack.pop()
        if expanded or tree.is_external(node):
            order.append(node)
            continue
        if tree.child_count(node) != 2:
            raise StructuralError(
                f"Node {node} has {tree.child_count(node)} children; the "
                f"canonical slide order needs a binary tree."
            )
        first, second = tree.get_child(node, 0), tree.get_child(node, 1)
        if rng.random() < 0.5:
            first, second = second, first
        stack.append((second, False))
        stack.append((node, True))
        stack.append((first, False))
    return order


def _highest(tree, order: Sequence[int], lo: int, hi: int) -> int:
    """Index i in [lo, hi) whose internal node ``order[2*i+1]`` is highest."""
    best = -1
    max_height = -math.inf
    for i in range(lo, hi):
        h = tree.get_node_height(order[2 * i + 1])
        if h > max_height:
            max_height = h
            best = i
    return best


def _range_root(tree, order: Sequence[int], lo: int, hi: int) -> int:
    if lo == hi:
        return order[2 * lo]
    return order[2 * _highest(tree, order, lo, hi) + 1]


def mnl_reconstruct(tree_model, order: Sequence[int]) -> None:
    """
    Rebuild *tree_model*'s topology from a sequence made by
    :func:`mnl_canonical`, using the current node heights.

    Each tip range ``[lo, hi]`` of the sequence becomes the subtree rooted at
    the highest internal node between its tips; the full range gives the new
    root.  The edit fires ``ALL`` (the root may move).

    Raises
    ------
    StructuralError
        If *order* is not a permutation of the node ids with tips at even
        positions.
    NegativeBranchLengthError
        If a tip ends up above its new parent (possible only for trees
        with tips at different heights); the enclosing edit is rolled back.
    """
    order = [int(n) for n in order]
    n = len(order)
    if n != tree_model.node_count or sorted(order) != list(range(n)):
        raise StructuralError(
            f"Slide order has {n} entries; expected a permutation of the "
            f"{tree_model.node_count} node ids of '{tree_model.name}'."
        )
    for pos, node in enumerate(order):
        if tree_model.is_external(node) != (pos % 2 == 0):
            raise StructuralError(
                f"Node {node} at position {pos} of the slide order: tips "
                f"must sit at even positions and internal nodes at odd ones."
            )

    last = (n - 1) // 2
    root = _range_root(tree_model, order, 0, last)
    links = []
    stack = [(0, last, root)]
    while stack:
        lo, hi, node = stack.pop()
        if lo == hi:
            continue
        split = order.index(node) // 2
        left = _range_root(tree_model, order, lo, split)
        right = _range_root(tree_model, order, split + 1, hi)
        links.append((node, left, right))
        stack.append((split + 1, hi, right))
        stack.append((lo, split, left))

    with tree_model.editing():
        for node in order[1::2]:
            for child in list(tree_model.get_children(node)):
                tree_model.remove_child(node, child)
        tree_model.set_root(root)
        for node, left, right in links:
            tree_model.add_child(node, left)
            tree_model.add_child(node, right)


# ============================================================================ #
# Child ordering
# ============================================================================ #


def rotate_by_comparator(tree_model, comparator: Comparator) -> int:
    """
    Order the children of every binary node so that
    ``comparator(child0, child1) <= 0``.

    Returns
    -------
    int
        Number of nodes whose children were swapped.  Nothing is fired when
        no swap was needed.
    """
    swaps = [
        node for node in postorder(tree_model)
        if tree_model.child_count(node) == 2
        and comparator(tree_model.get_child(node, 0), tree_model.get_child(node, 1)) > 0
    ]
    if swaps:
        with tree_model.editing():
            for node in swaps:
                tree_model.swap_children(node)
    return len(swaps)


def rotate_by_name(tree_model) -> int:
    """
    Order children so the lexically smaller :func:`unique_newick` subtree
    comes first.  Two trees with the same topology end up with identical
    child order.
    """
    def compare(a: int, b: int) -> int:
        name_a = unique_newick(tree_model, a)
        name_b = unique_newick(tree_model, b)
        return (name_a > name_b) - (name_a < name_b)

    return rotate_by_comparator(tree_model, compare)


def node_density_comparator(tree) -> Comparator:
    """Comparator putting the child with more tips first."""
    def compare(a: int, b: int) -> int:
        return leaf_count(tree, b) - leaf_count(tree, a)

    return compare


def node_density_min_height_comparator(tree) -> Comparator:
    """
    Comparator putting the child with fewer tips first; ties go to the
    child whose youngest tip is older.
    """
    def compare(a: int, b: int) -> int:
        larger = leaf_count(tree, a) - leaf_count(tree, b)
        if larger != 0:
            return larger
        tip_recent = min_node_height(tree, b) - min_node_height(tree, a)
        if tip_recent > 0.0:
            return 1
        if tip_recent < 0.0:
            return -1
        return 0

    return compare


# ============================================================================ #
# Heights
# ============================================================================ #


def correct_to_ultrametric(tree_model, root_to_tip: float = None) -> None:
    """
    Move every tip to a common height by stretching or shrinking its branch.

    Parameters
    ----------
    root_to_tip : float, optional
        Target distance from the root to every tip.  By default the tips are
        lowered to the youngest tip, so no branch gets shorter.

    Raises
    ------
    ValueError
        If *root_to_tip* is negative.
    NegativeBranchLengthError
        If the target height lies above the parent of some tip; the tree is
        left unchanged.
    """
    tips = [n for n in postorder(tree_model) if tree_model.is_external(n)]
    if root_to_tip is None:
        target = min(tree_model.get_node_height(n) for n in tips)
    else:
        if root_to_tip < 0.0:
            raise ValueError(f"root_to_tip must be >= 0, got {root_to_tip}")
        target = tree_model.get_node_height(tree_model.get_root()) - root_to_tip
    with tree_model.editing():
        for tip in tips:
            if tree_model.get_node_height(tip) != target:
                tree_model.set_node_height(tip, target)
