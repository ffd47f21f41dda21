"""
_traversal.py
=============
Pure query and traversal algorithms over any rooted tree exposing the
``Tree`` query surface (``child_count``, ``get_child``, ``get_parent``,
``is_external``, ``get_node_height``, ``get_branch_length``,
``get_node_taxon``, ``get_root``, ``node_count``).  ``Tree`` and
``TreeModel`` both qualify.

None of these functions mutate the tree.  All traversals are iterative
(explicit stacks), so deep caterpillar trees cannot exhaust the interpreter
recursion limit.

Aggregates
----------
  leaf_count, tree_length, min_node_height, is_ultrametric, is_binary

Leaf sets
---------
  leaf_set, descendant_leaves, external_nodes_below, all_disjoint,
  leaves_for_taxa, tips_for_taxa

Ancestry and clades
-------------------
  common_ancestor, common_ancestor_of, mrca, is_monophyletic,
  largest_clade, clades, is_compatible

Parsimony
---------
  parsimony_steps, parsimony_state

Ordering
--------
  postorder, preorder_successor, postorder_successor, postorder_list,
  find_node_with_attribute

Canonical forms
---------------
  unique_newick, trees_equal

Preconditions
-------------
A node argument must be reachable from the tree's root.  Violations raise
``TraversalPreconditionError`` immediately.
"""

from typing import Iterable, List, Optional, Set

from phylocache._errors import MissingTaxonError, TraversalPreconditionError


# ============================================================================ #
# Helpers
# ============================================================================ #


def _check_node(tree, node: int) -> int:
    """
    Verify that *node* is a valid id reachable from ``tree.get_root()``.

    The parent chain is followed upward; more steps than there are nodes
    means a cycle.
    """
    n_nodes = tree.node_count
    if not isinstance(node, int):
        try:
            node = int(node)
        except (TypeError, ValueError):
            raise TraversalPreconditionError(f"{node!r} is not a node id.")
    if node < 0 or node >= n_nodes:
        raise TraversalPreconditionError(
            f"Node {node} is out of range for a tree of {n_nodes} nodes."
        )
    root = tree.get_root()
    cur = node
    for _ in range(n_nodes):
        if cur == root:
            return node
        cur = tree.get_parent(cur)
        if cur == -1:
            break
    raise TraversalPreconditionError(
        f"Node {node} is not reachable from the root {root}."
    )


def postorder(tree, node: int = None) -> List[int]:
    """
    Return the nodes of the subtree rooted at *node* in post-order.

    Children come before their parent, and siblings keep their child-list
    order (left to right).  *node* defaults to the root.
    """
    if node is None:
        node = tree.get_root()
    order = []
    stack = [node]
    while stack:
        n = stack.pop()
        order.append(n)
        for i in range(tree.child_count(n)):
            stack.append(tree.get_child(n, i))
    order.reverse()
    return order


def _preorder(tree, node: int) -> List[int]:
    order = []
    stack = [node]
    while stack:
        n = stack.pop()
        order.append(n)
        for i in range(tree.child_count(n) - 1, -1, -1):
            stack.append(tree.get_child(n, i))
    return order


def _external(tree) -> List[int]:
    return [n for n in postorder(tree) if tree.is_external(n)]


# ============================================================================ #
# Aggregates
# ============================================================================ #


def leaf_count(tree, node: int = None) -> int:
    """Number of external nodes below (and including) *node*."""
    if node is None:
        node = tree.get_root()
    _check_node(tree, node)
    return sum(1 for n in postorder(tree, node) if tree.is_external(n))


def tree_length(tree, node: int = None) -> float:
    """
    Sum of branch lengths in the subtree at *node*.

    The branch above *node* is included unless *node* is the root.
    """
    if node is None:
        node = tree.get_root()
    _check_node(tree, node)
    root = tree.get_root()
    return sum(
        tree.get_branch_length(n) for n in postorder(tree, node) if n != root
    )


def min_node_height(tree, node: int = None) -> float:
    """Smallest tip height in the subtree at *node*."""
    if node is None:
        node = tree.get_root()
    _check_node(tree, node)
    return min(
        tree.get_node_height(n) for n in postorder(tree, node) if tree.is_external(n)
    )


def is_ultrametric(tree) -> bool:
    """True only if every tip has height 0.0."""
    return all(tree.get_node_height(n) == 0.0 for n in _external(tree))


def is_binary(tree) -> bool:
    """True only if no internal node has more than two children."""
    return all(tree.child_count(n) <= 2 for n in postorder(tree))


# ============================================================================ #
# Leaf sets
# ============================================================================ #


def leaf_set(tree) -> Set[str]:
    """Taxon names of every tip of the tree."""
    return {tree.get_node_taxon(n) for n in _external(tree)}


def descendant_leaves(tree, node: int) -> Set[str]:
    """Taxon names of the tips descending from *node*."""
    _check_node(tree, node)
    return {tree.get_node_taxon(n) for n in postorder(tree, node) if tree.is_external(n)}


def external_nodes_below(tree, node: int) -> Set[int]:
    """Node ids of the tips descending from *node*."""
    _check_node(tree, node)
    return {n for n in postorder(tree, node) if tree.is_external(n)}


def all_disjoint(tree, nodes: Iterable[int]) -> bool:
    """True if no two of the subtrees at *nodes* share a tip taxon."""
    seen = set()
    for node in nodes:
        leaves = descendant_leaves(tree, node)
        if seen & leaves:
            return False
        seen |= leaves
    return True


def leaves_for_taxa(tree, taxa: Iterable[str]) -> Set[str]:
    """
    Return *taxa* as a set after checking every taxon is a tip of *tree*.

    Raises
    ------
    MissingTaxonError   for the first taxon not found.
    """
    present = leaf_set(tree)
    result = set()
    for taxon in taxa:
        if taxon not in present:
            raise MissingTaxonError(taxon, tree_id=getattr(tree, "id", None))
        result.add(taxon)
    return result


def tips_for_taxa(tree, taxa: Iterable[str]) -> Set[int]:
    """
    Return the node ids of the tips carrying *taxa*.

    Raises
    ------
    MissingTaxonError   for the first taxon not found.
    """
    by_name = {tree.get_node_taxon(n): n for n in _external(tree)}
    tips = set()
    for taxon in taxa:
        if taxon not in by_name:
            raise MissingTaxonError(taxon, tree_id=getattr(tree, "id", None))
        tips.add(by_name[taxon])
    return tips


# ============================================================================ #
# Ancestry and clades
# ============================================================================ #


def common_ancestor(tree, node_a: int, node_b: int) -> int:
    """
    Most recent common ancestor of two nodes by height walk.

    Whichever pointer sits lower moves to its parent until they coincide.
    Correct only when heights never decrease toward the root, which every
    validated ``Tree`` and ``TreeModel`` guarantees.  On a tie the second
    pointer moves first, so across a zero-length branch the result can be
    one node too high: ``common_ancestor(t, child, parent)`` returns the
    grandparent when ``child`` and ``parent`` share a height (and raises
    when ``parent`` is the root).

    Raises
    ------
    TraversalPreconditionError
        If either node is unreachable, or the walk runs off the root.
    """
    _check_node(tree, node_a)
    _check_node(tree, node_b)
    n1, n2 = node_a, node_b
    while n1 != n2:
        if tree.get_node_height(n1) < tree.get_node_height(n2):
            n1 = tree.get_parent(n1)
        else:
            n2 = tree.get_parent(n2)
        if n1 == -1 or n2 == -1:
            raise TraversalPreconditionError(
                f"Height walk from nodes {node_a} and {node_b} passed the "
                f"root: heights are not monotone toward the root."
            )
    return n1


def common_ancestor_of(tree, nodes: Iterable[int]) -> int:
    """Fold :func:`common_ancestor` over a non-empty sequence of node ids."""
    nodes = list(nodes)
    if not nodes:
        raise ValueError("No nodes given")
    cur = nodes[0]
    for other in nodes[1:]:
        cur = common_ancestor(tree, cur, other)
    return cur


def mrca(tree, leaf_names: Iterable[str]) -> Optional[int]:
    """
    Most recent common ancestor of a set of taxa by counting.

    One post-order pass counts, per node, how many of *leaf_names* lie
    beneath it; the first node whose count reaches the set size is the
    MRCA.  Returns None if some taxa are absent from the tree.

    Raises
    ------
    ValueError   if *leaf_names* is empty.
    """
    leaf_names = set(leaf_names)
    cardinality = len(leaf_names)
    if cardinality == 0:
        raise ValueError("No leaf nodes selected")

    matches = {}
    for n in postorder(tree):
        if tree.is_external(n):
            matches[n] = 1 if tree.get_node_taxon(n) in leaf_names else 0
        else:
            matches[n] = sum(
                matches[tree.get_child(n, i)] for i in range(tree.child_count(n))
            )
        if matches[n] == cardinality:
            return n
    return None


def is_monophyletic(tree, leaf_names: Iterable[str], ignore: Iterable[str] = ()) -> bool:
    """
    Test whether *leaf_names* form a clade, optionally ignoring some tips.

    A single post-order pass keeps two counters per node: tips of
    *leaf_names* beneath it, and all tips beneath it not in *ignore*.  The
    set is monophyletic iff some internal node has
    ``match == total == len(leaf_names)``; the pass stops at the first such
    node.

    Parameters
    ----------
    tree : Tree or TreeModel
    leaf_names : iterable of str
        Taxon names to test.
    ignore : iterable of str
        Taxon names left out of the total count.

    Returns
    -------
    bool
        Always True for a singleton set or the full tip set.

    Raises
    ------
    ValueError   if *leaf_names* is empty.

    Examples
    --------
    >>> t = Tree('(((A:1,B:1):1,C:2):1,D:3);')
    >>> is_monophyletic(t, {'A', 'B'})
    True
    >>> is_monophyletic(t, {'A', 'D'})
    False
    """
    leaf_names = set(leaf_names)
    ignore = set(ignore)
    cardinality = len(leaf_names)

    if cardinality == 1:
        return True
    if cardinality == tree.external_node_count:
        return True
    if cardinality == 0:
        raise ValueError("No leaf nodes selected")

    match_count = {}
    total_count = {}
    for n in postorder(tree):
        if tree.is_external(n):
            taxon = tree.get_node_taxon(n)
            match_count[n] = 1 if taxon in leaf_names else 0
            total_count[n] = 0 if taxon in ignore else 1
            continue
        mc = 0
        lc = 0
        for i in range(tree.child_count(n)):
            child = tree.get_child(n, i)
            mc += match_count[child]
            lc += total_count[child]
        match_count[n] = mc
        total_count[n] = lc
        if mc == lc and lc == cardinality:
            return True
    return False


def largest_clade(tree, time_range: float) -> int:
    """
    Size of the largest clade whose tips span less than *time_range* in
    height.
    """
    lo = {}
    hi = {}
    size = {}
    for n in postorder(tree):
        if tree.is_external(n):
            h = tree.get_node_height(n)
            lo[n] = h
            hi[n] = h
            size[n] = 1
            continue
        kids = [tree.get_child(n, i) for i in range(tree.child_count(n))]
        lo[n] = min(lo[k] for k in kids)
        hi[n] = max(hi[k] for k in kids)
        if hi[n] - lo[n] < time_range:
            size[n] = sum(size[k] for k in kids)
        else:
            size[n] = max(size[k] for k in kids)
    return size[tree.get_root()]


def clades(tree) -> Set[frozenset]:
    """
    Every clade of the tree as a frozenset of taxon names.

    The root clade (all tips) is not included.
    """
    root = tree.get_root()
    below = {}
    result = set()
    for n in postorder(tree):
        if tree.is_external(n):
            below[n] = frozenset([tree.get_node_taxon(n)])
            continue
        ls = frozenset().union(
            *(below[tree.get_child(n, i)] for i in range(tree.child_count(n)))
        )
        below[n] = ls
        if n != root:
            result.add(ls)
    return result


def is_compatible(tree, clade_set: Iterable[Iterable[str]]) -> bool:
    """
    True if no clade of *tree* partially overlaps any clade in *clade_set*.

    Two clades conflict when their intersection is non-empty and smaller
    than both of them.
    """
    clade_set = [set(c) for c in clade_set]
    for ls in clades(tree):
        for clade in clade_set:
            k = len(clade & ls)
            if k != 0 and k != len(ls) and k != len(clade):
                return False
    return True


# ============================================================================ #
# Parsimony (binary character)
# ============================================================================ #


def _fitch(tree, node: int, leaf_states: Set[str]):
    """Bitmask states per node (1 = in *leaf_states*, 2 = not) and step count."""
    state = {}
    steps = 0
    for n in postorder(tree, node):
        if tree.is_external(n):
            state[n] = 1 if tree.get_node_taxon(n) in leaf_states else 2
            continue
        union = state[tree.get_child(n, 0)]
        inter = union
        for i in range(1, tree.child_count(n)):
            s = state[tree.get_child(n, i)]
            union |= s
            inter &= s
        if inter == 0:
            steps += 1
        state[n] = union
    return state, steps


def parsimony_steps(tree, leaf_states: Iterable[str]) -> int:
    """
    Minimum number of changes of a binary character on *tree*.

    *leaf_states* holds the taxon names in one state; every other tip is in
    the other.
    """
    _, steps = _fitch(tree, tree.get_root(), set(leaf_states))
    return steps


def parsimony_state(tree, node: int, leaf_states: Iterable[str]) -> float:
    """
    Parsimony reconstruction of a binary character at *node*.

    Returns 0.0 when the state set at *node* holds only the *leaf_states*
    state, 1.0 when it holds only the other state, and 0.5 for both.
    """
    _check_node(tree, node)
    state, _ = _fitch(tree, node, set(leaf_states))
    s = state[node]
    if s == 1:
        return 0.0
    if s == 2:
        return 1.0
    return 0.5


# ============================================================================ #
# Ordering
# ============================================================================ #


def preorder_successor(tree, node: int) -> int:
    """
    Next node after *node* in pre-order; wraps to the root after the last
    tip.
    """
    _check_node(tree, node)
    if not tree.is_external(node):
        return tree.get_child(node, 0)

    cn = node
    while True:
        if tree.is_root(cn):
            return cn
        ln = cn
        cn = tree.get_parent(cn)
        n_kids = tree.child_count(cn)
        if tree.get_child(cn, n_kids - 1) != ln:
            for i in range(n_kids - 1):
                if tree.get_child(cn, i) == ln:
                    return tree.get_child(cn, i + 1)


def postorder_successor(tree, node: int) -> int:
    """
    Next node after *node* in post-order; the root's successor is the
    first tip.
    """
    _check_node(tree, node)
    if tree.is_root(node):
        cn = node
    else:
        parent = tree.get_parent(node)
        n_kids = tree.child_count(parent)
        if tree.get_child(parent, n_kids - 1) == node:
            return parent
        cn = None
        for i in range(n_kids - 1):
            if tree.get_child(parent, i) == node:
                cn = tree.get_child(parent, i + 1)
                break
    while tree.child_count(cn) > 0:
        cn = tree.get_child(cn, 0)
    return cn


def postorder_list(tree) -> List[int]:
    """Every node id, children before parents, root last."""
    return postorder(tree)


def find_node_with_attribute(tree, key: str) -> Optional[int]:
    """First node in pre-order that carries attribute *key*, or None."""
    for n in _preorder(tree, tree.get_root()):
        if tree.get_node_attribute(n, key) is not None:
            return n
    return None


# ============================================================================ #
# Canonical forms
# ============================================================================ #


def unique_newick(tree, node: int = None) -> str:
    """
    Topology-only NEWICK with children sorted lexically at every node.

    Two trees with the same rooted topology and taxa give the same string
    regardless of child order.
    """
    if node is None:
        node = tree.get_root()
    _check_node(tree, node)
    text = {}
    for n in postorder(tree, node):
        if tree.is_external(n):
            text[n] = tree.get_node_taxon(n)
        else:
            subtrees = sorted(text.pop(tree.get_child(n, i)) for i in range(tree.child_count(n)))
            text[n] = "(" + ",".join(subtrees) + ")"
    return text[node]


def trees_equal(tree1, tree2) -> bool:
    """True if both trees have the same rooted topology over the same taxa."""
    return unique_newick(tree1) == unique_newick(tree2)
