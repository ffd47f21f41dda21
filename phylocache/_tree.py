"""
_tree.py
========
A single rooted phylogenetic tree represented as parallel numpy arrays plus
per-node child lists, addressed by stable integer node ids.

Public API
----------
  Tree(newick_string)
      Constructor.  Parses the NEWICK string and builds all data structures.

  Tree.from_arrays(parent, heights, names)
      Build a tree from explicit parent/height arrays.

  .child_count(node), .get_child(node, i), .get_parent(node)
  .is_external(node), .is_root(node)
  .get_node_height(node), .get_branch_length(node)
  .get_node_taxon(node), .get_node_attribute(node, key)
  .external_nodes(), .internal_nodes()
  .taxon_index(name)

Arena notes
-----------
Nodes are never Python objects.  Every relationship is an integer stored in
an array or a list of child ids, so a mutable subclass (``TreeModel``) can
snapshot and roll back structural edits by copying arrays, with no aliasing
between snapshots and live state.

Node-ID conventions for parsed trees (set once; never change):
  Leaves   : 0 … n_leaves-1       (left-to-right in the NEWICK string)
  Internal : n_leaves … n_nodes-2 (post-order)
  Root     : n_nodes-1
"""

import logging

import numpy as np

from phylocache._errors import NegativeBranchLengthError, StructuralError
from phylocache._utils import format_newick

logger = logging.getLogger(__name__)


class Tree:
    """
    A rooted phylogenetic tree with heights, taxa and per-node attributes.

    Internal nodes may have any number of children (``is_binary`` in
    ``phylocache._traversal`` tests for the strictly bifurcating case).

    Attributes (read-only after construction)
    -----------------------------------------
    n_nodes    : int              Total number of nodes.
    n_leaves   : int              Number of external (taxon) nodes.
    root       : int              Node ID of the root.
    names      : list[str]        Taxon name for each node; '' for internal.
    parent     : int32  [n_nodes] Parent ID; -1 for the root.
    heights    : float64[n_nodes] Node height (time before the youngest tip).
    children   : list[list[int]]  Ordered child IDs of each node.
    attributes : list[dict]       Open-ended per-node annotations.
    """

    # ================================================================== #
    # Construction                                                         #
    # ================================================================== #

    def __init__(self, newick_string: str, tree_id: str = None) -> None:
        """
        Parse *newick_string* and build all tree data structures.

        Parameters
        ----------
        newick_string : str
            A NEWICK-formatted tree string (trailing ';' optional).  Branch
            lengths are optional (missing lengths count as 0.0).  BEAST-style
            comments ``[&key=value,...]`` are read into node attributes.
        tree_id : str, optional
            Identifier used in diagnostics.
        """
        self.id = tree_id if tree_id is not None else "tree"
        parent, distance, names, attributes = Tree._parse_newick(format_newick(newick_string))
        heights = Tree._heights_from_distances(parent, distance)
        self._set_arrays(parent, heights, names, attributes)
        self._validate_structure()

    @classmethod
    def from_arrays(cls, parent, heights, names=None, tree_id: str = None):
        """
        Build a tree from explicit arrays.

        Parameters
        ----------
        parent  : sequence of int     Parent ID per node; exactly one -1.
        heights : sequence of float   Height per node.
        names   : sequence of str     Taxon name per node ('' for internal).
                                      Defaults to 't<i>' for external nodes.

        Raises
        ------
        StructuralError             if the arrays do not describe one tree.
        NegativeBranchLengthError   if a child is higher than its parent.
        """
        parent = np.asarray(parent, dtype=np.int32)
        heights = np.asarray(heights, dtype=np.float64)
        n = int(parent.shape[0])
        if heights.shape[0] != n:
            raise StructuralError(
                f"parent has {n} entries but heights has {heights.shape[0]}."
            )
        if names is None:
            has_child = np.zeros(n, dtype=bool)
            for i in range(n):
                if parent[i] >= 0:
                    has_child[parent[i]] = True
            names = ["" if has_child[i] else f"t{i}" for i in range(n)]
        tree = cls.__new__(cls)
        tree.id = tree_id if tree_id is not None else "tree"
        tree._set_arrays(parent.copy(), heights.copy(), list(names), [{} for _ in range(n)])
        tree._validate_structure()
        return tree

    def _set_arrays(self, parent, heights, names, attributes) -> None:
        """**Private.**  Attach arrays and derive children, root and counts."""
        n_nodes = int(parent.shape[0])
        children = [[] for _ in range(n_nodes)]
        roots = []
        for node in range(n_nodes):
            p = int(parent[node])
            if p == -1:
                roots.append(node)
            elif p < 0 or p >= n_nodes:
                raise StructuralError(f"Node {node} has out-of-range parent {p}.")
            else:
                children[p].append(node)

        if len(roots) != 1:
            raise StructuralError(
                f"A tree needs exactly one root; found {len(roots)} "
                f"parentless nodes {roots}."
            )

        self.parent = parent
        self.heights = heights
        self.names = names
        self.attributes = attributes
        self.children = children
        self.root = roots[0]
        self.n_nodes = n_nodes
        self.n_leaves = sum(1 for c in children if len(c) == 0)

        # Name index: built lazily on first name-based query.
        self._name_index = None

    # ================================================================== #
    # Public query methods                                                 #
    # ================================================================== #

    @property
    def node_count(self) -> int:
        return self.n_nodes

    @property
    def external_node_count(self) -> int:
        return self.n_leaves

    @property
    def internal_node_count(self) -> int:
        return self.n_nodes - self.n_leaves

    def get_root(self) -> int:
        return self.root

    def child_count(self, node: int) -> int:
        return len(self.children[node])

    def get_child(self, node: int, i: int) -> int:
        return self.children[node][i]

    def get_children(self, node: int) -> list:
        """Return a copy of the ordered child list of *node*."""
        return list(self.children[node])

    def get_parent(self, node: int) -> int:
        """Return the parent ID of *node*, or -1 for the root."""
        return int(self.parent[node])

    def is_external(self, node: int) -> bool:
        return len(self.children[node]) == 0

    def is_root(self, node: int) -> bool:
        return node == self.root

    def get_node_height(self, node: int) -> float:
        return float(self.heights[node])

    def get_branch_length(self, node: int) -> float:
        """
        Return ``height(parent) - height(node)``; 0.0 for the root.

        No sign check is made here; the likelihood engine treats a negative
        value as a fatal geometry error at evaluation time.
        """
        p = int(self.parent[node])
        if p == -1:
            return 0.0
        return float(self.heights[p]) - float(self.heights[node])

    def get_node_taxon(self, node: int):
        """Return the taxon name of an external node, or None."""
        name = self.names[node]
        return name if name != "" else None

    def get_node_attribute(self, node: int, key: str, default=None):
        return self.attributes[node].get(key, default)

    def get_node_attribute_names(self, node: int) -> list:
        return list(self.attributes[node].keys())

    def external_nodes(self) -> list:
        """External node IDs in increasing order."""
        return [i for i in range(self.n_nodes) if len(self.children[i]) == 0]

    def internal_nodes(self) -> list:
        """Internal node IDs in increasing order."""
        return [i for i in range(self.n_nodes) if len(self.children[i]) > 0]

    def taxon_index(self, name: str) -> int:
        """
        Return the node ID carrying taxon *name*.

        Raises
        ------
        KeyError     if no node has that name.
        ValueError   if the name index contains duplicates.
        """
        if self._name_index is None:
            self._build_name_index()
        if name not in self._name_index:
            raise KeyError(f"No node with name '{name}' found in tree.")
        return self._name_index[name]

    def taxa(self) -> list:
        """Taxon names of the external nodes, in node-ID order."""
        return [self.names[i] for i in self.external_nodes()]

    # ================================================================== #
    # Private instance methods                                             #
    # ================================================================== #

    def _resolve_node(self, node) -> int:
        """
        **Private.**  Return the integer node ID for *node*.

        Integers (including numpy integers) pass through unchanged; strings
        are looked up in the lazily built name index.
        """
        if isinstance(node, (int, np.integer)):
            return int(node)
        return self.taxon_index(node)

    def _build_name_index(self) -> None:
        """
        **Private.**  Build and cache ``self._name_index``: a dict mapping
        each non-empty node name to its integer node ID.

        Raises
        ------
        ValueError   if duplicate taxon names are found.
        """
        idx = {}
        for node_id in range(self.n_nodes):
            name = self.names[node_id]
            if name != "":
                if name in idx:
                    raise ValueError(
                        f"Duplicate node name '{name}' at IDs "
                        f"{idx[name]} and {node_id}."
                    )
                idx[name] = node_id
        self._name_index = idx

    def _validate_structure(self) -> None:
        """
        **Private.**  Check the tree invariants with an explicit stack walk
        from the root.

        * every node is reachable from the root exactly once (no orphaned
          subtree, no cycle, no node with two parents);
        * ``parent[child] == node`` for every listed child;
        * ``height(parent) >= height(child)`` for every branch.

        Raises
        ------
        StructuralError, NegativeBranchLengthError
        """
        n_nodes = self.n_nodes
        seen = np.zeros(n_nodes, dtype=bool)
        stack = [self.root]
        n_seen = 0
        while stack:
            node = stack.pop()
            if seen[node]:
                raise StructuralError(
                    f"Node {node} of '{self.id}' is reachable twice from the "
                    f"root (cycle or multiple parents)."
                )
            seen[node] = True
            n_seen += 1
            for child in self.children[node]:
                if int(self.parent[child]) != node:
                    raise StructuralError(
                        f"Node {child} of '{self.id}' is listed as a child of "
                        f"{node} but its parent is {int(self.parent[child])}."
                    )
                length = float(self.heights[node]) - float(self.heights[child])
                if length < 0.0:
                    raise NegativeBranchLengthError(child, length, self.id)
                stack.append(child)

        if n_seen != n_nodes:
            orphans = [i for i in range(n_nodes) if not seen[i]]
            raise StructuralError(
                f"{len(orphans)} node(s) of '{self.id}' are not reachable "
                f"from root {self.root}: {orphans[:10]}"
            )

    # ================================================================== #
    # Private static methods                                               #
    # ================================================================== #

    @staticmethod
    def _heights_from_distances(parent, distance):
        """
        **Private static.**  Convert branch lengths to node heights.

        Root distances are accumulated in a single pass over nodes ordered
        so that every parent precedes its children (parsed trees put the
        root last, so iterating in reverse ID order suffices).  Height is
        ``max(root_distance) - root_distance``.
        """
        n_nodes = int(parent.shape[0])
        root_distance = np.zeros(n_nodes, dtype=np.float64)
        for node in range(n_nodes - 1, -1, -1):
            p = int(parent[node])
            if p != -1:
                d = float(distance[node])
                root_distance[node] = root_distance[p] + (d if d > 0.0 else 0.0)
        return float(np.max(root_distance)) - root_distance

    @staticmethod
    def _parse_annotation(text: str) -> dict:
        """
        **Private static.**  Parse the body of a ``[&k=v,k2=v2]`` comment.

        Values that parse as floats are stored as floats; brace-delimited
        lists are kept as strings.
        """
        attrs = {}
        if not text.startswith("&"):
            return attrs
        body = text[1:]
        depth = 0
        start = 0
        parts = []
        for k in range(len(body)):
            c = body[k]
            if c == "{":
                depth += 1
            elif c == "}":
                depth -= 1
            elif c == "," and depth == 0:
                parts.append(body[start:k])
                start = k + 1
        parts.append(body[start:])
        for part in parts:
            if "=" not in part:
                continue
            key, value = part.split("=", 1)
            try:
                attrs[key.strip()] = float(value)
            except ValueError:
                attrs[key.strip()] = value.strip()
        return attrs

    @staticmethod
    def _parse_newick(newick_string: str):
        """
        **Private static.**  Iterative, stack-based NEWICK parse.

        Nodes are created in the order they close (leaves on reading their
        label, internals on reading ')'), which is a post-order.  A final
        relabelling pass moves leaves to IDs 0..n_leaves-1 and internal
        nodes after them, keeping the root last.

        Returns
        -------
        (parent, distance, names, attributes)
        """
        s = newick_string.strip()
        n_chars = len(s)
        if n_chars > 0 and s[n_chars - 1] == ";":
            n_chars -= 1

        tmp_parent = []
        tmp_distance = []
        tmp_names = []
        tmp_attrs = []
        tmp_is_leaf = []

        OPEN_PAREN = -2
        stack = []
        delimiters = ":,);[ \t\n\r"

        def new_node(name, is_leaf):
            tmp_parent.append(-1)
            tmp_distance.append(0.0)
            tmp_names.append(name)
            tmp_attrs.append({})
            tmp_is_leaf.append(is_leaf)
            return len(tmp_parent) - 1

        i = 0
        while i < n_chars:
            c = s[i]

            if c in " \t\n\r,":
                i += 1
                continue

            if c == "(":
                stack.append(OPEN_PAREN)
                i += 1
                continue

            if c == ")":
                i += 1
                kids = []
                while stack and stack[-1] != OPEN_PAREN:
                    kids.append(stack.pop())
                if not stack:
                    raise StructuralError(f"Unbalanced ')' at position {i - 1}.")
                stack.pop()  # discard OPEN_PAREN
                kids.reverse()
                node_id = new_node("", False)
                for kid in kids:
                    tmp_parent[kid] = node_id
                # internal label (support value or name)
                j = i
                while j < n_chars and s[j] not in delimiters:
                    j += 1
                if j > i:
                    tmp_attrs[node_id]["label"] = s[i:j]
                i = j
            else:
                j = i
                while j < n_chars and s[j] not in delimiters:
                    j += 1
                if j == i:
                    raise StructuralError(
                        f"Unexpected character {c!r} at position {i}."
                    )
                node_id = new_node(s[i:j], True)
                i = j

            # Optional [&...] comments, then optional ':length'
            while i < n_chars and s[i] in " \t\n\r":
                i += 1
            while i < n_chars and s[i] == "[":
                j = s.find("]", i)
                if j == -1:
                    raise StructuralError("Unterminated '[' comment.")
                tmp_attrs[node_id].update(Tree._parse_annotation(s[i + 1 : j]))
                i = j + 1
            if i < n_chars and s[i] == ":":
                i += 1
                while i < n_chars and s[i] == "[":
                    j = s.find("]", i)
                    if j == -1:
                        raise StructuralError("Unterminated '[' comment.")
                    tmp_attrs[node_id].update(Tree._parse_annotation(s[i + 1 : j]))
                    i = j + 1
                j = i
                while j < n_chars and s[j] not in delimiters:
                    j += 1
                tmp_distance[node_id] = float(s[i:j])
                i = j

            stack.append(node_id)

        if len(stack) != 1:
            raise StructuralError(
                f"NEWICK string does not describe a single rooted tree "
                f"({len(stack)} top-level items)."
            )

        # ---- Relabel: leaves first, internals after, root last ---------- #
        n_nodes = len(tmp_parent)
        order = [k for k in range(n_nodes) if tmp_is_leaf[k]]
        n_leaves = len(order)
        order += [k for k in range(n_nodes) if not tmp_is_leaf[k]]
        new_id = [0] * n_nodes
        for new, old in enumerate(order):
            new_id[old] = new

        parent = np.full(n_nodes, -1, dtype=np.int32)
        distance = np.zeros(n_nodes, dtype=np.float64)
        names = [""] * n_nodes
        attributes = [None] * n_nodes
        for old in range(n_nodes):
            new = new_id[old]
            p = tmp_parent[old]
            parent[new] = new_id[p] if p != -1 else -1
            distance[new] = tmp_distance[old]
            names[new] = tmp_names[old]
            attributes[new] = tmp_attrs[old]

        n_unary = sum(
            1 for k in range(n_nodes) if not tmp_is_leaf[k]
            and sum(1 for q in tmp_parent if q == k) == 1
        )
        if n_unary:
            logger.warning(
                "Input tree has %d unary internal node(s); they are kept as "
                "pass-through nodes.",
                n_unary,
            )
        logger.debug("Parsed NEWICK: %d leaves, %d nodes", n_leaves, n_nodes)

        return parent, distance, names, attributes
