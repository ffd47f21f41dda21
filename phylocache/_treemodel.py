"""
_treemodel.py
=============
A mutable tree for MCMC operators: transactional topology and height edits,
synchronous change events, per-node rates, and one-level store/restore.

``TreeModel`` extends ``Tree`` with spare array capacity.  Node ids are
stable: ``add_node`` appends, nothing is ever renumbered, and storage grows
by doubling.

Transactions
------------
Edits are grouped with ``editing()``::

    with tree_model.editing():
        tree_model.remove_child(p, s)
        tree_model.replace_child(gp, p, s)
        ...

On exit the tree is validated.  A failure (or an exception in the block)
restores the arrays captured on entry and re-raises; nothing is fired.
On success the queued events are fired in order.  An edit issued outside
``editing()`` forms a transaction of its own.

Events
------
  HEIGHT    node index      ``set_node_height``
  TOPOLOGY  node index      each node whose child list changed, and each
                            node created by ``add_node``
  ALL       -1              after ``set_root``
  VALUE     node index      ``set_node_rate``
"""

import logging
from contextlib import contextmanager
from typing import List

import numpy as np

from phylocache._errors import NegativeBranchLengthError, StructuralError
from phylocache._model import ChangeEmitter, ChangeKind, LogColumn, StateGuard
from phylocache._tree import Tree

logger = logging.getLogger(__name__)


class TreeModel(Tree):
    """
    Mutable tree with change notification and store/restore.

    Parameters
    ----------
    tree : Tree
        Starting tree; its arrays are copied.
    name : str, default 'treeModel'
        Component identifier used in diagnostics and log columns.

    Attributes
    ----------
    changes : ChangeEmitter
        Subscribe listeners with ``add_listener``.
    capacity : int
        Allocated node slots (>= ``n_nodes``).
    """

    def __init__(self, tree: Tree, name: str = "treeModel"):
        self.name = name
        self.id = name
        n_nodes = tree.n_nodes
        capacity = max(8, 2 * n_nodes)

        self.parent = np.full(capacity, -1, dtype=np.int32)
        self.parent[:n_nodes] = tree.parent[:n_nodes]
        self.heights = np.zeros(capacity, dtype=np.float64)
        self.heights[:n_nodes] = tree.heights[:n_nodes]
        self.rates = np.ones(capacity, dtype=np.float64)
        self.names = list(tree.names[:n_nodes])
        self.attributes = [dict(a) for a in tree.attributes[:n_nodes]]
        self.children = [list(c) for c in tree.children[:n_nodes]]
        self.root = tree.root
        self.n_nodes = n_nodes
        self.n_leaves = tree.n_leaves
        self._name_index = None

        self.changes = ChangeEmitter()
        self._guard = StateGuard(name)
        self._stored = None

        self._edit_depth = 0
        self._edit_backup = None
        self._pending = []
        self._topology_touched = False
        self._height_touched = []

        logger.debug(
            "TreeModel '%s': %d nodes (%d tips), capacity %d",
            name, n_nodes, self.n_leaves, capacity,
        )

    @classmethod
    def from_newick(cls, newick_string: str, name: str = "treeModel"):
        return cls(Tree(newick_string, tree_id=name), name=name)

    @property
    def capacity(self) -> int:
        return int(self.parent.shape[0])

    def add_listener(self, listener) -> None:
        self.changes.subscribe(listener)

    # ================================================================== #
    # Transactions                                                         #
    # ================================================================== #

    @contextmanager
    def editing(self):
        """
        Group edits into one validated transaction.

        Nested ``editing()`` blocks join the outermost transaction.

        Raises
        ------
        NegativeBranchLengthError, StructuralError
            Validation failed on exit; the tree is rolled back first.
        """
        outermost = self._edit_depth == 0
        if outermost:
            self._edit_backup = self._capture()
            self._pending = []
            self._topology_touched = False
            self._height_touched = []
        self._edit_depth += 1
        try:
            yield self
        except BaseException:
            self._edit_depth -= 1
            if outermost:
                self._abort_edit()
            raise
        self._edit_depth -= 1
        if not outermost:
            return

        try:
            self._validate_edit()
        except StructuralError:
            self._abort_edit()
            raise

        events = self._coalesce(self._pending)
        self._edit_backup = None
        self._pending = []
        self._height_touched = []
        for index, kind in events:
            self.changes.emit(self, index, kind)

    def _abort_edit(self) -> None:
        self._apply(self._edit_backup)
        self._edit_backup = None
        self._pending = []
        self._height_touched = []
        logger.debug("TreeModel '%s': edit rolled back", self.name)

    @staticmethod
    def _coalesce(events):
        if any(kind is ChangeKind.ALL for _, kind in events):
            return [(-1, ChangeKind.ALL)]
        seen = set()
        result = []
        for ev in events:
            if ev not in seen:
                seen.add(ev)
                result.append(ev)
        return result

    def _validate_edit(self) -> None:
        if self._topology_touched:
            self._validate_structure()
            n_leaves = 0
            for node in range(self.n_nodes):
                if len(self.children[node]) == 0:
                    if self.names[node] == "":
                        raise StructuralError(
                            f"Internal node {node} of '{self.name}' was left "
                            f"without children."
                        )
                    n_leaves += 1
            self.n_leaves = n_leaves
            return
        for node in self._height_touched:
            self._check_branches(node)

    def _check_branches(self, node: int) -> None:
        h = float(self.heights[node])
        p = int(self.parent[node])
        if p != -1 and float(self.heights[p]) - h < 0.0:
            raise NegativeBranchLengthError(node, float(self.heights[p]) - h, self.name)
        for child in self.children[node]:
            length = h - float(self.heights[child])
            if length < 0.0:
                raise NegativeBranchLengthError(child, length, self.name)

    # ================================================================== #
    # Snapshots                                                            #
    # ================================================================== #

    def _capture(self) -> dict:
        n = self.n_nodes
        return {
            "parent": self.parent[:n].copy(),
            "heights": self.heights[:n].copy(),
            "rates": self.rates[:n].copy(),
            "children": [list(c) for c in self.children[:n]],
            "root": self.root,
            "n_nodes": n,
            "n_leaves": self.n_leaves,
        }

    def _apply(self, snap: dict) -> None:
        n = snap["n_nodes"]
        self.parent[:n] = snap["parent"]
        self.parent[n:] = -1
        self.heights[:n] = snap["heights"]
        self.rates[:n] = snap["rates"]
        self.children = [list(c) for c in snap["children"]]
        del self.names[n:]
        del self.attributes[n:]
        self.root = snap["root"]
        self.n_nodes = n
        self.n_leaves = snap["n_leaves"]

    # ================================================================== #
    # Edits                                                                #
    # ================================================================== #

    def _check_id(self, node: int) -> int:
        node = int(node)
        if node < 0 or node >= self.n_nodes:
            raise StructuralError(
                f"Node {node} does not exist in '{self.name}' "
                f"({self.n_nodes} nodes)."
            )
        return node

    def set_node_height(self, node: int, height: float) -> None:
        """
        Set the height of *node*; fires ``HEIGHT`` with the node index.

        Raises
        ------
        NegativeBranchLengthError
            If the branch above or any branch below would become negative.
        """
        node = self._check_id(node)
        with self.editing():
            self.heights[node] = height
            self._height_touched.append(node)
            self._pending.append((node, ChangeKind.HEIGHT))

    def add_child(self, parent: int, child: int) -> None:
        parent = self._check_id(parent)
        child = self._check_id(child)
        with self.editing():
            if int(self.parent[child]) != -1:
                raise StructuralError(
                    f"Node {child} of '{self.name}' already has parent "
                    f"{int(self.parent[child])}."
                )
            if child == self.root:
                raise StructuralError(
                    f"Root {child} of '{self.name}' cannot become a child "
                    f"before a new root is set."
                )
            self.children[parent].append(child)
            self.parent[child] = parent
            self._topology(parent)

    def remove_child(self, parent: int, child: int) -> None:
        parent = self._check_id(parent)
        child = self._check_id(child)
        with self.editing():
            if child not in self.children[parent]:
                raise StructuralError(
                    f"Node {child} is not a child of {parent} in '{self.name}'."
                )
            self.children[parent].remove(child)
            self.parent[child] = -1
            self._topology(parent)

    def replace_child(self, parent: int, old_child: int, new_child: int) -> None:
        """Put *new_child* at *old_child*'s position in *parent*'s child list."""
        parent = self._check_id(parent)
        old_child = self._check_id(old_child)
        new_child = self._check_id(new_child)
        with self.editing():
            if old_child not in self.children[parent]:
                raise StructuralError(
                    f"Node {old_child} is not a child of {parent} in '{self.name}'."
                )
            if int(self.parent[new_child]) != -1:
                raise StructuralError(
                    f"Node {new_child} of '{self.name}' already has parent "
                    f"{int(self.parent[new_child])}."
                )
            i = self.children[parent].index(old_child)
            self.children[parent][i] = new_child
            self.parent[old_child] = -1
            self.parent[new_child] = parent
            self._topology(parent)

    def swap_children(self, node: int) -> None:
        """Reverse the child order of *node* (left/right swap when binary)."""
        node = self._check_id(node)
        with self.editing():
            self.children[node].reverse()
            self._topology(node)

    def set_root(self, node: int) -> None:
        """Make *node* (which must have no parent) the root; fires ``ALL``."""
        node = self._check_id(node)
        with self.editing():
            if int(self.parent[node]) != -1:
                raise StructuralError(
                    f"Node {node} of '{self.name}' still has parent "
                    f"{int(self.parent[node])} and cannot be the root."
                )
            self.root = node
            self._topology_touched = True
            self._pending.append((-1, ChangeKind.ALL))

    def add_node(self, height: float = 0.0) -> int:
        """
        Create a detached internal node and return its id.

        The node must be attached (or made root) before the enclosing
        transaction closes.
        """
        with self.editing():
            node = self.n_nodes
            if node == self.capacity:
                self._grow()
            self.parent[node] = -1
            self.heights[node] = height
            self.rates[node] = 1.0
            self.names.append("")
            self.attributes.append({})
            self.children.append([])
            self.n_nodes += 1
            self._topology(node)
        return node

    def _grow(self) -> None:
        old = self.capacity
        new = 2 * old
        for attr, fill in (("parent", -1), ("heights", 0.0), ("rates", 1.0)):
            arr = getattr(self, attr)
            grown = np.full(new, fill, dtype=arr.dtype)
            grown[:old] = arr
            setattr(self, attr, grown)
        logger.debug("TreeModel '%s': capacity %d -> %d", self.name, old, new)

    def _topology(self, node: int) -> None:
        self._topology_touched = True
        self._pending.append((node, ChangeKind.TOPOLOGY))

    def reattach(self, subtree: int, new_sibling: int, new_parent_height: float) -> None:
        """
        Prune *subtree* with its parent and regraft it above *new_sibling*.

        The parent ``p`` of *subtree* is removed from its position (its other
        child takes its place) and reinserted on the branch above
        *new_sibling* at height *new_parent_height*.  Requires a binary
        parent.  If either end is the root, the root moves accordingly.

        Raises
        ------
        StructuralError
            If *new_sibling* lies inside the pruned subtree or the parent is
            not binary.
        NegativeBranchLengthError
            If the new height does not fit between *new_sibling* and its
            parent.
        """
        subtree = self._check_id(subtree)
        new_sibling = self._check_id(new_sibling)
        p = int(self.parent[subtree])
        if p == -1:
            raise StructuralError(f"Cannot reattach the root of '{self.name}'.")
        if len(self.children[p]) != 2:
            raise StructuralError(
                f"Parent {p} of node {subtree} in '{self.name}' is not binary."
            )
        cur = new_sibling if new_sibling != p else subtree
        while cur != -1:
            if cur == subtree:
                raise StructuralError(
                    f"Node {new_sibling} lies inside the subtree being moved "
                    f"in '{self.name}'."
                )
            cur = int(self.parent[cur])

        sibling = self.children[p][0] if self.children[p][1] == subtree else self.children[p][1]
        gp = int(self.parent[p])

        with self.editing():
            self.remove_child(p, sibling)
            if gp != -1:
                self.replace_child(gp, p, sibling)
            else:
                self.set_root(sibling)
            ns_parent = int(self.parent[new_sibling])
            if ns_parent != -1:
                self.replace_child(ns_parent, new_sibling, p)
            else:
                self.set_root(p)
            self.add_child(p, new_sibling)
            self.set_node_height(p, new_parent_height)

    # ================================================================== #
    # Rates and attributes                                                 #
    # ================================================================== #

    def get_node_rate(self, node: int) -> float:
        return float(self.rates[node])

    def set_node_rate(self, node: int, rate: float) -> None:
        """Set the rate on the branch above *node*; fires ``VALUE``."""
        node = self._check_id(node)
        self.rates[node] = rate
        if self._edit_depth > 0:
            self._pending.append((node, ChangeKind.VALUE))
        else:
            self.changes.emit(self, node, ChangeKind.VALUE)

    def set_node_attribute(self, node: int, key: str, value) -> None:
        self.attributes[self._check_id(node)][key] = value

    # ================================================================== #
    # State protocol                                                       #
    # ================================================================== #

    def store_state(self) -> None:
        self._guard.store()
        self._stored = self._capture()

    def restore_state(self) -> None:
        self._guard.release("restore_state")
        self._apply(self._stored)
        self._stored = None

    def accept_state(self) -> None:
        self._guard.release("accept_state")
        self._stored = None

    def columns(self) -> List[LogColumn]:
        return [
            LogColumn(f"{self.name}.height{node}", lambda node=node: self.get_node_height(node))
            for node in range(self.n_nodes)
        ]
