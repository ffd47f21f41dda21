"""
_graph.py
=========
Multi-partition likelihood on a rooted DAG (ancestral recombination graph).

A ``GraphModel`` starts from a tree in which every edge carries every
partition.  Reticulations give a node a second parent edge and move some
partitions onto it, so each partition sees its own embedded tree.

For partition *p* an internal node combines partials only where at least
two of its child edges carry *p*.  A node with exactly one carrying child
edge is passed through: the rate x time of the edges walked accumulates
into the branch of the first descendant where *p* splits (or a tip).  A
node that *p* enters but leaves on no child edge is a dead end and raises
``PartitionDeadEndError``.

The partition's effective root is the first node, walking down from the
graph root, at which *p* splits.
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

import numpy as np

from phylocache._core import LikelihoodCore
from phylocache._errors import (
    MissingTaxonError,
    NegativeBranchLengthError,
    PartitionDeadEndError,
    RescalingError,
    StructuralError,
)
from phylocache._likelihood import tip_partials_from_states
from phylocache._logging import (
    log_likelihood_construction,
    log_memory_footprint,
    log_rescaling_enabled,
)
from phylocache._model import ChangeEmitter, ChangeKind, LogColumn, StateGuard

logger = logging.getLogger(__name__)


@dataclass
class Partition:
    """
    A contiguous block of site patterns ``first_pattern .. last_pattern - 1``
    with its own site and branch rate models.
    """

    name: str
    first_pattern: int
    last_pattern: int
    site_model: object
    branch_rate_model: Optional[object] = None

    @property
    def pattern_count(self) -> int:
        return self.last_pattern - self.first_pattern


# ============================================================================ #
# GraphModel
# ============================================================================ #


class GraphModel:
    """
    Rooted DAG with per-edge partition sets, heights, change events and
    store/restore.

    Parameters
    ----------
    tree : Tree
        Starting topology and heights.  Every edge initially carries every
        partition.
    partitions : sequence of Partition
    name : str, default 'graphModel'

    Events
    ------
      HEIGHT    node        ``set_node_height``
      TOPOLOGY  parent      edge added or removed, or its partitions changed
      TOPOLOGY  node        ``add_node``
    """

    def __init__(self, tree, partitions: Iterable[Partition], name: str = "graphModel"):
        self.name = name
        self.partitions = list(partitions)
        names = [p.name for p in self.partitions]
        if len(set(names)) != len(names):
            raise ValueError(f"'{name}': duplicate partition names {names}")
        everything = frozenset(names)

        n = tree.n_nodes
        self.heights = np.zeros(max(8, 2 * n), dtype=np.float64)
        self.heights[:n] = tree.heights[:n]
        self.names = list(tree.names[:n])
        self.children = [list(c) for c in tree.children[:n]]
        self.parents = [[] if int(tree.parent[i]) == -1 else [int(tree.parent[i])]
                        for i in range(n)]
        self.edges: Dict[Tuple[int, int], FrozenSet[str]] = {
            (int(tree.parent[i]), i): everything for i in range(n) if int(tree.parent[i]) != -1
        }
        self.root = int(tree.root)
        self.n_nodes = n

        self.changes = ChangeEmitter()
        self._guard = StateGuard(name)
        self._stored = None
        logger.debug(
            "GraphModel '%s': %d nodes, %d partitions", name, n, len(self.partitions)
        )

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    @property
    def node_count(self) -> int:
        return self.n_nodes

    @property
    def capacity(self) -> int:
        return int(self.heights.shape[0])

    def get_root(self) -> int:
        return self.root

    def is_root(self, node: int) -> bool:
        return node == self.root

    def get_children(self, node: int) -> list:
        return list(self.children[node])

    def get_parents(self, node: int) -> list:
        return list(self.parents[node])

    def is_external(self, node: int) -> bool:
        return len(self.children[node]) == 0

    def external_nodes(self) -> list:
        return [i for i in range(self.n_nodes) if not self.children[i] and self.names[i]]

    def get_node_taxon(self, node: int):
        return self.names[node] or None

    def get_node_height(self, node: int) -> float:
        return float(self.heights[node])

    def edge_partitions(self, parent: int, child: int) -> FrozenSet[str]:
        return self.edges.get((parent, child), frozenset())

    def has_partition(self, parent: int, child: int, partition: str) -> bool:
        return partition in self.edges.get((parent, child), ())

    # ------------------------------------------------------------------ #
    # Edits
    # ------------------------------------------------------------------ #

    def _check_id(self, node: int) -> int:
        node = int(node)
        if node < 0 or node >= self.n_nodes:
            raise StructuralError(
                f"Node {node} does not exist in '{self.name}' ({self.n_nodes} nodes)."
            )
        return node

    def _check_partition(self, partition: str) -> None:
        if partition not in {p.name for p in self.partitions}:
            raise KeyError(f"'{self.name}' has no partition '{partition}'")

    def set_node_height(self, node: int, height: float) -> None:
        """
        Raises
        ------
        NegativeBranchLengthError
            If an edge above or below *node* would become negative; the
            height is left unchanged.
        """
        node = self._check_id(node)
        for parent in self.parents[node]:
            if self.heights[parent] - height < 0.0:
                raise NegativeBranchLengthError(
                    node, float(self.heights[parent] - height), self.name
                )
        for child in self.children[node]:
            if height - self.heights[child] < 0.0:
                raise NegativeBranchLengthError(
                    child, float(height - self.heights[child]), self.name
                )
        self.heights[node] = height
        self.changes.emit(self, node, ChangeKind.HEIGHT)

    def add_node(self, height: float = 0.0) -> int:
        """Create a detached internal node; it must be wired in with ``add_edge``."""
        node = self.n_nodes
        if node == self.capacity:
            grown = np.zeros(2 * self.capacity, dtype=np.float64)
            grown[:node] = self.heights
            self.heights = grown
        self.heights[node] = height
        self.names.append("")
        self.children.append([])
        self.parents.append([])
        self.n_nodes += 1
        self.changes.emit(self, node, ChangeKind.TOPOLOGY)
        return node

    def add_edge(self, parent: int, child: int, partitions: Iterable[str] = ()) -> None:
        """
        Raises
        ------
        StructuralError
            The edge exists, the child already has two parents, or the edge
            would close a cycle.
        NegativeBranchLengthError
            The parent is below the child.
        """
        parent = self._check_id(parent)
        child = self._check_id(child)
        partitions = frozenset(partitions)
        for p in partitions:
            self._check_partition(p)
        if (parent, child) in self.edges:
            raise StructuralError(f"Edge {parent}->{child} already exists in '{self.name}'.")
        if len(self.parents[child]) >= 2:
            raise StructuralError(
                f"Node {child} of '{self.name}' already has two parents."
            )
        if child == self.root:
            raise StructuralError(f"The root {child} of '{self.name}' cannot get a parent.")
        length = float(self.heights[parent] - self.heights[child])
        if length < 0.0:
            raise NegativeBranchLengthError(child, length, self.name)
        stack = [child]
        while stack:
            node = stack.pop()
            if node == parent:
                raise StructuralError(
                    f"Edge {parent}->{child} would create a cycle in '{self.name}'."
                )
            stack.extend(self.children[node])

        self.children[parent].append(child)
        self.parents[child].append(parent)
        self.edges[(parent, child)] = partitions
        self.changes.emit(self, parent, ChangeKind.TOPOLOGY)

    def remove_edge(self, parent: int, child: int) -> None:
        if (parent, child) not in self.edges:
            raise StructuralError(f"No edge {parent}->{child} in '{self.name}'.")
        del self.edges[(parent, child)]
        self.children[parent].remove(child)
        self.parents[child].remove(parent)
        self.changes.emit(self, parent, ChangeKind.TOPOLOGY)

    def set_edge_partition(self, parent: int, child: int, partition: str,
                           present: bool = True) -> None:
        """Add (or with ``present=False`` remove) *partition* on an edge."""
        self._check_partition(partition)
        if (parent, child) not in self.edges:
            raise StructuralError(f"No edge {parent}->{child} in '{self.name}'.")
        current = self.edges[(parent, child)]
        updated = current | {partition} if present else current - {partition}
        if updated == current:
            return
        self.edges[(parent, child)] = updated
        self.changes.emit(self, parent, ChangeKind.TOPOLOGY)

    def add_reticulation(self, child: int, parent: int, partitions: Iterable[str]) -> None:
        """
        Give *child* a second parent edge from *parent* and move
        *partitions* onto it from the existing parent edge.
        """
        child = self._check_id(child)
        if len(self.parents[child]) != 1:
            raise StructuralError(
                f"Node {child} of '{self.name}' needs exactly one parent to "
                f"receive a reticulation, it has {len(self.parents[child])}."
            )
        partitions = frozenset(partitions)
        old_parent = self.parents[child][0]
        self.add_edge(parent, child, partitions)
        for p in partitions:
            self.set_edge_partition(old_parent, child, p, present=False)

    def add_listener(self, listener) -> None:
        self.changes.subscribe(listener)

    # ------------------------------------------------------------------ #
    # State protocol
    # ------------------------------------------------------------------ #

    def _capture(self) -> dict:
        return {
            "heights": self.heights[: self.n_nodes].copy(),
            "names": list(self.names),
            "children": [list(c) for c in self.children],
            "parents": [list(p) for p in self.parents],
            "edges": dict(self.edges),
            "root": self.root,
            "n_nodes": self.n_nodes,
        }

    def store_state(self) -> None:
        self._guard.store()
        self._stored = self._capture()

    def restore_state(self) -> None:
        self._guard.release("restore_state")
        snap = self._stored
        n = snap["n_nodes"]
        self.heights[:n] = snap["heights"]
        self.names = snap["names"]
        self.children = snap["children"]
        self.parents = snap["parents"]
        self.edges = snap["edges"]
        self.root = snap["root"]
        self.n_nodes = n
        self._stored = None

    def accept_state(self) -> None:
        self._guard.release("accept_state")
        self._stored = None

    def columns(self) -> List[LogColumn]:
        return [
            LogColumn(f"{self.name}.height{node}", lambda node=node: self.get_node_height(node))
            for node in range(self.n_nodes)
        ]


# ============================================================================ #
# GraphLikelihood
# ============================================================================ #


class GraphLikelihood:
    """
    Sum over partitions of the log-likelihood of each partition's patterns
    on its embedded tree.

    Parameters
    ----------
    patterns : SitePatterns
        Concatenated patterns; partitions select contiguous ranges.
    graph_model : GraphModel
    use_ambiguities : bool, default False
    force_rescaling : bool, default False
    max_rescale_attempts : int, default 1
    backend : str, default 'best'
    name : str, optional

    Notes
    -----
    Each partition gets its own ``LikelihoodCore``.  Matrices are keyed by
    the effective child of a combination, and recomputed when its
    accumulated rate x time differs from the cached value.
    """

    def __init__(
        self,
        patterns,
        graph_model: GraphModel,
        use_ambiguities: bool = False,
        force_rescaling: bool = False,
        max_rescale_attempts: int = 1,
        backend: str = "best",
        name: str = None,
    ):
        self.name = name or f"graphLikelihood.{patterns.name}"
        self.patterns = patterns
        self.graph_model = graph_model
        self.partitions = list(graph_model.partitions)
        self.use_ambiguities = use_ambiguities
        self.max_rescale_attempts = int(max_rescale_attempts)

        capacity = graph_model.capacity
        n_parts = len(self.partitions)
        self.cores = []
        self._partition_patterns = []
        for part in self.partitions:
            if not 0 <= part.first_pattern < part.last_pattern <= patterns.pattern_count:
                raise ValueError(
                    f"'{self.name}': partition '{part.name}' range "
                    f"[{part.first_pattern}, {part.last_pattern}) is outside "
                    f"0..{patterns.pattern_count}."
                )
            if part.site_model.state_count != patterns.state_count:
                raise ValueError(
                    f"'{self.name}': partition '{part.name}' site model has "
                    f"{part.site_model.state_count} states, patterns have "
                    f"{patterns.state_count}."
                )
            sub = patterns.subset(part.first_pattern, part.last_pattern)
            core = LikelihoodCore(
                capacity, sub.pattern_count, part.site_model.category_count,
                sub.state_count, backend=backend, name=f"{self.name}.{part.name}",
            )
            if force_rescaling:
                core.set_use_scaling(True)
            self.cores.append(core)
            self._partition_patterns.append(sub)
        self._set_tips()

        self.partials_dirty = np.ones((n_parts, capacity), dtype=np.bool_)
        self.matrix_dirty = np.ones((n_parts, capacity), dtype=np.bool_)
        self.branch_times = np.full((n_parts, capacity), np.nan)
        self.combined_children = [dict() for _ in range(n_parts)]
        self.partition_log_likelihoods = np.zeros(n_parts)
        self.pattern_log_likelihoods = np.zeros(patterns.pattern_count)
        self.log_likelihood = None
        self.likelihood_known = False
        self.recompute_count = 0
        self._stored = None
        self._guard = StateGuard(self.name)
        self.changes = ChangeEmitter()

        graph_model.add_listener(self)
        for part in self.partitions:
            part.site_model.add_listener(self)
            if part.branch_rate_model is not None and hasattr(part.branch_rate_model, "add_listener"):
                part.branch_rate_model.add_listener(self)

        log_likelihood_construction(
            self.name, self.cores[0].backend if self.cores else "none",
            graph_model.node_count, patterns.pattern_count,
            max((p.site_model.category_count for p in self.partitions), default=0),
            patterns.state_count, use_ambiguities,
        )
        log_memory_footprint(self.name, sum(c.memory_bytes for c in self.cores))

    def _set_tips(self) -> None:
        graph = self.graph_model
        for node in graph.external_nodes():
            taxon = graph.get_node_taxon(node)
            for core, sub in zip(self.cores, self._partition_patterns):
                row = sub.taxon_index(taxon)
                if row < 0:
                    raise MissingTaxonError(taxon, graph.name, self.patterns.name)
                if self.use_ambiguities:
                    core.set_tip_partials(
                        node, tip_partials_from_states(sub.get_pattern_states(row), sub.state_count)
                    )
                else:
                    core.set_tip_states(node, sub.get_pattern_states(row))

    # ------------------------------------------------------------------ #
    # Change handling
    # ------------------------------------------------------------------ #

    def add_listener(self, listener) -> None:
        self.changes.subscribe(listener)

    def _ensure_capacity(self) -> None:
        capacity = self.graph_model.capacity
        old = self.partials_dirty.shape[1]
        if capacity <= old:
            return
        for core in self.cores:
            core.grow_node_storage(capacity)
        for attr, fill in (("partials_dirty", True), ("matrix_dirty", True), ("branch_times", np.nan)):
            arr = getattr(self, attr)
            grown = np.full((arr.shape[0], capacity), fill, dtype=arr.dtype)
            grown[:, :old] = arr
            setattr(self, attr, grown)

    def on_changed(self, source, index: int, kind: ChangeKind) -> None:
        if source is self.graph_model:
            self._ensure_capacity()
            if kind is ChangeKind.ALL or index < 0:
                self.make_dirty()
                return
            if kind is ChangeKind.TOPOLOGY:
                self.partials_dirty[:, index] = True
            # height changes surface as changed branch times
        else:
            for i, part in enumerate(self.partitions):
                if source is part.site_model or source is part.branch_rate_model:
                    self.matrix_dirty[i] = True
        self.likelihood_known = False
        self.changes.emit(self, -1, ChangeKind.VALUE)

    def make_dirty(self) -> None:
        self.partials_dirty[:] = True
        self.matrix_dirty[:] = True
        self.likelihood_known = False
        self.changes.emit(self, -1, ChangeKind.VALUE)

    # ------------------------------------------------------------------ #
    # Partition structure
    # ------------------------------------------------------------------ #

    def _rate_time(self, part: Partition, parent: int, child: int) -> float:
        graph = self.graph_model
        length = graph.get_node_height(parent) - graph.get_node_height(child)
        rate = 1.0
        if part.branch_rate_model is not None:
            rate = part.branch_rate_model.get_branch_rate(graph, child)
        rate_time = length * rate
        if rate_time < 0.0:
            raise NegativeBranchLengthError(child, rate_time, self.name)
        return rate_time

    def _carrying(self, part: Partition, node: int) -> list:
        graph = self.graph_model
        return [c for c in graph.children[node] if graph.has_partition(node, c, part.name)]

    def _descend(self, part: Partition, node: int, rate_time: float):
        """Walk down through pass-through nodes; return (effective node, rate x time)."""
        graph = self.graph_model
        while True:
            if graph.is_external(node):
                return node, rate_time
            carrying = self._carrying(part, node)
            if len(carrying) >= 2:
                return node, rate_time
            if not carrying:
                raise PartitionDeadEndError(node, part.name, self.name)
            child = carrying[0]
            rate_time += self._rate_time(part, node, child)
            node = child

    def partition_tree(self, part: Partition):
        """
        Embedded tree of *part*.

        Returns
        -------
        root : int
            Effective root.
        children : dict
            ``{node: [(effective_child, rate_time), ...]}`` for every
            combining node.
        order : list of int
            Combining nodes in post-order.
        """
        graph = self.graph_model
        root, _ = self._descend(part, graph.get_root(), 0.0)
        children = {}
        order = []
        seen = set()
        stack = [(root, False)]
        while stack:
            node, expanded = stack.pop()
            if graph.is_external(node):
                continue
            if expanded:
                order.append(node)
                continue
            if node in seen:
                raise StructuralError(
                    f"Partition '{part.name}' reaches node {node} of "
                    f"'{graph.name}' along two paths."
                )
            seen.add(node)
            eff = [
                self._descend(part, c, self._rate_time(part, node, c))
                for c in self._carrying(part, node)
            ]
            children[node] = eff
            stack.append((node, True))
            for child, _ in reversed(eff):
                stack.append((child, False))
        return root, children, order

    # ------------------------------------------------------------------ #
    # Evaluation
    # ------------------------------------------------------------------ #

    def _traverse_partition(self, i: int) -> float:
        part = self.partitions[i]
        core = self.cores[i]
        site_model = part.site_model
        s = site_model.state_count
        root, children, order = self.partition_tree(part)

        updated = {}
        count = 0
        for node in order:
            eff = children[node]
            kids = tuple(c for c, _ in eff)
            changed = bool(self.partials_dirty[i, node]) or (
                self.combined_children[i].get(node) != kids
            )
            for child, rate_time in eff:
                if self.matrix_dirty[i, child] or self.branch_times[i, child] != rate_time:
                    out = core.matrices_for_update(child)
                    for category in range(site_model.category_count):
                        out[category] = site_model.get_transition_probabilities(
                            category, rate_time
                        ).reshape(s, s)
                    self.branch_times[i, child] = rate_time
                    self.matrix_dirty[i, child] = False
                    changed = True
                elif updated.get(child, False):
                    changed = True
            if changed:
                core.update_partials(node, kids)
                self.combined_children[i][node] = kids
                count += 1
            updated[node] = changed

        self.recompute_count += count
        lo, hi = part.first_pattern, part.last_pattern
        core.root_log_likelihoods(
            root, order, site_model.get_category_proportions(), site_model.frequencies,
            self.pattern_log_likelihoods[lo:hi],
        )
        return float(np.dot(self._partition_patterns[i].weights, self.pattern_log_likelihoods[lo:hi]))

    def _calculate_partition(self, i: int) -> float:
        attempts = 0
        while True:
            try:
                log_l = self._traverse_partition(i)
            except Exception:
                # matrices may already hold new branch times
                self.partials_dirty[i] = True
                raise
            if log_l != -np.inf:
                break
            self.partials_dirty[i] = True
            self.matrix_dirty[i] = True
            if attempts >= self.max_rescale_attempts:
                raise RescalingError(
                    f"'{self.name}': partition '{self.partitions[i].name}' is -inf "
                    f"after {attempts} rescaled recomputation(s)."
                )
            attempts += 1
            self.cores[i].set_use_scaling(True)
            log_rescaling_enabled(f"{self.name}.{self.partitions[i].name}", attempts)
        self.partials_dirty[i] = False
        self.matrix_dirty[i] = False
        return log_l

    def get_log_likelihood(self) -> float:
        """
        Raises
        ------
        PartitionDeadEndError, NegativeBranchLengthError, RescalingError
        """
        if self.likelihood_known:
            self.recompute_count = 0
            return self.log_likelihood
        self.recompute_count = 0
        for i in range(len(self.partitions)):
            self.partition_log_likelihoods[i] = self._calculate_partition(i)
        self.log_likelihood = float(self.partition_log_likelihoods.sum())
        self.likelihood_known = True
        return self.log_likelihood

    def get_pattern_log_likelihoods(self) -> np.ndarray:
        self.get_log_likelihood()
        return self.pattern_log_likelihoods.copy()

    def get_partition_log_likelihood(self, partition: int) -> float:
        self.get_log_likelihood()
        return float(self.partition_log_likelihoods[partition])

    # ------------------------------------------------------------------ #
    # State protocol
    # ------------------------------------------------------------------ #

    def store_state(self) -> None:
        self._guard.store()
        for core in self.cores:
            core.store_state()
        self._stored = (
            self.log_likelihood,
            self.likelihood_known,
            self.partials_dirty.copy(),
            self.matrix_dirty.copy(),
            self.branch_times.copy(),
            [dict(d) for d in self.combined_children],
            self.partition_log_likelihoods.copy(),
            self.pattern_log_likelihoods.copy(),
        )

    def restore_state(self) -> None:
        self._guard.release("restore_state")
        for core in self.cores:
            core.restore_state()
        (self.log_likelihood, self.likelihood_known, partials_dirty, matrix_dirty,
         branch_times, combined, part_lls, pattern_lls) = self._stored
        n = partials_dirty.shape[1]
        self.partials_dirty[:] = True
        self.matrix_dirty[:] = True
        self.branch_times[:] = np.nan
        self.partials_dirty[:, :n] = partials_dirty
        self.matrix_dirty[:, :n] = matrix_dirty
        self.branch_times[:, :n] = branch_times
        self.combined_children = combined
        self.partition_log_likelihoods[:] = part_lls
        self.pattern_log_likelihoods[:] = pattern_lls
        self._stored = None

    def accept_state(self) -> None:
        self._guard.release("accept_state")
        for core in self.cores:
            core.accept_state()
        self._stored = None

    def columns(self) -> List[LogColumn]:
        cols = [LogColumn(self.name, self.get_log_likelihood)]
        for i, part in enumerate(self.partitions):
            cols.append(LogColumn(
                f"{self.name}.{part.name}",
                lambda i=i: self.get_partition_log_likelihood(i),
            ))
        return cols
