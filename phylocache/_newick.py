"""
_newick.py
==========
NEWICK serialisation of a ``Tree`` or ``TreeModel`` with optional branch
lengths and BEAST-style trait annotations.

Branch-length modes
-------------------
  NO_BRANCH_LENGTHS         topology and labels only
  LENGTHS_AS_TIME           ``height(parent) - height(node)``
  LENGTHS_AS_SUBSTITUTIONS  time length times ``get_branch_rate(tree, node)``

Trait annotations
-----------------
Trait providers contribute ``TreeTrait`` objects.  Node traits are written
after the node label, branch traits directly after the ``:`` that introduces
the branch length, both as ``[&key=value,...]``.

Examples
--------
>>> t = Tree('((A:1,B:1):1,C:2);')
>>> newick(t)
'((A:1.0,B:1.0):1.0,C:2.0);'
>>> newick_no_lengths(t)
'((A,B),C);'
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Sequence, runtime_checkable

from phylocache._traversal import postorder
from phylocache._utils import format_number, format_trait_value


class BranchLengthType(Enum):
    NO_BRANCH_LENGTHS = "none"
    LENGTHS_AS_TIME = "time"
    LENGTHS_AS_SUBSTITUTIONS = "substitutions"


class TraitIntent(Enum):
    """Whether a trait belongs to a node or to the branch above it."""

    NODE = "node"
    BRANCH = "branch"


@dataclass(frozen=True)
class TreeTrait:
    """
    A named per-node quantity that can be written into a NEWICK comment.

    Attributes
    ----------
    name : str
        Key written before ``=``.
    intent : TraitIntent
    value : callable
        ``value(tree, node)`` returning the trait value or None to skip.
    loggable : bool
        Non-loggable traits are never written.
    """

    name: str
    intent: TraitIntent
    value: Callable
    loggable: bool = True

    def trait_string(self, tree, node: int, decimal_places: int = None) -> Optional[str]:
        v = self.value(tree, node)
        if v is None:
            return None
        return format_trait_value(v, decimal_places)


@runtime_checkable
class TreeTraitProvider(Protocol):
    """Anything that exposes a sequence of ``TreeTrait`` objects."""

    def tree_traits(self) -> Sequence[TreeTrait]:
        ...


def _trait_comment(tree, node, providers, intent, decimal_places) -> str:
    if not providers:
        return ""
    parts = []
    for provider in providers:
        for trait in provider.tree_traits():
            if trait.intent is not intent or not trait.loggable:
                continue
            value = trait.trait_string(tree, node, decimal_places)
            if value is not None:
                parts.append(f"{trait.name}={value}")
    if not parts:
        return ""
    return "[&" + ",".join(parts) + "]"


def newick(
    tree,
    lengths: BranchLengthType = BranchLengthType.LENGTHS_AS_TIME,
    branch_rates=None,
    trait_providers: Sequence[TreeTraitProvider] = None,
    decimal_places: int = None,
    labels: bool = True,
    id_map: Dict[str, int] = None,
) -> str:
    """
    Serialise *tree* as a NEWICK string terminated by ``;``.

    Parameters
    ----------
    tree : Tree or TreeModel
    lengths : BranchLengthType
        Branch length mode; default time.
    branch_rates : BranchRateModel, optional
        Required for ``LENGTHS_AS_SUBSTITUTIONS``.
    trait_providers : sequence of TreeTraitProvider, optional
        Sources of ``[&key=value]`` annotations.
    decimal_places : int, optional
        Round lengths and float trait values.
    labels : bool
        If False, tips are written as ``id_map[taxon]`` (when given) or as
        ``node + 1``.
    id_map : dict, optional
        Taxon name to integer label, used when *labels* is False.

    Raises
    ------
    ValueError
        Substitution lengths were requested without a branch rate model.
    """
    if lengths is BranchLengthType.LENGTHS_AS_SUBSTITUTIONS and branch_rates is None:
        raise ValueError("No branch rates provided for substitution lengths")

    root = tree.get_root()
    text = {}
    for n in postorder(tree):
        if tree.is_external(n):
            if labels:
                s = tree.get_node_taxon(n) or ""
            elif id_map is not None:
                s = str(id_map[tree.get_node_taxon(n)])
            else:
                s = str(n + 1)
        else:
            s = "(" + ",".join(
                text.pop(tree.get_child(n, i)) for i in range(tree.child_count(n))
            ) + ")"

        s += _trait_comment(tree, n, trait_providers, TraitIntent.NODE, decimal_places)

        if n != root and lengths is not BranchLengthType.NO_BRANCH_LENGTHS:
            length = tree.get_branch_length(n)
            if lengths is BranchLengthType.LENGTHS_AS_SUBSTITUTIONS:
                length *= branch_rates.get_branch_rate(tree, n)
            s += ":" + _trait_comment(
                tree, n, trait_providers, TraitIntent.BRANCH, decimal_places
            )
            s += format_number(length, decimal_places)
        text[n] = s

    return text[root] + ";"


def newick_no_lengths(tree) -> str:
    """Topology with tip labels and no branch lengths."""
    return newick(tree, lengths=BranchLengthType.NO_BRANCH_LENGTHS)
