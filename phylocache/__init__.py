"""
phylocache
==========

Incremental phylogenetic likelihood for MCMC samplers.

*phylocache* keeps partial likelihoods cached on an arena tree, listens for
changes to the tree and the model parameters, and recomputes only the
nodes a proposal touched.  Every stateful component supports one level of
``store_state()`` / ``restore_state()`` / ``accept_state()`` so a rejected
proposal rolls back without recomputation.

Main Classes
------------
Tree : Immutable rooted tree with NEWICK parsing
TreeModel : Mutable tree with transactional edits and change events
TreeLikelihood : Incremental Felsenstein pruning over a TreeModel
GraphModel, GraphLikelihood, Partition : Multi-partition likelihood on a DAG
ModelGraph : Dependency-ordered store/restore/accept driver
Parameter, MatrixProductParameter : Bounded parameters and a derived product
SiteModel, JukesCantor, ReversibleModel : Site and substitution models
StrictClock, DiscretizedBranchRates : Branch rate models
SitePatterns : Compressed, weighted alignment columns
RiemannApproximation, InfiniteRangeTransform, RescalingIntegrand : Quadrature

Context Managers
----------------
quiet : Suppress logging during operations
suppress_logger : Suppress specific logger
suppress_warnings : Suppress specific warnings
use_backend : Force specific computational backend
silent_benchmark : Combine quiet + backend selection + warning suppression

Utilities
---------
newick : Write a tree as NEWICK with optional trait annotations
format_newick : Format NEWICK strings consistently
traversal : Module of tree queries (mrca, is_monophyletic, clades, ...)
rearrange : In-place TreeModel rearrangements (slide, rotations, ...)

Backend Information
-------------------
get_available_backends : Query available computational backends
get_backend_info : Get comprehensive backend status
check_numba_available : Check if numba's parallel runtime is usable

Examples
--------
Basic usage:

>>> from phylocache import (SitePatterns, SiteModel, JukesCantor, TreeModel,
...                         TreeLikelihood)
>>> tree = TreeModel.from_newick('((A:1,B:1):1,(C:1,D:1):1);')
>>> patterns = SitePatterns.from_strings(
...     {'A': 'ACGT', 'B': 'ACGA', 'C': 'TCGA', 'D': 'TCGA'}, 'ACGT')
>>> lik = TreeLikelihood(patterns, tree, SiteModel(JukesCantor()))
>>> before = lik.get_log_likelihood()

Proposals through the model graph:

>>> from phylocache import ModelGraph
>>> graph = ModelGraph()
>>> graph.add(tree)
>>> graph.add(lik)
>>> with graph.propose() as proposal:
...     tree.set_node_height(4, 1.5)
...     if lik.get_log_likelihood() < before:
...         proposal.reject()
...     else:
...         proposal.accept()

Forcing the reference kernels:

>>> from phylocache import use_backend
>>> with use_backend('python'):
...     reference = TreeLikelihood(patterns, tree, SiteModel(JukesCantor()))
"""

__version__ = "0.1.0"
__license__ = "MIT"

# Main classes
from ._tree import Tree
from ._treemodel import TreeModel
from ._likelihood import TreeLikelihood
from ._graph import GraphLikelihood, GraphModel, Partition
from ._model import ChangeKind, LogColumn, ModelGraph
from ._parameter import MatrixProductParameter, Parameter
from ._sitemodel import SiteModel, discretized_gamma_rates
from ._substitution import JukesCantor, ReversibleModel
from ._branchrates import DiscretizedBranchRates, StrictClock
from ._patterns import SitePatterns
from ._integration import (
    InfiniteRangeTransform,
    RescalingIntegrand,
    RiemannApproximation,
    UnivariateFunction,
)
from ._newick import BranchLengthType, TraitIntent, TreeTrait, newick
from . import _traversal as traversal
from . import _rearrange as rearrange

# Errors
from ._errors import (
    PhylocacheError,
    StructuralError,
    MissingTaxonError,
    NegativeBranchLengthError,
    PartitionDeadEndError,
    NumericalError,
    RescalingError,
    IntegrationOverflowError,
    ReadOnlyParameterError,
    StateError,
    RestoreError,
    TraversalPreconditionError,
)

# Context managers (user-facing utilities)
from ._context import (
    suppress_logger,
    quiet,
    suppress_warnings,
    use_backend,
    silent_benchmark,
)

# Utilities (generally useful functions)
from ._utils import format_newick

# Backend information (useful for checking capabilities)
from ._backend import (
    get_available_backends,
    get_backend_info,
    check_numba_available,
)

# Public API
__all__ = [
    # Main classes
    "Tree",
    "TreeModel",
    "TreeLikelihood",
    "GraphLikelihood",
    "GraphModel",
    "Partition",
    "ChangeKind",
    "LogColumn",
    "ModelGraph",
    "MatrixProductParameter",
    "Parameter",
    "SiteModel",
    "discretized_gamma_rates",
    "JukesCantor",
    "ReversibleModel",
    "DiscretizedBranchRates",
    "StrictClock",
    "SitePatterns",
    "InfiniteRangeTransform",
    "RescalingIntegrand",
    "RiemannApproximation",
    "UnivariateFunction",
    "BranchLengthType",
    "TraitIntent",
    "TreeTrait",
    "newick",
    "traversal",
    "rearrange",
    # Errors
    "PhylocacheError",
    "StructuralError",
    "MissingTaxonError",
    "NegativeBranchLengthError",
    "PartitionDeadEndError",
    "NumericalError",
    "RescalingError",
    "IntegrationOverflowError",
    "ReadOnlyParameterError",
    "StateError",
    "RestoreError",
    "TraversalPreconditionError",
    # Context managers
    "suppress_logger",
    "quiet",
    "suppress_warnings",
    "use_backend",
    "silent_benchmark",
    # Utilities
    "format_newick",
    # Backend information
    "get_available_backends",
    "get_backend_info",
    "check_numba_available",
    # Version info
    "__version__",
]
