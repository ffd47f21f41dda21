"""
_errors.py
==========
Exception taxonomy for phylocache.

Every exception derives from both ``PhylocacheError`` and the closest
built-in category, so callers can catch either the package-specific class
or the familiar ``ValueError`` / ``ArithmeticError`` / ``RuntimeError``.

Structural errors
-----------------
StructuralError             Broken tree or graph geometry (orphaned node,
                            cycle, second root).
MissingTaxonError           Tip taxon absent from the site patterns.
NegativeBranchLengthError   ``parentHeight - childHeight < 0``.
PartitionDeadEndError       A partition enters an internal node but leaves
                            on none of its child edges.

Numerical errors
----------------
NumericalError              Base for recoverable-then-fatal numeric issues.
RescalingError              Likelihood still underflows after rescaling.
IntegrationOverflowError    Quadrature overflows after every rescale.

Programming errors
------------------
ReadOnlyParameterError      Setter called on a derived quantity.
StateError                  Store/restore/accept protocol violated.
RestoreError                A component failed while restoring (fatal).
TraversalPreconditionError  Node id not reachable from the tree root.
"""


class PhylocacheError(Exception):
    """Base class for every error raised by phylocache."""


# ============================================================================ #
# Structural errors
# ============================================================================ #


class StructuralError(PhylocacheError, ValueError):
    """Tree or graph geometry violates an invariant."""


class MissingTaxonError(StructuralError, KeyError):
    """A taxon referenced by the tree is not present in the site patterns."""

    def __init__(self, taxon: str, tree_id: str = None, patterns_id: str = None):
        self.taxon = taxon
        self.tree_id = tree_id
        self.patterns_id = patterns_id
        msg = f"Taxon '{taxon}'"
        if tree_id is not None:
            msg += f", in tree '{tree_id}',"
        msg += " is not found"
        if patterns_id is not None:
            msg += f" in patterns '{patterns_id}'"
        super().__init__(msg + ".")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class NegativeBranchLengthError(StructuralError):
    """A branch has ``parentHeight - childHeight < 0``."""

    def __init__(self, node: int, length: float, component: str = None):
        self.node = node
        self.length = length
        self.component = component
        where = f" in '{component}'" if component else ""
        super().__init__(
            f"Negative branch length {length!r} above node {node}{where}: "
            f"parent height must be >= child height."
        )


class PartitionDeadEndError(StructuralError):
    """A partition reaches an internal node but none of its child edges."""

    def __init__(self, node: int, partition: str, component: str = None):
        self.node = node
        self.partition = partition
        where = f" in '{component}'" if component else ""
        super().__init__(
            f"Partition '{partition}' dead-ends at node {node}{where}: "
            f"it is carried into the node but by none of its child edges."
        )


# ============================================================================ #
# Numerical errors
# ============================================================================ #


class NumericalError(PhylocacheError, ArithmeticError):
    """A numerical computation could not be completed reliably."""


class RescalingError(NumericalError):
    """The log-likelihood is still ``-inf`` after partials rescaling."""


class IntegrationOverflowError(NumericalError):
    """The integrand kept overflowing after the maximum number of rescales."""


# ============================================================================ #
# Programming errors
# ============================================================================ #


class ReadOnlyParameterError(PhylocacheError, TypeError):
    """A setter was called on a deterministic (derived) quantity."""

    def __init__(self, object_id: str, operation: str):
        self.object_id = object_id
        self.operation = operation
        super().__init__(
            f"Object {object_id} is a deterministic function. "
            f"Calling {operation} is not allowed"
        )


class StateError(PhylocacheError, RuntimeError):
    """The store/restore/accept protocol was used out of order."""


class RestoreError(StateError):
    """A component failed during ``restore_state()``; the run cannot go on."""

    def __init__(self, component: str, cause: BaseException):
        self.component = component
        self.cause = cause
        super().__init__(
            f"Failed to restore state of '{component}': "
            f"{type(cause).__name__}: {cause}"
        )


class TraversalPreconditionError(PhylocacheError, ValueError):
    """A traversal was asked about a node that is not part of the tree."""
