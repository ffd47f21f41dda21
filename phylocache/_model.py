"""
_model.py
=========
The reversible state protocol shared by every stateful component, and the
orchestrator that drives it.

Capabilities
------------
Stateful         store_state() / restore_state() / accept_state()
ChangeListener   on_changed(source, index, kind)

Components implement these by duck typing; nothing here is a base class.
Each component owns two small helpers by composition:

  StateGuard      rejects nested store_state() and unmatched restore/accept
  ChangeEmitter   synchronous listener list for change events

Orchestration
-------------
ModelGraph holds components in a dependency graph and drives the state
protocol in topological order (dependencies before dependents).  Change
events from graph members are routed through ``ModelGraph.notify`` so that
listeners of the same source are called in topological order too.

Store/restore contract
----------------------
* store_state()    snapshot everything needed to undo the next mutation.
* restore_state()  drop all work since store_state(); observable values are
                   identical to those at store time.
* accept_state()   drop the snapshot.

Nesting depth is exactly one.  A failure inside restore_state() leaves no
fallback snapshot and is surfaced as ``RestoreError``.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Protocol, Sequence, runtime_checkable

from phylocache._errors import RestoreError, StateError, StructuralError

logger = logging.getLogger(__name__)


class ChangeKind(Enum):
    """Shape of a change event."""

    VALUE = "value"        # a parameter entry changed
    HEIGHT = "height"      # a node height changed; topology untouched
    TOPOLOGY = "topology"  # a node's child list changed
    ALL = "all"            # everything downstream must be recomputed


# ============================================================================ #
# Capability interfaces
# ============================================================================ #


@runtime_checkable
class Stateful(Protocol):
    name: str

    def store_state(self) -> None:
        ...

    def restore_state(self) -> None:
        ...

    def accept_state(self) -> None:
        ...


@runtime_checkable
class ChangeListener(Protocol):
    def on_changed(self, source: Any, index: int, kind: ChangeKind) -> None:
        ...


# ============================================================================ #
# Composition helpers
# ============================================================================ #


class StateGuard:
    """
    Enforces single-level store/restore/accept nesting for one component.

    Examples
    --------
    >>> g = StateGuard('treeModel')
    >>> g.store()
    >>> g.store()
    Traceback (most recent call last):
    ...
    phylocache._errors.StateError: 'treeModel': store_state() called again before restore_state() or accept_state()
    """

    def __init__(self, owner: str):
        self.owner = owner
        self.stored = False

    def store(self) -> None:
        if self.stored:
            raise StateError(
                f"'{self.owner}': store_state() called again before "
                f"restore_state() or accept_state()"
            )
        self.stored = True

    def release(self, operation: str) -> None:
        if not self.stored:
            raise StateError(
                f"'{self.owner}': {operation}() called without a matching "
                f"store_state()"
            )
        self.stored = False


class ChangeEmitter:
    """
    Synchronous change-event fan-out for one component.

    ``emit`` returns only after every listener has handled the event.  When
    the owner belongs to a ``ModelGraph`` the graph installs itself as
    ``router`` and decides delivery order.
    """

    def __init__(self):
        self.listeners = []
        self.router = None

    def subscribe(self, listener) -> None:
        if listener not in self.listeners:
            self.listeners.append(listener)

    def unsubscribe(self, listener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    def emit(self, source, index: int, kind: ChangeKind) -> None:
        if self.router is not None:
            self.router(source, index, kind)
            return
        for listener in list(self.listeners):
            listener.on_changed(source, index, kind)


@dataclass(frozen=True)
class LogColumn:
    """A named read-only value polled by loggers once per logged state."""

    name: str
    getter: Callable[[], Any]

    def value(self):
        return self.getter()


# ============================================================================ #
# Orchestrator
# ============================================================================ #


class Proposal:
    """Decision handle yielded by ``ModelGraph.propose()``."""

    def __init__(self, graph: "ModelGraph"):
        self._graph = graph
        self.decided = False
        self.accepted = None

    def accept(self) -> None:
        self._decide(True)

    def reject(self) -> None:
        self._decide(False)

    def _decide(self, accepted: bool) -> None:
        if self.decided:
            raise StateError("Proposal already decided")
        self.decided = True
        self.accepted = accepted
        if accepted:
            self._graph.accept_state()
        else:
            self._graph.restore_state()


class ModelGraph:
    """
    Dependency graph of stateful components with a single driver for the
    store/restore/accept protocol and for change delivery.

    Parameters
    ----------
    name : str, default 'model'
        Identifier used in diagnostics.

    Notes
    -----
    Edges come from two sources: explicit ``depends_on`` arguments to
    :meth:`add`, and listener subscriptions between graph members (a
    component subscribed to another component's ``changes`` emitter depends
    on it).  The topological order puts dependencies first and keeps
    insertion order among peers, so it is deterministic.

    Examples
    --------
    >>> graph = ModelGraph()
    >>> graph.add(tree_model)
    >>> graph.add(likelihood)
    >>> with graph.propose() as proposal:
    ...     tree_model.set_node_height(5, 2.5)
    ...     if likelihood.get_log_likelihood() < threshold:
    ...         proposal.reject()
    ...     else:
    ...         proposal.accept()
    """

    def __init__(self, name: str = "model"):
        self.name = name
        self._components = []
        self._explicit = {}
        self._order = None
        self._order_signature = None
        self._guard = StateGuard(name)

    # ------------------------------------------------------------------ #
    # Construction
    # ------------------------------------------------------------------ #

    def add(self, component, depends_on: Sequence = ()):
        """
        Register *component* (and any unregistered dependencies).

        Returns
        -------
        component
            For chaining.

        Raises
        ------
        StructuralError   if the new edges close a dependency cycle.
        """
        for dep in depends_on:
            if not self._contains(dep):
                self.add(dep)

        is_new = not self._contains(component)
        if is_new:
            self._components.append(component)
            self._explicit[id(component)] = []
        previous = list(self._explicit[id(component)])
        self._explicit[id(component)].extend(depends_on)
        self._order = None
        try:
            self.order
        except StructuralError:
            self._explicit[id(component)] = previous
            if is_new:
                self._components.pop()
                del self._explicit[id(component)]
            self._order = None
            raise

        if is_new:
            emitter = getattr(component, "changes", None)
            if emitter is not None:
                emitter.router = lambda source, index, kind, _e=emitter: self._route(
                    _e, source, index, kind
                )
        return component

    def _contains(self, component) -> bool:
        return any(c is component for c in self._components)

    def _signature(self) -> tuple:
        # listener lists can grow after add(); any change invalidates the order
        return tuple(
            len(getattr(getattr(c, "changes", None), "listeners", ()))
            for c in self._components
        ) + (len(self._components),)

    def _dependencies(self, component) -> List:
        deps = list(self._explicit.get(id(component), []))
        for other in self._components:
            if other is component:
                continue
            emitter = getattr(other, "changes", None)
            if emitter is not None and any(l is component for l in emitter.listeners):
                if not any(d is other for d in deps):
                    deps.append(other)
        return deps

    @property
    def components(self) -> List:
        return list(self._components)

    @property
    def order(self) -> List:
        """Components in topological order, dependencies first."""
        signature = self._signature()
        if self._order is not None and signature == self._order_signature:
            return list(self._order)

        index = {id(c): i for i, c in enumerate(self._components)}
        deps = {id(c): [d for d in self._dependencies(c) if id(d) in index]
                for c in self._components}

        order = []
        state = {}  # 1 = on stack, 2 = done
        for start in self._components:
            if state.get(id(start)) == 2:
                continue
            # iterative DFS emitting a node after all of its dependencies
            stack = [(start, 0)]
            path = [start]
            state[id(start)] = 1
            while stack:
                node, i = stack.pop()
                node_deps = deps[id(node)]
                if i < len(node_deps):
                    stack.append((node, i + 1))
                    dep = node_deps[i]
                    s = state.get(id(dep))
                    if s == 1:
                        cycle = path[path.index(dep):] + [dep]
                        names = " -> ".join(_name(c) for c in cycle)
                        raise StructuralError(
                            f"Dependency cycle in '{self.name}': {names}"
                        )
                    if s is None:
                        state[id(dep)] = 1
                        stack.append((dep, 0))
                        path.append(dep)
                else:
                    state[id(node)] = 2
                    path.pop()
                    order.append(node)

        self._order = order
        self._order_signature = signature
        return list(order)

    # ------------------------------------------------------------------ #
    # Change delivery
    # ------------------------------------------------------------------ #

    def _rank(self, component) -> int:
        order = self.order
        for i, c in enumerate(order):
            if c is component:
                return i
        return len(order)

    def _route(self, emitter: ChangeEmitter, source, index: int, kind: ChangeKind) -> None:
        listeners = sorted(list(emitter.listeners), key=self._rank)
        for listener in listeners:
            listener.on_changed(source, index, kind)

    def notify(self, source, index: int, kind: ChangeKind) -> None:
        """
        Deliver a change event from *source* to its listeners in topological
        order.  Returns after every listener (and anything they re-emit)
        has been handled.
        """
        emitter = getattr(source, "changes", None)
        if emitter is None:
            return
        self._route(emitter, source, index, kind)

    # ------------------------------------------------------------------ #
    # State protocol
    # ------------------------------------------------------------------ #

    def _check_listeners(self) -> None:
        """
        Raise if a stateful listener of a member is not a member itself.

        Such a listener would miss the rollback: restore_state() fires no
        events, so it would keep serving values computed for the rejected
        state.
        """
        for component in self._components:
            emitter = getattr(component, "changes", None)
            if emitter is None:
                continue
            for listener in emitter.listeners:
                if hasattr(listener, "store_state") and not self._contains(listener):
                    raise StructuralError(
                        f"'{_name(listener)}' listens to '{_name(component)}' "
                        f"but is not part of '{self.name}'; add it before "
                        f"storing state."
                    )

    def store_state(self) -> None:
        """
        Store every component in topological order.

        Raises
        ------
        StructuralError
            If a stateful listener of a member was never added.
        Exception
            Whatever a component's store_state() raised.  Components stored
            before the failure are released with accept_state() and the
            graph is left unstored.
        """
        self._check_listeners()
        self._guard.store()
        stored = []
        try:
            for component in self.order:
                component.store_state()
                stored.append(component)
        except Exception as exc:
            logger.error(
                "Store failed in '%s' after %d of %d components: %s",
                self.name, len(stored), len(self._components), exc,
            )
            for component in stored:
                component.accept_state()
            self._guard.release("store_state")
            raise

    def accept_state(self) -> None:
        self._guard.release("accept_state")
        for component in self.order:
            component.accept_state()

    def restore_state(self) -> None:
        """
        Restore every component in topological order.

        Raises
        ------
        RestoreError
            Wrapping the first failure, naming the component.  The run
            cannot continue: there is no earlier snapshot to fall back to.
        """
        self._guard.release("restore_state")
        for component in self.order:
            try:
                component.restore_state()
            except Exception as exc:
                logger.error(
                    "Restore failed in component '%s' of '%s': %s",
                    _name(component), self.name, exc,
                )
                raise RestoreError(_name(component), exc) from exc

    accept = accept_state
    reject = restore_state

    @contextmanager
    def propose(self):
        """
        Store state, yield a :class:`Proposal`, and settle it on exit.

        An exception inside the block restores state and propagates.  A
        block that ends without calling ``accept()`` or ``reject()`` is
        rejected.
        """
        self.store_state()
        proposal = Proposal(self)
        try:
            yield proposal
        except BaseException:
            if not proposal.decided:
                proposal.reject()
            raise
        if not proposal.decided:
            logger.debug("Undecided proposal in '%s' rejected", self.name)
            proposal.reject()

    def columns(self) -> List[LogColumn]:
        """Every log column exposed by the graph's components, in order."""
        cols = []
        for component in self.order:
            get_columns = getattr(component, "columns", None)
            if get_columns is not None:
                cols.extend(get_columns())
        return cols


def _name(component) -> str:
    return str(getattr(component, "name", type(component).__name__))
