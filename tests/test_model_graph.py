"""
tests/test_model_graph.py
=========================
Tests for ModelGraph: dependency ordering, change routing, the
store/restore/accept driver and the propose() context manager.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from phylocache._errors import RestoreError, StateError, StructuralError
from phylocache._likelihood import TreeLikelihood
from phylocache._model import ChangeEmitter, ChangeKind, LogColumn, ModelGraph, StateGuard
from phylocache._parameter import Parameter
from phylocache._patterns import SitePatterns
from phylocache._sitemodel import SiteModel
from phylocache._substitution import JukesCantor
from phylocache._treemodel import TreeModel


class Node:
    """Minimal stateful component that logs what happens to it."""

    def __init__(self, name, log):
        self.name = name
        self.log = log
        self.changes = ChangeEmitter()
        self._guard = StateGuard(name)

    def on_changed(self, source, index, kind):
        self.log.append(("changed", self.name, index, kind))

    def store_state(self):
        self._guard.store()
        self.log.append(("store", self.name))

    def restore_state(self):
        self._guard.release("restore_state")
        self.log.append(("restore", self.name))

    def accept_state(self):
        self._guard.release("accept_state")
        self.log.append(("accept", self.name))

    def columns(self):
        return [LogColumn(self.name, lambda: len(self.log))]


class Broken(Node):
    def restore_state(self):
        self._guard.release("restore_state")
        raise ValueError("buffers lost")


class BrokenStore(Node):
    def __init__(self, name, log):
        super().__init__(name, log)
        self.fail = True

    def store_state(self):
        if self.fail:
            raise MemoryError("no room for a snapshot")
        super().store_state()


# ======================================================================== #
# Ordering                                                                  #
# ======================================================================== #


class TestOrder:
    def test_explicit_dependencies_first(self):
        log = []
        a, b, c = Node("a", log), Node("b", log), Node("c", log)
        g = ModelGraph()
        g.add(c, depends_on=[b])
        g.add(b, depends_on=[a])
        assert [n.name for n in g.order] == ["a", "b", "c"]

    def test_listener_edges(self):
        log = []
        p = Parameter("p", 1.0)
        listener = Node("listener", log)
        p.add_listener(listener)
        g = ModelGraph()
        g.add(listener)
        g.add(p)
        assert g.order[0] is p
        assert g.order[1] is listener

    def test_insertion_order_among_peers(self):
        log = []
        nodes = [Node(n, log) for n in "xyz"]
        g = ModelGraph()
        for n in nodes:
            g.add(n)
        assert g.order == nodes

    def test_dependencies_added_implicitly(self):
        log = []
        a, b = Node("a", log), Node("b", log)
        g = ModelGraph()
        g.add(b, depends_on=[a])
        assert g.components == [a, b]

    def test_add_returns_component(self):
        n = Node("n", [])
        assert ModelGraph().add(n) is n

    def test_cycle_rejected(self):
        log = []
        a, b = Node("a", log), Node("b", log)
        g = ModelGraph()
        g.add(a, depends_on=[b])
        with pytest.raises(StructuralError, match="cycle"):
            g.add(b, depends_on=[a])
        # the failed edge is rolled back
        assert [n.name for n in g.order] == ["b", "a"]

    def test_order_tracks_new_listeners(self):
        log = []
        p = Parameter("p", 1.0)
        late = Node("late", log)
        g = ModelGraph()
        g.add(late)
        g.add(p)
        assert g.order == [late, p]
        p.add_listener(late)
        assert g.order == [p, late]


# ======================================================================== #
# Change routing                                                            #
# ======================================================================== #


class TestRouting:
    def test_topological_delivery(self):
        log = []
        p = Parameter("p", 1.0)
        second, first = Node("second", log), Node("first", log)
        p.add_listener(second)
        p.add_listener(first)
        g = ModelGraph()
        g.add(p)
        g.add(first)
        g.add(second, depends_on=[first])
        p.set_value(0, 2.0)
        assert log == [
            ("changed", "first", 0, ChangeKind.VALUE),
            ("changed", "second", 0, ChangeKind.VALUE),
        ]

    def test_notify(self):
        log = []
        src, dst = Node("src", log), Node("dst", log)
        src.changes.subscribe(dst)
        g = ModelGraph()
        g.add(src)
        g.add(dst)
        g.notify(src, 3, ChangeKind.HEIGHT)
        assert log == [("changed", "dst", 3, ChangeKind.HEIGHT)]

    def test_notify_without_emitter(self):
        ModelGraph().notify(object(), -1, ChangeKind.ALL)


# ======================================================================== #
# State protocol                                                            #
# ======================================================================== #


class TestStateProtocol:
    def _graph(self):
        log = []
        a, b = Node("a", log), Node("b", log)
        g = ModelGraph("mcmc")
        g.add(b, depends_on=[a])
        return g, log

    def test_store_in_order(self):
        g, log = self._graph()
        g.store_state()
        assert log == [("store", "a"), ("store", "b")]

    def test_restore_in_order(self):
        g, log = self._graph()
        g.store_state()
        g.restore_state()
        assert log[2:] == [("restore", "a"), ("restore", "b")]

    def test_aliases(self):
        g, log = self._graph()
        g.store_state()
        g.accept()
        g.store_state()
        g.reject()
        assert ("accept", "b") in log
        assert ("restore", "b") in log

    def test_double_store(self):
        g, _ = self._graph()
        g.store_state()
        with pytest.raises(StateError):
            g.store_state()

    def test_restore_error(self):
        log = []
        good, bad = Node("good", log), Broken("likelihood", log)
        g = ModelGraph()
        g.add(good)
        g.add(bad)
        g.store_state()
        with pytest.raises(RestoreError) as info:
            g.restore_state()
        assert info.value.component == "likelihood"
        assert isinstance(info.value.cause, ValueError)
        assert "buffers lost" in str(info.value)

    def test_columns(self):
        g, _ = self._graph()
        assert [c.name for c in g.columns()] == ["a", "b"]

    def test_store_failure_releases_stored(self):
        log = []
        good, bad = Node("good", log), BrokenStore("bad", log)
        g = ModelGraph()
        g.add(bad, depends_on=[good])
        with pytest.raises(MemoryError):
            g.store_state()
        assert log == [("store", "good"), ("accept", "good")]
        # neither the graph nor its members are left stored
        bad.fail = False
        g.store_state()
        g.restore_state()
        assert log[-2:] == [("restore", "good"), ("restore", "bad")]

    def test_store_failure_inside_propose(self):
        log = []
        good, bad = Node("good", log), BrokenStore("bad", log)
        g = ModelGraph()
        g.add(good)
        g.add(bad)
        with pytest.raises(MemoryError):
            with g.propose():
                pass
        assert ("restore", "good") not in log
        bad.fail = False
        with g.propose() as proposal:
            proposal.accept()
        assert log[-1] == ("accept", "bad")


# ======================================================================== #
# Unregistered listeners                                                    #
# ======================================================================== #


SEQUENCES = {"A": "ACGTAC", "B": "ACGTTC", "C": "TCGAAC", "D": "TCGAAG"}


def tree_and_likelihood():
    tm = TreeModel.from_newick("((A:1,B:1):1,(C:1,D:1):1);")
    patterns = SitePatterns.from_strings(SEQUENCES, "ACGT")
    lik = TreeLikelihood(patterns, tm, SiteModel(JukesCantor()), name="lik")
    return tm, lik


class TestUnregisteredListeners:
    def test_likelihood_missing_from_graph(self):
        tm, lik = tree_and_likelihood()
        original = lik.get_log_likelihood()
        g = ModelGraph()
        g.add(tm)
        with pytest.raises(StructuralError, match="'lik' listens to 'treeModel'"):
            with g.propose():
                tm.set_node_height(4, 1.7)
        # nothing was stored or changed
        assert tm.get_node_height(4) == 1.0
        assert lik.get_log_likelihood() == original

    def test_reject_after_adding_likelihood(self):
        tm, lik = tree_and_likelihood()
        original = lik.get_log_likelihood()
        g = ModelGraph()
        g.add(tm)
        g.add(lik)
        with g.propose() as proposal:
            tm.set_node_height(4, 1.7)
            assert lik.get_log_likelihood() != pytest.approx(original)
            proposal.reject()
        assert tm.get_node_height(4) == 1.0
        assert lik.get_log_likelihood() == original

    def test_plain_listener_allowed(self):
        class Watcher:
            def __init__(self):
                self.seen = []

            def on_changed(self, source, index, kind):
                self.seen.append((index, kind))

        p = Parameter("p", 1.0)
        watcher = Watcher()
        p.add_listener(watcher)
        g = ModelGraph()
        g.add(p)
        with g.propose() as proposal:
            p.set_value(0, 2.0)
            proposal.reject()
        assert watcher.seen == [(0, ChangeKind.VALUE)]
        assert p.get_value() == 1.0

    def test_stateful_parameter_listener(self):
        log = []
        p = Parameter("p", 1.0)
        listener = Node("watcher", log)
        p.add_listener(listener)
        g = ModelGraph()
        g.add(p)
        with pytest.raises(StructuralError, match="watcher"):
            g.store_state()
        g.add(listener)
        g.store_state()
        assert log == [("store", "watcher")]


# ======================================================================== #
# propose()                                                                 #
# ======================================================================== #


class TestPropose:
    def test_accept(self):
        p = Parameter("p", 1.0)
        g = ModelGraph()
        g.add(p)
        with g.propose() as proposal:
            p.set_value(0, 2.0)
            proposal.accept()
        assert p.get_value() == 2.0
        assert proposal.accepted is True

    def test_reject(self):
        p = Parameter("p", 1.0)
        g = ModelGraph()
        g.add(p)
        with g.propose() as proposal:
            p.set_value(0, 2.0)
            proposal.reject()
        assert p.get_value() == 1.0
        assert proposal.accepted is False

    def test_undecided_is_rejected(self):
        p = Parameter("p", 1.0)
        g = ModelGraph()
        g.add(p)
        with g.propose() as proposal:
            p.set_value(0, 2.0)
        assert p.get_value() == 1.0
        assert proposal.decided

    def test_exception_restores(self):
        p = Parameter("p", 1.0)
        g = ModelGraph()
        g.add(p)
        with pytest.raises(KeyError):
            with g.propose():
                p.set_value(0, 2.0)
                raise KeyError("boom")
        assert p.get_value() == 1.0
        # the graph is ready for the next proposal
        with g.propose() as proposal:
            proposal.accept()

    def test_decide_twice(self):
        g = ModelGraph()
        g.add(Parameter("p", 1.0))
        with pytest.raises(StateError, match="already decided"):
            with g.propose() as proposal:
                proposal.accept()
                proposal.reject()
