"""Tests for threadfix.planning.planner."""

import random

import pytest

from threadfix.lib.errors import CycleDetected, InvalidConfiguration
from threadfix.lib.types import DependencyEdge
from threadfix.planning.dependencies import analyze
from threadfix.planning.planner import defer_dependents, plan

from fakes import make_thread


def batch_of(batches) -> dict[str, int]:
    return {tid: b.index for b in batches for tid in b.thread_ids}


def random_dag(seed: int, min_edges: int = 0):
    """Threads over a few files plus random forward edges (always acyclic)."""
    rng = random.Random(seed)
    count = rng.randint(2 if min_edges else 1, 25)
    threads = [make_thread(f"t{i}", path=f"f{rng.randint(0, 5)}.py") for i in range(count)]
    edges = set()
    for _ in range(rng.randint(min_edges, count * 2)):
        a, b = sorted(rng.sample(range(count), 2)) if count > 1 else (0, 0)
        if a != b:
            edges.add(DependencyEdge(f"t{a}", f"t{b}"))
    rng.shuffle(threads)
    return threads, edges


class TestPlanBasics:
    def test_empty_input(self):
        assert plan([], [], 3) == []

    @pytest.mark.parametrize("workers", [0, -2])
    def test_rejects_non_positive_workers(self, workers):
        with pytest.raises(InvalidConfiguration):
            plan([make_thread("a")], [], workers)

    def test_rejects_duplicate_ids(self):
        with pytest.raises(InvalidConfiguration):
            plan([make_thread("a"), make_thread("a")], [], 2)

    def test_cycle_raises(self):
        threads = [make_thread("a", path="a.py"), make_thread("b", path="b.py")]
        with pytest.raises(CycleDetected):
            plan(threads, [DependencyEdge("a", "b"), DependencyEdge("b", "a")], 2)

    def test_independent_threads_fit_one_batch(self):
        threads = [make_thread(t, path=f"{t}.py") for t in "abcd"]
        batches = plan(threads, [], 2)
        assert len(batches) == 1
        assert [(a.worker_id, a.thread_ids) for a in batches[0].assignments] == [
            ("worker-1", ["a", "c"]),
            ("worker-2", ["b", "d"]),
        ]

    def test_same_file_threads_share_a_worker(self):
        threads = [
            make_thread("a", path="x.py"),
            make_thread("b", path="y.py"),
            make_thread("c", path="x.py"),
        ]
        assignments = plan(threads, [], 2)[0].assignments
        assert assignments[0].thread_ids == ["a", "c"]
        assert assignments[1].thread_ids == ["b"]

    def test_more_workers_than_threads(self):
        batches = plan([make_thread("a")], [], 5)
        assert len(batches[0].assignments) == 1

    def test_chain_needs_one_batch_per_level(self):
        threads = [make_thread(t, path=f"{t}.py") for t in "abc"]
        edges = [DependencyEdge("a", "b"), DependencyEdge("b", "c")]
        assert [b.thread_ids for b in plan(threads, edges, 4)] == [["a"], ["b"], ["c"]]

    def test_edges_outside_thread_set_are_ignored(self):
        batches = plan([make_thread("a")], [DependencyEdge("gone", "a")], 1)
        assert batches[0].thread_ids == ["a"]

    def test_deterministic(self):
        threads, edges = random_dag(42)
        assert plan(threads, edges, 3) == plan(threads, edges, 3)


class TestPlanProperties:
    """Checked over generated dependency graphs."""

    @pytest.mark.parametrize("seed", range(30))
    def test_batches_cover_input_exactly_once(self, seed):
        threads, edges = random_dag(seed)
        ids = [tid for b in plan(threads, edges, 3) for tid in b.thread_ids]
        assert sorted(ids) == sorted(t.id for t in threads)
        assert len(ids) == len(set(ids))

    @pytest.mark.parametrize("seed", range(30))
    def test_dependencies_land_in_earlier_batches(self, seed):
        threads, edges = random_dag(seed)
        index = batch_of(plan(threads, edges, 2))
        for edge in edges:
            assert index[edge.after] > index[edge.before]

    @pytest.mark.parametrize("seed", range(10))
    def test_added_back_edge_yields_cycle(self, seed):
        threads, edges = random_dag(seed, min_edges=1)
        assert edges
        first = sorted(edges)[0]
        with pytest.raises(CycleDetected):
            plan(threads, edges | {DependencyEdge(first.after, first.before)}, 2)


class TestPlanScenario:
    def test_shared_file_dependency_with_independent_threads(self):
        """Two threads follow a third in the same file; three more are on other files."""
        threads = [
            make_thread("base", path="core.py", priority=1),
            make_thread("dep1", path="core.py", priority=2),
            make_thread("dep2", path="core.py", priority=2),
            make_thread("x", path="x.py"),
            make_thread("y", path="y.py"),
            make_thread("z", path="z.py"),
        ]
        analysis = analyze(threads)
        batches = plan(threads, analysis.edges, 2)
        index = batch_of(batches)

        assert len(batches) >= 2
        assert index["base"] == 0
        assert index["dep1"] >= 1
        assert index["dep2"] >= 1
        assert {index["x"], index["y"], index["z"]} == {0}


class TestDeferDependents:
    def test_defers_transitively(self):
        threads = [make_thread(t, path=f"{t}.py") for t in "abcd"]
        edges = [DependencyEdge("a", "b"), DependencyEdge("b", "c")]
        kept, deferred = defer_dependents(threads, edges, {"a"})
        assert [t.id for t in kept] == ["d"]
        assert deferred == ["a", "b", "c"]

    def test_unknown_ids_are_ignored(self):
        threads = [make_thread("a")]
        kept, deferred = defer_dependents(threads, [], {"zzz"})
        assert [t.id for t in kept] == ["a"]
        assert deferred == []
