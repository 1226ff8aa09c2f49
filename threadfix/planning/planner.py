"""
Batch planner.

Splits a PR's threads into sequential batches of concurrent worker
assignments. Batches follow the dependency levels of the graph, so the plan
uses the minimum number of batches. Inside a batch, threads are spread over
workers by load, except that threads on the same file stick to the worker
that already has that file.

The result depends only on the input order, never on hashing or timing.
"""

import logging
from collections import defaultdict, deque
from typing import Iterable

from threadfix.lib.errors import CycleDetected, InvalidConfiguration
from threadfix.lib.types import Assignment, Batch, DependencyEdge, Thread
from threadfix.planning.dependencies import find_cycle

logger = logging.getLogger(__name__)


def worker_name(index: int) -> str:
    return f"worker-{index + 1}"


def plan(
    threads: list[Thread],
    edges: Iterable[DependencyEdge],
    worker_count: int,
) -> list[Batch]:
    """Plan batches for the given threads.

    Args:
        threads: Threads to place, in priority/insertion order
        edges: Dependency edges; edges to threads outside the list are ignored
        worker_count: Number of parallel workers per batch

    Returns:
        Batches in execution order (empty for no threads)

    Raises:
        InvalidConfiguration: If worker_count <= 0 or thread ids repeat
        CycleDetected: If edges contain a cycle
    """
    if worker_count <= 0:
        raise InvalidConfiguration(f"worker_count must be positive, got {worker_count}")
    if not threads:
        return []

    ids = [t.id for t in threads]
    if len(set(ids)) != len(ids):
        raise InvalidConfiguration("Thread ids must be unique within a plan")

    edges = list(edges)
    cycle = find_cycle(ids, edges)
    if cycle:
        raise CycleDetected(cycle)

    known = set(ids)
    deps: dict[str, set[str]] = {tid: set() for tid in ids}
    for edge in edges:
        if edge.before in known and edge.after in known:
            deps[edge.after].add(edge.before)

    path_of = {t.id: t.path for t in threads}
    placed: set[str] = set()
    remaining = ids
    batches: list[Batch] = []

    while remaining:
        ready = [tid for tid in remaining if deps[tid] <= placed]
        batch = _assign(len(batches), ready, path_of, worker_count)
        batches.append(batch)
        placed.update(ready)
        remaining = [tid for tid in remaining if tid not in placed]

    logger.info(f"[PLAN] {len(ids)} threads -> {len(batches)} batch(es) on {worker_count} worker(s)")
    return batches


def _assign(index: int, ready: list[str], path_of: dict[str, str], worker_count: int) -> Batch:
    """Greedy least-loaded assignment with same-file affinity."""
    queues: list[list[str]] = [[] for _ in range(worker_count)]
    file_owner: dict[str, int] = {}

    for tid in ready:
        path = path_of[tid]
        if path in file_owner:
            worker = file_owner[path]
        else:
            # min() returns the first minimum, so ties go to the lowest index
            worker = min(range(worker_count), key=lambda w: len(queues[w]))
            file_owner[path] = worker
        queues[worker].append(tid)

    return Batch(
        index=index,
        assignments=[
            Assignment(worker_name(w), queue) for w, queue in enumerate(queues) if queue
        ],
    )


def defer_dependents(
    threads: list[Thread],
    edges: Iterable[DependencyEdge],
    deferred_ids: Iterable[str],
) -> tuple[list[Thread], list[str]]:
    """Remove deferred threads and everything that transitively depends on them.

    Returns:
        (kept threads in input order, deferred ids in input order)
    """
    dependents: dict[str, list[str]] = defaultdict(list)
    for edge in edges:
        dependents[edge.before].append(edge.after)

    known = {t.id for t in threads}
    deferred = {tid for tid in deferred_ids if tid in known}
    queue = deque(deferred)
    while queue:
        for child in dependents[queue.popleft()]:
            if child in known and child not in deferred:
                deferred.add(child)
                queue.append(child)

    kept = [t for t in threads if t.id not in deferred]
    return kept, [t.id for t in threads if t.id in deferred]
