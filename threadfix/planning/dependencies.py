"""
Dependency analysis between review threads.

Rules:
- Threads on different files are independent.
- Threads on the same file are ordered only by explicit priority
  annotations (lower priority value first). Without annotations they stay
  independent and the file is reported as a conflict hint for the planner.
- Explicit `after:` annotations add edges.
- Any cycle is fatal for planning (CycleDetected).
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

from threadfix.lib.errors import CycleDetected
from threadfix.lib.types import DependencyEdge, Thread

logger = logging.getLogger(__name__)


@dataclass
class DependencyAnalysis:
    """Edges plus same-file conflict hints."""
    edges: set[DependencyEdge] = field(default_factory=set)
    conflicts: dict[str, list[str]] = field(default_factory=dict)  # path -> thread ids

    def dependencies_of(self, thread_id: str) -> list[str]:
        return sorted(e.before for e in self.edges if e.after == thread_id)


def find_cycle(nodes: list[str], edges: Iterable[DependencyEdge]) -> list[str] | None:
    """Return one cycle as [a, b, ..., a], or None if the graph is acyclic.

    Deterministic for a given node order. Edges touching unknown nodes are
    ignored.
    """
    known = set(nodes)
    order = {node: i for i, node in enumerate(nodes)}
    adjacency: dict[str, list[str]] = defaultdict(list)
    for edge in edges:
        if edge.before in known and edge.after in known:
            adjacency[edge.before].append(edge.after)
    for targets in adjacency.values():
        targets.sort(key=order.__getitem__)

    WHITE, GREY, BLACK = 0, 1, 2
    color = {node: WHITE for node in nodes}

    for root in nodes:
        if color[root] != WHITE:
            continue
        path = [root]
        stack = [iter(adjacency[root])]
        color[root] = GREY
        while stack:
            child = next(stack[-1], None)
            if child is None:
                color[path.pop()] = BLACK
                stack.pop()
                continue
            if color[child] == GREY:
                return path[path.index(child):] + [child]
            if color[child] == WHITE:
                color[child] = GREY
                path.append(child)
                stack.append(iter(adjacency[child]))

    return None


def analyze(threads: list[Thread]) -> DependencyAnalysis:
    """Build the dependency graph for a PR's threads.

    Raises:
        CycleDetected: If explicit annotations produce a cycle
    """
    analysis = DependencyAnalysis()
    ids = [t.id for t in threads]
    known = set(ids)

    by_path: dict[str, list[Thread]] = defaultdict(list)
    for thread in threads:
        by_path[thread.path].append(thread)

    for path, group in by_path.items():
        if len(group) < 2:
            continue

        levels: dict[int, list[str]] = defaultdict(list)
        for thread in group:
            if thread.priority is not None:
                levels[thread.priority].append(thread.id)

        ordered = sorted(levels)
        for lo, hi in zip(ordered, ordered[1:]):
            for before in levels[lo]:
                for after in levels[hi]:
                    analysis.edges.add(DependencyEdge(before, after))

        unannotated = [t.id for t in group if t.priority is None]
        shared_level = any(len(members) > 1 for members in levels.values())
        if unannotated or shared_level:
            analysis.conflicts[path] = [t.id for t in group]
            logger.debug(f"[DEPS] {path}: {len(group)} threads share the file without full ordering")

    for thread in threads:
        for dep in thread.after:
            if dep == thread.id:
                raise CycleDetected([thread.id, thread.id])
            if dep not in known:
                logger.warning(f"[DEPS] {thread.id}: ignoring dependency on unknown thread {dep}")
                continue
            analysis.edges.add(DependencyEdge(dep, thread.id))

    cycle = find_cycle(ids, analysis.edges)
    if cycle:
        raise CycleDetected(cycle)

    logger.info(
        f"[DEPS] {len(threads)} threads, {len(analysis.edges)} edges, "
        f"{len(analysis.conflicts)} shared file(s)"
    )
    return analysis
