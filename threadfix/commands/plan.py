"""
threadfix plan - Show dependencies and the batch plan for a PR without running it.
"""

from threadfix.lib.config import ResolverConfig
from threadfix.lib.errors import CycleDetected, InvalidConfiguration, NotFound, SourceUnavailable
from threadfix.lib.github import GhReviewSource
from threadfix.planning.dependencies import analyze
from threadfix.planning.planner import defer_dependents, plan
from threadfix.planning.threads import ThreadRepository


def cmd_plan(args, config: ResolverConfig) -> int:
    repository = ThreadRepository(GhReviewSource(config.repo, config.worktree), args.pr)
    try:
        threads = repository.fetch(config.filters)
    except (SourceUnavailable, NotFound) as e:
        print(f"ERROR: {e}")
        return 1

    try:
        analysis = analyze(threads)
        kept, deferred = defer_dependents(threads, analysis.edges, set(args.skip or []))
        batches = plan(kept, analysis.edges, config.worker_count)
    except (CycleDetected, InvalidConfiguration) as e:
        print(f"ERROR: {e}")
        return 1

    print(f"PR {args.pr}: {len(threads)} thread(s), {len(batches)} batch(es), {config.worker_count} worker(s)")

    if analysis.edges:
        print("\nDependencies:")
        for edge in sorted(analysis.edges):
            print(f"  {edge.before} -> {edge.after}")

    if analysis.conflicts:
        print("\nShared files (run sequentially on one worker):")
        for path, ids in sorted(analysis.conflicts.items()):
            print(f"  {path}: {', '.join(ids)}")

    if deferred:
        print("\nDeferred:")
        for tid in deferred:
            print(f"  {tid}")

    for batch in batches:
        print(f"\nBatch {batch.index + 1}:")
        for assignment in batch.assignments:
            locations = [repository.get(tid).location for tid in assignment.thread_ids]
            print(f"  {assignment.worker_id}: " + ", ".join(
                f"{tid} ({loc})" for tid, loc in zip(assignment.thread_ids, locations)
            ))
    return 0
