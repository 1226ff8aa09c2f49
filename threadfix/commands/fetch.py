"""
threadfix fetch - List the unresolved review threads of a PR.
"""

import json
from dataclasses import asdict

from threadfix.lib.config import ResolverConfig
from threadfix.lib.errors import NotFound, SourceUnavailable
from threadfix.lib.github import GhReviewSource
from threadfix.planning.threads import ThreadRepository

BODY_PREVIEW_LENGTH = 80


def cmd_fetch(args, config: ResolverConfig) -> int:
    """Print the threads that a run would work on."""
    repository = ThreadRepository(GhReviewSource(config.repo, config.worktree), args.pr)
    try:
        threads = repository.fetch(config.filters)
    except (SourceUnavailable, NotFound) as e:
        print(f"ERROR: {e}")
        return 1

    if args.json:
        print(json.dumps([asdict(t) for t in threads], indent=2))
        return 0

    print(f"Found {len(threads)} unresolved thread(s) on PR {args.pr}")
    for thread in threads:
        body = " ".join(thread.body.split())
        if len(body) > BODY_PREVIEW_LENGTH:
            body = body[:BODY_PREVIEW_LENGTH] + "..."
        print(f"  [{thread.id}] {thread.location} - {body}")
    return 0
