"""
threadfix resolve - Resolve threads listed in a file or on stdin.

Accepts `gh pr-review review view` JSON, text with PRRT_ ids anywhere in it,
or one thread id per line.
"""

import sys
from pathlib import Path

from threadfix.lib.config import ResolverConfig
from threadfix.lib.errors import InvalidConfiguration, SourceUnavailable
from threadfix.lib.github import GhReviewSource, parse_pr_ref, parse_thread_ids


def cmd_resolve(args, config: ResolverConfig) -> int:
    try:
        parse_pr_ref(args.pr)
    except InvalidConfiguration as e:
        print(f"ERROR: {e}")
        return 2

    if args.source in (None, "-"):
        text = sys.stdin.read()
    else:
        path = Path(args.source)
        if not path.exists():
            print(f"ERROR: File not found: {path}")
            return 2
        text = path.read_text()

    thread_ids = parse_thread_ids(text)
    if not thread_ids:
        print("No thread ids found")
        return 0

    source = GhReviewSource(config.repo, config.worktree)
    failed = 0
    for thread_id in thread_ids:
        try:
            if args.reply:
                source.reply_to_thread(args.pr, thread_id, args.reply)
            source.resolve_thread(args.pr, thread_id)
        except SourceUnavailable as e:
            print(f"  ✗ {thread_id}: {e}")
            failed += 1
            continue
        print(f"  ✓ Resolved {thread_id}")

    print(f"\n{len(thread_ids) - failed}/{len(thread_ids)} thread(s) resolved")
    return 1 if failed else 0
