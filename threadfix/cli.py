#!/usr/bin/env python3
"""threadfix CLI entrypoint."""

import sys
import argparse
import logging
from pathlib import Path

from threadfix.lib.config import FailurePolicy, GatingStrategy, SameFilePolicy, load_config
from threadfix.lib.errors import InvalidConfiguration
from threadfix.commands import check as cmd_check_module
from threadfix.commands import fetch as cmd_fetch_module
from threadfix.commands import plan as cmd_plan_module
from threadfix.commands import resolve as cmd_resolve_module
from threadfix.commands import run as cmd_run_module

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_config(args):
    """Load threadfix.env (from --config or the current directory) and apply flag overrides."""
    config = load_config(Path(args.config) if args.config else None)

    if args.repo:
        config.repo = args.repo
    if args.worktree:
        config.worktree = Path(args.worktree)
    if getattr(args, 'workers', None) is not None:
        config.worker_count = args.workers
    if getattr(args, 'concurrency', None) is not None:
        config.concurrency_limit = args.concurrency
    if getattr(args, 'timeout', None) is not None:
        config.worker_timeout = args.timeout if args.timeout > 0 else None
    if getattr(args, 'same_file', None):
        config.same_file_policy = SameFilePolicy(args.same_file)
    if getattr(args, 'reviewer', None):
        config.filters.reviewer = args.reviewer
    if getattr(args, 'include_outdated', False):
        config.filters.not_outdated = False
    return config


def _run_command(func, args) -> int:
    try:
        config = get_config(args)
    except InvalidConfiguration as e:
        print(f"ERROR: {e}")
        return 2
    return func(args, config)


def cmd_fetch(args):
    return _run_command(cmd_fetch_module.cmd_fetch, args)


def cmd_plan(args):
    return _run_command(cmd_plan_module.cmd_plan, args)


def cmd_run(args):
    return _run_command(cmd_run_module.cmd_run, args)


def cmd_resolve(args):
    return _run_command(cmd_resolve_module.cmd_resolve, args)


def cmd_check(args):
    return _run_command(cmd_check_module.cmd_check, args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='threadfix', description='Resolve PR review threads with agents')
    parser.add_argument('--config', '-c', help='Path to threadfix.env (default: ./threadfix.env)')
    parser.add_argument('--repo', '-R', help='Repository as owner/repo')
    parser.add_argument('--worktree', '-C', help='Checkout to work in ({pr} expands to the PR number)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # threadfix fetch
    p_fetch = subparsers.add_parser('fetch', help='List unresolved threads of a PR')
    p_fetch.add_argument('pr', help='PR number or owner/repo#N')
    p_fetch.add_argument('--json', action='store_true', help='Print threads as JSON')
    p_fetch.add_argument('--reviewer', help='Only threads from this reviewer')
    p_fetch.add_argument('--include-outdated', action='store_true', help='Include outdated threads')
    p_fetch.set_defaults(func=cmd_fetch)

    # threadfix plan
    p_plan = subparsers.add_parser('plan', help='Show dependencies and batches without running')
    p_plan.add_argument('pr', help='PR number or owner/repo#N')
    p_plan.add_argument('--workers', '-w', type=int, help='Worker count')
    p_plan.add_argument('--skip', action='append', metavar='THREAD_ID', help='Defer a thread (repeatable)')
    p_plan.add_argument('--reviewer', help='Only threads from this reviewer')
    p_plan.set_defaults(func=cmd_plan)

    # threadfix run
    p_run = subparsers.add_parser('run', help='Fix and resolve threads across PRs')
    p_run.add_argument('prs', nargs='*', help='PR numbers or owner/repo#N')
    p_run.add_argument('--manifest', '-m', help='YAML file listing PRs or tiers of PRs')
    p_run.add_argument('--strategy', choices=[s.value for s in GatingStrategy], help='Gating strategy')
    p_run.add_argument('--policy', choices=[p.value for p in FailurePolicy], help='Failure policy')
    p_run.add_argument('--concurrency', type=int, help='Max PRs executing at once')
    p_run.add_argument('--workers', '-w', type=int, help='Workers per PR')
    p_run.add_argument('--timeout', type=float, help='Seconds per thread (0 disables)')
    p_run.add_argument('--same-file', choices=[p.value for p in SameFilePolicy], help='Same-file policy')
    p_run.add_argument('--skip', action='append', metavar='THREAD_ID', help='Defer a thread (repeatable)')
    p_run.add_argument('--reviewer', help='Only threads from this reviewer')
    p_run.add_argument('--report-json', metavar='FILE', help='Also write the report as JSON')
    p_run.add_argument('--no-summary', action='store_true', help='Do not post summary comments')
    p_run.add_argument('--no-notify', action='store_true', help='No desktop notification')
    p_run.set_defaults(func=cmd_run)

    # threadfix resolve
    p_resolve = subparsers.add_parser('resolve', help='Resolve thread ids from a file or stdin')
    p_resolve.add_argument('pr', help='PR number or owner/repo#N')
    p_resolve.add_argument('source', nargs='?', help='JSON or text file, "-" for stdin (default)')
    p_resolve.add_argument('--reply', help='Reply with this text before resolving')
    p_resolve.set_defaults(func=cmd_resolve)

    # threadfix check
    p_check = subparsers.add_parser('check', help='Check gh, gh-pr-review, git and agent commands')
    p_check.set_defaults(func=cmd_check)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
