"""
threadfix run - Fix, verify, reply to and resolve review threads across PRs.
"""

import asyncio
import logging
from pathlib import Path

from threadfix.lib.agents_config import load_agents_config
from threadfix.lib.config import FailurePolicy, GatingStrategy, ResolverConfig, load_manifest
from threadfix.lib.errors import InvalidConfiguration
from threadfix.lib.github import GhCommentSink, GhReviewSource, parse_pr_ref
from threadfix.lib.report import JsonFileSink, StdoutSink
from threadfix.runner.commands import (
    DEFAULT_AGENT_TIMEOUT,
    DEFAULT_TEST_TIMEOUT,
    CommandChangeApplier,
    CommandVerifier,
)
from threadfix.workflow.coordinator import Coordinator
from threadfix.workflow.flows import resolve_prs

logger = logging.getLogger(__name__)


def worktree_for(config: ResolverConfig, pr_id: str) -> Path:
    """Checkout for a PR. A "{pr}" in WORKTREE is replaced by the PR number."""
    text = str(config.worktree)
    if "{pr}" in text:
        _, number = parse_pr_ref(pr_id)
        return Path(text.replace("{pr}", str(number)))
    return config.worktree


def command_timeout(config: ResolverConfig, default: int) -> int:
    """Keep a blocking command inside the worker timeout so it ends with it."""
    if config.worker_timeout is None:
        return default
    return max(1, min(default, int(config.worker_timeout)))


def build_factory(config: ResolverConfig, source: GhReviewSource, skip_ids: list[str]):
    """Coordinator factory wiring the command-line collaborators per PR.

    Coordinators whose PRs map to the same checkout share one dispatch lock,
    so a thread's apply, verify and revert never overlap with another's.
    """
    dispatch_locks: dict[Path, asyncio.Lock] = {}

    def build(pr_id: str, *, retry_policy, cancel_event, on_outcome) -> Coordinator:
        worktree = worktree_for(config, pr_id)
        agents = load_agents_config(worktree)
        return Coordinator(
            pr_id,
            source,
            CommandChangeApplier(worktree, agents, timeout=command_timeout(config, DEFAULT_AGENT_TIMEOUT)),
            CommandVerifier(worktree, agents, timeout=command_timeout(config, DEFAULT_TEST_TIMEOUT)),
            config,
            retry_policy=retry_policy,
            cancel_event=cancel_event,
            on_outcome=on_outcome,
            skip_ids=skip_ids,
            dispatch_lock=dispatch_locks.setdefault(worktree.resolve(), asyncio.Lock()),
        )

    return build


def cmd_run(args, config: ResolverConfig) -> int:
    pr_ids = list(args.prs or [])
    tiers = None

    if args.manifest:
        try:
            manifest = load_manifest(Path(args.manifest))
        except InvalidConfiguration as e:
            print(f"ERROR: {e}")
            return 2
        pr_ids += manifest.prs
        tiers = manifest.tiers
        if manifest.strategy and not args.strategy:
            config.gating_strategy = manifest.strategy
        if manifest.policy and not args.policy:
            config.failure_policy = manifest.policy

    if args.strategy:
        config.gating_strategy = GatingStrategy(args.strategy)
    if args.policy:
        config.failure_policy = FailurePolicy(args.policy)

    if not pr_ids:
        print("ERROR: No PRs given. Pass PR numbers or --manifest")
        return 2
    if tiers is not None and args.prs:
        # Command-line PRs run as an extra final tier
        tiers = tiers + [list(args.prs)]

    try:
        for pr_id in pr_ids:
            parse_pr_ref(pr_id, config.repo)
        for pr_id in pr_ids:
            worktree = worktree_for(config, pr_id)
            if not worktree.is_dir():
                raise InvalidConfiguration(f"Worktree for PR {pr_id} not found: {worktree}")
    except InvalidConfiguration as e:
        print(f"ERROR: {e}")
        return 2

    source = GhReviewSource(config.repo, config.worktree if "{pr}" not in str(config.worktree) else None)
    sinks = [StdoutSink()]
    if args.report_json:
        sinks.append(JsonFileSink(Path(args.report_json)))
    summary_sink = None if args.no_summary else GhCommentSink(source)

    try:
        report = asyncio.run(resolve_prs(
            pr_ids,
            config,
            build_factory(config, source, args.skip or []),
            tiers=tiers,
            sinks=sinks,
            summary_sink=summary_sink,
            notify=not args.no_notify,
        ))
    except InvalidConfiguration as e:
        print(f"ERROR: {e}")
        return 2

    return 0 if report.ok else 1
