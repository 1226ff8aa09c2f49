"""Prefect flow and task wrappers for orchestration.

The orchestration itself is plain asyncio. The flow adds Prefect run
tracking around it; summary posting is a task so transient gh failures
are retried.
"""

import logging
from typing import Any, Callable, Iterable

from prefect import flow, task

from threadfix.lib.config import ResolverConfig
from threadfix.lib.github import GhCommentSink
from threadfix.lib.report import STATE_SKIPPED, OrchestrationReport, PRReport
from threadfix.notifications import notify_report
from threadfix.workflow.coordinator import Coordinator
from threadfix.workflow.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


@task(
    retries=2,
    retry_delay_seconds=5,
    name="post_summary",
    description="Post the resolution summary as a PR comment"
)
def task_post_summary(sink: GhCommentSink, pr_report: PRReport):
    """Post one PR summary, retried on gh failures."""
    sink.post(pr_report)


@flow(name="threadfix_resolve", validate_parameters=False)
async def resolve_prs(
    pr_ids: list[str],
    config: ResolverConfig,
    factory: Callable[..., Coordinator],
    *,
    tiers: list[list[str]] | None = None,
    sinks: Iterable[Any] = (),
    summary_sink: GhCommentSink | None = None,
    notify: bool = True,
) -> OrchestrationReport:
    """Resolve review threads across PRs according to config."""
    retry_policy = config.retry_policy
    orchestrator = Orchestrator(factory, sinks=sinks) if retry_policy is None \
        else Orchestrator(factory, sinks=sinks, retry_policy=retry_policy)

    report = await orchestrator.run(
        pr_ids,
        config.gating_strategy,
        config.failure_policy,
        config.concurrency_limit,
        tiers=tiers,
        tier_size=config.tier_size,
    )

    if summary_sink is not None and config.post_summary:
        for pr_report in report.prs:
            if pr_report.state == STATE_SKIPPED:
                continue
            state = task_post_summary(summary_sink, pr_report, return_state=True)
            if state.is_failed():
                logger.warning(f"[FLOW] Could not post summary to PR {pr_report.pr_id}")

    if notify:
        notify_report(report)

    return report
