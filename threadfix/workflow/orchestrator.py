"""Multi-PR orchestrator.

Runs one Coordinator per PR under a gating strategy and a failure policy:

Gating:
- independent: every PR resolves as soon as its own execution finishes.
- batch: all PRs finish executing first; resolution happens only if no PR
  aborted and no thread failed anywhere (all or nothing).
- progressive: PRs run tier by tier; a tier starts only after the previous
  tier finished cleanly, otherwise the remaining tiers are skipped.

Failure policy:
- continue: record failures and keep going.
- fail-fast: the first aborted run or failed thread sets a shared cancel
  event; in-flight runs stop dispatching and abort, queued runs never start.
- retry: failed threads are re-submitted with exponential backoff, then
  handled as with continue.

The concurrency limit bounds how many runs research/plan/execute at once.
Waiting runs acquire the semaphore in submission order.
"""

import asyncio
import logging
from typing import Callable, Iterable, Protocol

from threadfix.lib.config import FailurePolicy, GatingStrategy, ResolverConfig, RetryPolicy
from threadfix.lib.errors import InvalidConfiguration
from threadfix.lib.report import STATE_SKIPPED, OrchestrationReport, PRReport
from threadfix.lib.types import ChangeApplier, Outcome, ReportSink, ReviewSource, Verifier
from threadfix.runner.worker import WorkerExecutor
from threadfix.workflow.coordinator import Coordinator
from threadfix.workflow.fsm import RunState

logger = logging.getLogger(__name__)

DEFAULT_RETRY_POLICY = RetryPolicy(max_attempts=3, base_delay=2.0)


class CoordinatorFactory(Protocol):
    def __call__(
        self,
        pr_id: str,
        *,
        retry_policy: RetryPolicy | None,
        cancel_event: asyncio.Event,
        on_outcome: Callable[[str, Outcome], None],
    ) -> Coordinator: ...


def chunk_tiers(pr_ids: list[str], tier_size: int) -> list[list[str]]:
    """Split PRs into consecutive tiers of tier_size."""
    if tier_size <= 0:
        raise InvalidConfiguration(f"tier_size must be positive, got {tier_size}")
    return [pr_ids[i:i + tier_size] for i in range(0, len(pr_ids), tier_size)]


class Orchestrator:
    """Drives several PR resolution runs."""

    def __init__(
        self,
        coordinator_factory: CoordinatorFactory,
        sinks: Iterable[ReportSink] = (),
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ):
        self.coordinator_factory = coordinator_factory
        self.sinks = list(sinks)
        self.retry_policy = retry_policy
        self.coordinators: dict[str, Coordinator] = {}
        self._cancel = asyncio.Event()
        self._semaphore: asyncio.Semaphore | None = None
        self._policy = FailurePolicy.CONTINUE

    async def run(
        self,
        pr_ids: Iterable[str],
        strategy: GatingStrategy = GatingStrategy.INDEPENDENT,
        failure_policy: FailurePolicy = FailurePolicy.CONTINUE,
        concurrency_limit: int = 2,
        *,
        tiers: list[list[str]] | None = None,
        tier_size: int = 1,
    ) -> OrchestrationReport:
        """Run every PR and return the combined report.

        Raises:
            InvalidConfiguration: If concurrency_limit or tier_size is not positive
        """
        if concurrency_limit <= 0:
            raise InvalidConfiguration(f"concurrency_limit must be positive, got {concurrency_limit}")

        if tiers is not None:
            pr_ids = [pr for tier in tiers for pr in tier]
        pr_ids = self._unique(pr_ids)
        if strategy == GatingStrategy.PROGRESSIVE:
            tiers = [self._unique(t) for t in tiers] if tiers is not None else chunk_tiers(pr_ids, tier_size)

        self._policy = failure_policy
        self._cancel = asyncio.Event()
        self._semaphore = asyncio.Semaphore(concurrency_limit)
        retry_policy = self.retry_policy if failure_policy == FailurePolicy.RETRY else None

        self.coordinators = {
            pr_id: self.coordinator_factory(
                pr_id,
                retry_policy=retry_policy,
                cancel_event=self._cancel,
                on_outcome=self._on_outcome,
            )
            for pr_id in pr_ids
        }

        logger.info(
            f"[ORCH] {len(pr_ids)} PR(s), strategy={strategy.value}, "
            f"policy={failure_policy.value}, concurrency={concurrency_limit}"
        )

        report = OrchestrationReport(strategy=strategy.value, policy=failure_policy.value)
        skipped: dict[str, str] = {}

        if strategy == GatingStrategy.INDEPENDENT:
            await asyncio.gather(*(self._run_independent(self.coordinators[pr]) for pr in pr_ids))
        elif strategy == GatingStrategy.BATCH:
            report.gate_open = await self._run_batch(pr_ids)
        else:
            skipped = await self._run_progressive(tiers)

        for pr_id in pr_ids:
            if pr_id in skipped:
                report.prs.append(PRReport(pr_id=pr_id, state=STATE_SKIPPED, reason=skipped[pr_id]))
            else:
                report.prs.append(self.coordinators[pr_id].report())

        self._publish(report)
        return report

    # --- Strategies ---

    async def _run_independent(self, coordinator: Coordinator) -> None:
        await self._prepare(coordinator)
        await coordinator.resolve()

    async def _run_batch(self, pr_ids: list[str]) -> bool:
        coordinators = [self.coordinators[pr] for pr in pr_ids]
        await asyncio.gather(*(self._prepare(c) for c in coordinators))

        gate_open = all(
            c.state == RunState.EXECUTING and not c.run_state.failed_ids for c in coordinators
        )
        if gate_open:
            logger.info("[ORCH] Batch gate open: resolving all PRs")
        else:
            logger.warning("[ORCH] Batch gate closed: no threads will be resolved")

        await asyncio.gather(*(c.resolve(withhold=not gate_open) for c in coordinators))
        return gate_open

    async def _run_progressive(self, tiers: list[list[str]]) -> dict[str, str]:
        skipped: dict[str, str] = {}
        halt_reason = None

        for number, tier in enumerate(tiers, 1):
            if halt_reason:
                for pr_id in tier:
                    skipped[pr_id] = halt_reason
                continue

            logger.info(f"[ORCH] Tier {number}/{len(tiers)}: {', '.join(tier)}")
            coordinators = [self.coordinators[pr] for pr in tier]
            await asyncio.gather(*(self._run_independent(c) for c in coordinators))

            failed = [c.pr_id for c in coordinators if not c.report().ok]
            if failed:
                halt_reason = f"tier {number} did not complete cleanly ({', '.join(failed)})"
                logger.warning(f"[ORCH] Halting: {halt_reason}")

        return skipped

    # --- Failure handling ---

    async def _prepare(self, coordinator: Coordinator) -> None:
        async with self._semaphore:
            await coordinator.prepare()
        if coordinator.state == RunState.ABORTED:
            self._fail_fast(f"PR {coordinator.pr_id} aborted: {coordinator.run_state.abort_reason}")

    def _on_outcome(self, pr_id: str, outcome: Outcome) -> None:
        if not outcome.succeeded:
            self._fail_fast(f"thread {outcome.thread_id} of PR {pr_id} failed")

    def _fail_fast(self, reason: str) -> None:
        if self._policy != FailurePolicy.FAIL_FAST or self._cancel.is_set():
            return
        logger.warning(f"[ORCH] Fail-fast: {reason}; cancelling in-flight runs")
        self._cancel.set()

    # --- Helpers ---

    def _publish(self, report: OrchestrationReport) -> None:
        for sink in self.sinks:
            try:
                sink.publish(report)
            except Exception as e:
                logger.error(f"[ORCH] Report sink {type(sink).__name__} failed: {e}")

    @staticmethod
    def _unique(pr_ids: Iterable[str]) -> list[str]:
        seen: list[str] = []
        for pr_id in pr_ids:
            pr_id = str(pr_id)
            if pr_id in seen:
                logger.warning(f"[ORCH] Ignoring duplicate PR {pr_id}")
                continue
            seen.append(pr_id)
        return seen


def coordinator_factory(
    source: ReviewSource,
    change_applier: ChangeApplier,
    verifier: Verifier,
    config: ResolverConfig | None = None,
    skip_ids: Iterable[str] = (),
    worker: WorkerExecutor | None = None,
) -> CoordinatorFactory:
    """Factory building Coordinators that share collaborators and config."""
    skip_ids = tuple(skip_ids)

    def build(pr_id: str, *, retry_policy, cancel_event, on_outcome) -> Coordinator:
        return Coordinator(
            pr_id,
            source,
            change_applier,
            verifier,
            config,
            worker=worker,
            retry_policy=retry_policy,
            cancel_event=cancel_event,
            on_outcome=on_outcome,
            skip_ids=skip_ids,
        )

    return build
