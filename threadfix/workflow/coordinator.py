"""Per-PR coordinator.

Owns one PRResolutionRun from fetch to resolution:

    researching  fetch threads from the review source
    planning     dependency analysis + batch planning
    executing    batches in order, assignments of a batch in parallel
    resolving    reply to and resolve every thread whose fix succeeded
    done / aborted

Workers only return Outcomes; the coordinator is the single writer of run
state. Everything runs on one event loop, so no locks guard the run itself.

The orchestrator may call prepare() and resolve() separately to hold
resolution behind a cross-PR gate. run() does both.
"""

import asyncio
import contextlib
import functools
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable

from threadfix.lib.config import ResolverConfig, RetryPolicy, SameFilePolicy
from threadfix.lib.errors import CycleDetected, InvalidConfiguration, NotFound, SourceUnavailable
from threadfix.lib.report import PRReport, ThreadReport
from threadfix.lib.types import (
    Assignment,
    Batch,
    ChangeApplier,
    Outcome,
    ReviewSource,
    Thread,
    Verifier,
)
from threadfix.planning.dependencies import DependencyAnalysis, analyze
from threadfix.planning.planner import defer_dependents, plan
from threadfix.planning.threads import ThreadRepository
from threadfix.runner.worker import WorkerExecutor
from threadfix.workflow.fsm import RunFSM, RunState

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"
STILL_UNRESOLVED_REASON = "still unresolved"


@dataclass
class PRResolutionRun:
    """State of one PR's resolution, owned by its Coordinator."""
    pr_id: str
    threads: list[Thread] = field(default_factory=list)
    analysis: DependencyAnalysis | None = None
    batches: list[Batch] = field(default_factory=list)
    batch_index: int = 0
    outcomes: dict[str, Outcome] = field(default_factory=dict)
    deferred: dict[str, str] = field(default_factory=dict)  # thread id -> reason
    resolved: list[str] = field(default_factory=list)
    resolution_errors: dict[str, str] = field(default_factory=dict)
    abort_reason: str | None = None
    withheld: bool = False
    dispatch_count: int = 0

    def status_of(self, thread_id: str) -> str:
        """Return pending, succeeded, failed or deferred."""
        if thread_id in self.outcomes:
            return self.outcomes[thread_id].status.value
        if thread_id in self.deferred:
            return "deferred"
        return "pending"

    @property
    def succeeded_ids(self) -> list[str]:
        return [t.id for t in self.threads if t.id in self.outcomes and self.outcomes[t.id].succeeded]

    @property
    def failed_ids(self) -> list[str]:
        return [t.id for t in self.threads if t.id in self.outcomes and not self.outcomes[t.id].succeeded]

    @property
    def commit_refs(self) -> list[str]:
        return [self.outcomes[tid].commit_ref for tid in self.succeeded_ids if self.outcomes[tid].commit_ref]


class Coordinator:
    """Drives a single PR through research, planning, execution and resolution."""

    def __init__(
        self,
        pr_id: str,
        source: ReviewSource,
        change_applier: ChangeApplier,
        verifier: Verifier,
        config: ResolverConfig | None = None,
        *,
        worker: WorkerExecutor | None = None,
        retry_policy: RetryPolicy | None = None,
        cancel_event: asyncio.Event | None = None,
        on_outcome: Callable[[str, Outcome], None] | None = None,
        skip_ids: Iterable[str] = (),
        dispatch_lock: asyncio.Lock | None = None,
    ):
        """
        Args:
            dispatch_lock: Held around every worker execution. Shared by runs
                whose collaborators act on the same checkout.
        """
        self.config = config or ResolverConfig()
        self.pr_id = pr_id
        self.change_applier = change_applier
        self.verifier = verifier
        self.repository = ThreadRepository(source, pr_id)
        self.worker = worker or WorkerExecutor(timeout=self.config.worker_timeout)
        self.retry_policy = retry_policy
        self.cancel_event = cancel_event
        self.on_outcome = on_outcome
        self.skip_ids = set(skip_ids)
        self.dispatch_lock = dispatch_lock

        self.run_state = PRResolutionRun(pr_id)
        self.fsm = RunFSM(pr_id)
        self._file_locks: dict[str, asyncio.Lock] = {}

    @property
    def state(self) -> RunState:
        return self.fsm.current

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    # --- Lifecycle ---

    async def run(self) -> PRResolutionRun:
        """Research, plan, execute and resolve."""
        await self.prepare()
        if not self.fsm.is_terminal:
            await self.resolve()
        return self.run_state

    async def prepare(self) -> None:
        """Run up to the end of execution.

        Leaves the run in `executing` with every batch finished, or in
        `aborted`.
        """
        if self.state != RunState.RESEARCHING:
            logger.debug(f"[COORD] {self.pr_id}: prepare() called in {self.state.value}, ignoring")
            return

        if self.cancelled:
            self._abort(CANCELLED_REASON)
            return

        try:
            threads = await self._blocking(self.repository.fetch, self.config.filters)
        except (SourceUnavailable, NotFound, InvalidConfiguration) as e:
            self._abort(f"{type(e).__name__}: {e}")
            return
        self.run_state.threads = threads
        self.fsm.transition_to(RunState.PLANNING, reason=f"{len(threads)} threads")

        try:
            analysis = analyze(threads)
            kept, deferred = defer_dependents(threads, analysis.edges, self.skip_ids)
            batches = plan(kept, analysis.edges, self.config.worker_count)
        except (CycleDetected, InvalidConfiguration) as e:
            self._abort(f"{type(e).__name__}: {e}")
            return

        for tid in deferred:
            self.run_state.deferred[tid] = (
                "skipped by request" if tid in self.skip_ids else "depends on a skipped thread"
            )
        self.run_state.analysis = analysis
        self.run_state.batches = batches
        self.fsm.transition_to(RunState.EXECUTING, reason=f"{len(batches)} batches")

        await self._execute()

        if self.cancelled:
            self._abort(CANCELLED_REASON)

    async def resolve(self, withhold: bool = False) -> None:
        """Reply to and resolve succeeded threads, then finish.

        Args:
            withhold: Skip all reply/resolve calls (closed batch gate)
        """
        if self.fsm.is_terminal:
            return
        if self.cancelled:
            self._abort(CANCELLED_REASON)
            return

        self.fsm.transition_to(RunState.RESOLVING)
        if withhold:
            self.run_state.withheld = True
            logger.info(f"[COORD] {self.pr_id}: resolution withheld")
        else:
            for tid in self.run_state.succeeded_ids:
                await self.resolve_thread(tid)
            if self.config.verify_resolution and self.run_state.resolved:
                await self._verify_resolution()
        self.fsm.transition_to(RunState.DONE)

    async def resolve_thread(self, thread_id: str) -> bool:
        """Reply to and resolve one succeeded thread.

        Idempotent: a thread already resolved by this run triggers no calls.
        Returns True if the thread ends up resolved.
        """
        if thread_id in self.run_state.resolved:
            return True
        outcome = self.run_state.outcomes.get(thread_id)
        if outcome is None or not outcome.succeeded:
            return False

        thread = self.repository.get(thread_id)
        if thread.is_resolved:
            self.run_state.resolved.append(thread_id)
            return True

        body = self._reply_body(outcome)
        try:
            await self._blocking(self.repository.reply, thread_id, body)
            await self._blocking(self.repository.resolve, thread_id)
        except Exception as e:
            logger.error(f"[COORD] {self.pr_id}: could not resolve {thread_id}: {e}")
            self.run_state.resolution_errors[thread_id] = f"resolve: {e}"
            return False

        self.run_state.resolution_errors.pop(thread_id, None)
        self.run_state.resolved.append(thread_id)
        logger.info(f"[COORD] {self.pr_id}: resolved {thread_id}")
        return True

    async def _verify_resolution(self) -> None:
        """Re-fetch and fail resolved threads the source still shows as open."""
        resolved = self.run_state.resolved
        try:
            remaining = await self._blocking(self.repository.still_unresolved, list(resolved))
        except (SourceUnavailable, NotFound) as e:
            logger.warning(f"[COORD] {self.pr_id}: could not verify resolution: {e}")
            return
        for tid in remaining:
            logger.error(f"[COORD] {self.pr_id}: {tid} is still unresolved after resolving")
            resolved.remove(tid)
            self.run_state.resolution_errors[tid] = STILL_UNRESOLVED_REASON
        if not remaining:
            logger.info(f"[COORD] {self.pr_id}: verified {len(resolved)} resolution(s)")

    # --- Execution ---

    async def _execute(self) -> None:
        for batch in self.run_state.batches:
            if self.cancelled:
                logger.info(f"[COORD] {self.pr_id}: cancelled before batch {batch.index + 1}")
                return
            self.run_state.batch_index = batch.index
            logger.info(
                f"[COORD] {self.pr_id}: batch {batch.index + 1}/{len(self.run_state.batches)} "
                f"({len(batch.thread_ids)} threads, {len(batch.assignments)} workers)"
            )
            await self._run_batch(batch)
            if self.retry_policy:
                await self._retry_failed(batch)

    async def _run_batch(self, batch: Batch) -> None:
        # Barrier: every assignment finishes before the next batch starts
        await asyncio.gather(*(self._run_assignment(a) for a in batch.assignments))

    async def _run_assignment(self, assignment: Assignment) -> None:
        for tid in assignment.thread_ids:
            if self.cancelled:
                return
            blocker = self._unmet_dependency(tid)
            if blocker:
                self.run_state.deferred[tid] = f"dependency {blocker} did not succeed"
                logger.info(f"[COORD] {self.pr_id}: deferring {tid}, {blocker} did not succeed")
                continue
            outcome = await self._dispatch(self.repository.get(tid))
            self._record(outcome)

    async def _dispatch(self, thread: Thread) -> Outcome:
        self.run_state.dispatch_count += 1
        async with contextlib.AsyncExitStack() as locks:
            # Always file lock first, then the shared dispatch lock
            if self.config.same_file_policy == SameFilePolicy.SERIALIZE:
                await locks.enter_async_context(self._file_locks.setdefault(thread.path, asyncio.Lock()))
            if self.dispatch_lock is not None:
                await locks.enter_async_context(self.dispatch_lock)
            return await self.worker.execute(thread, self.change_applier, self.verifier)

    async def _retry_failed(self, batch: Batch) -> None:
        policy = self.retry_policy
        for attempt in range(1, policy.max_attempts):
            failed = {tid for tid in batch.thread_ids if self.run_state.status_of(tid) == "failed"}
            if not failed or self.cancelled:
                return
            delay = policy.delay_for(attempt)
            logger.info(
                f"[COORD] {self.pr_id}: retrying {len(failed)} thread(s) in {delay:.1f}s "
                f"(attempt {attempt + 1}/{policy.max_attempts})"
            )
            await asyncio.sleep(delay)
            retry = Batch(
                index=batch.index,
                assignments=[
                    Assignment(a.worker_id, [tid for tid in a.thread_ids if tid in failed])
                    for a in batch.assignments
                    if any(tid in failed for tid in a.thread_ids)
                ],
            )
            await self._run_batch(retry)

    def _unmet_dependency(self, thread_id: str) -> str | None:
        analysis = self.run_state.analysis
        if analysis is None:
            return None
        for dep in analysis.dependencies_of(thread_id):
            if self.run_state.status_of(dep) != "succeeded":
                return dep
        return None

    def _record(self, outcome: Outcome) -> None:
        previous = self.run_state.outcomes.get(outcome.thread_id)
        if previous is not None:
            outcome.attempts = previous.attempts + 1
        self.run_state.outcomes[outcome.thread_id] = outcome
        if not outcome.succeeded:
            logger.warning(f"[COORD] {self.pr_id}: {outcome.thread_id} failed: {outcome.reason}")
        if self.on_outcome:
            self.on_outcome(self.pr_id, outcome)

    # --- Helpers ---

    def _abort(self, reason: str) -> None:
        self.run_state.abort_reason = reason
        logger.warning(f"[COORD] {self.pr_id}: aborting: {reason}")
        self.fsm.transition_to(RunState.ABORTED, reason=reason)

    def _reply_body(self, outcome: Outcome) -> str:
        try:
            return self.config.reply_template.format(
                commit_ref=outcome.commit_ref or "",
                thread_id=outcome.thread_id,
            )
        except (KeyError, IndexError, ValueError):
            logger.warning("[COORD] Bad REPLY_TEMPLATE, using it verbatim")
            return self.config.reply_template

    async def _blocking(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.worker.executor, functools.partial(fn, *args))

    # --- Reporting ---

    def report(self) -> PRReport:
        """Build the per-thread report for this run."""
        run = self.run_state
        report = PRReport(pr_id=self.pr_id, state=self.fsm.state, reason=run.abort_reason)

        for thread in run.threads:
            tid = thread.id
            outcome = run.outcomes.get(tid)
            attempts = outcome.attempts if outcome else 0
            commit_ref = outcome.commit_ref if outcome else None

            if tid in run.resolved:
                report.resolved.append(ThreadReport(tid, thread.location, commit_ref=commit_ref, attempts=attempts))
            elif outcome is not None and not outcome.succeeded:
                report.failed.append(ThreadReport(tid, thread.location, reason=outcome.reason, attempts=attempts))
            elif tid in run.resolution_errors:
                report.failed.append(ThreadReport(
                    tid, thread.location,
                    reason=run.resolution_errors[tid],
                    commit_ref=commit_ref, attempts=attempts,
                ))
            elif outcome is not None:
                reason = (
                    "resolution withheld by batch gate" if run.withheld
                    else f"not resolved ({run.abort_reason or 'run incomplete'})"
                )
                report.deferred.append(ThreadReport(tid, thread.location, reason=reason, commit_ref=commit_ref, attempts=attempts))
            else:
                reason = run.deferred.get(tid) or run.abort_reason or "not started"
                report.deferred.append(ThreadReport(tid, thread.location, reason=reason))

        return report
