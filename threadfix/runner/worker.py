"""
Worker executor: apply, verify and (on failure) revert the fix for one thread.

Collaborators are blocking (they shell out to agents, git and test runners),
so they run in a thread pool while the event loop keeps other workers going.

Every failure mode ends as a failed Outcome. Only cancellation propagates.
"""

import asyncio
import functools
import logging
from concurrent.futures import Executor
from typing import Callable

from threadfix.lib.types import ChangeApplier, Outcome, Thread, Verifier, VerifyResult

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "Timeout"


class _InFlight:
    """The blocking call a worker is waiting on and the change it holds."""

    def __init__(self):
        self.stage: str | None = None
        self.future: asyncio.Future | None = None
        self.change_ref: str | None = None


class WorkerExecutor:
    """Processes one thread at a time for the coordinator."""

    def __init__(self, timeout: float | None = None, executor: Executor | None = None):
        """
        Args:
            timeout: Seconds allowed for apply + verify, None for no limit
            executor: Thread pool for blocking collaborators (loop default if None)
        """
        self.timeout = timeout
        self.executor = executor

    async def execute(self, thread: Thread, change_applier: ChangeApplier, verifier: Verifier) -> Outcome:
        """Apply and verify the fix for a thread.

        A change that fails verification is reverted before returning. On
        timeout the blocking call still running is waited out, so its change
        can be reverted and the caller's locks stay held until the checkout
        is quiet.
        """
        inflight = _InFlight()
        work = self._apply_and_verify(thread, change_applier, verifier, inflight)

        try:
            if self.timeout is None:
                return await work
            return await asyncio.wait_for(work, self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[WORKER] {thread.id}: timed out after {self.timeout}s")
            await self._settle(thread, inflight)
            if inflight.change_ref is not None:
                await self._revert(change_applier, inflight.change_ref, thread)
            return Outcome.failure(thread.id, TIMEOUT_REASON)

    async def _apply_and_verify(
        self,
        thread: Thread,
        change_applier: ChangeApplier,
        verifier: Verifier,
        inflight: _InFlight,
    ) -> Outcome:
        logger.info(f"[WORKER] {thread.id}: applying change for {thread.location}")
        try:
            change_ref = await self._call(change_applier.apply, thread, inflight=inflight, stage="apply")
        except Exception as e:
            logger.warning(f"[WORKER] {thread.id}: change applier failed: {e}")
            return Outcome.failure(thread.id, f"Change applier failed: {e}")
        inflight.change_ref = change_ref

        try:
            result = await self._call(verifier.verify, change_ref, inflight=inflight, stage="verify")
        except Exception as e:
            logger.warning(f"[WORKER] {thread.id}: verifier crashed: {e}")
            result = VerifyResult(False, f"Verifier crashed: {e}")

        inflight.change_ref = None
        if result.passed:
            logger.info(f"[WORKER] {thread.id}: verified ({change_ref})")
            return Outcome.success(thread.id, change_ref)

        reason = result.diagnostic or "Verification failed"
        revert_error = await self._revert(change_applier, change_ref, thread, inflight)
        if revert_error:
            reason = f"{reason} (revert failed: {revert_error})"
        return Outcome.failure(thread.id, reason)

    async def _settle(self, thread: Thread, inflight: _InFlight) -> None:
        """Wait for the abandoned blocking call and pick up a late change ref."""
        if inflight.future is None:
            return
        if not inflight.future.done():
            logger.info(f"[WORKER] {thread.id}: waiting for {inflight.stage} to finish")
        try:
            result = await inflight.future
        except Exception as e:
            logger.warning(f"[WORKER] {thread.id}: {inflight.stage} failed after timeout: {e}")
            return
        if inflight.stage == "apply":
            inflight.change_ref = result

    async def _revert(
        self,
        change_applier: ChangeApplier,
        change_ref: str,
        thread: Thread,
        inflight: _InFlight | None = None,
    ) -> str | None:
        """Revert a change. Returns an error message instead of raising."""
        logger.info(f"[WORKER] {thread.id}: reverting {change_ref}")
        try:
            await self._call(change_applier.revert, change_ref, inflight=inflight, stage="revert")
        except Exception as e:
            logger.error(f"[WORKER] {thread.id}: revert of {change_ref} failed: {e}")
            return str(e)
        return None

    async def _call(self, fn: Callable, *args, inflight: _InFlight | None = None, stage: str | None = None):
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self.executor, functools.partial(fn, *args))
        if inflight is not None:
            inflight.stage, inflight.future = stage, future
        # Shielded so a timeout leaves the future for _settle to await
        return await asyncio.shield(future)
