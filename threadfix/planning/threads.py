"""
Thread repository: the in-memory snapshot of one PR's review threads.

Threads are fetched once from a ReviewSource. Afterwards the snapshot only
changes through reply() and resolve(), which forward to the source first.

Ordering annotations are read from thread bodies:

    priority: 2
    after: PRRT_abc123, PRRT_def456

The inline form `threadfix:priority=2` is accepted as well.
"""

import logging
import re

from threadfix.lib.errors import SourceUnavailable, ThreadfixError
from threadfix.lib.types import Reply, ReviewSource, Thread, ThreadFilters

logger = logging.getLogger(__name__)

PRIORITY_PATTERN = re.compile(
    r'^\s*(?:threadfix:\s*priority\s*=|priority\s*:)\s*(-?\d+)\s*$',
    re.IGNORECASE | re.MULTILINE,
)
AFTER_PATTERN = re.compile(
    r'^\s*(?:threadfix:\s*after\s*=|after\s*:)[ \t]*([\w, \t-]+?)[ \t]*$',
    re.IGNORECASE | re.MULTILINE,
)


def parse_annotations(body: str) -> tuple[int | None, list[str]]:
    """Extract (priority, after_ids) from a thread body."""
    priority = None
    match = PRIORITY_PATTERN.search(body)
    if match:
        priority = int(match.group(1))

    after: list[str] = []
    for match in AFTER_PATTERN.finditer(body):
        for token in re.split(r'[,\s]+', match.group(1)):
            if token and token not in after:
                after.append(token)

    return priority, after


class ThreadRepository:
    """Threads of a single pull request."""

    def __init__(self, source: ReviewSource, pr_id: str):
        self.source = source
        self.pr_id = pr_id
        self._threads: dict[str, Thread] = {}

    @property
    def threads(self) -> list[Thread]:
        """Threads in fetch order."""
        return list(self._threads.values())

    def get(self, thread_id: str) -> Thread:
        return self._threads[thread_id]

    def fetch(self, filters: ThreadFilters | None = None) -> list[Thread]:
        """Fetch threads from the source and replace the snapshot.

        Raises:
            SourceUnavailable: If the source cannot be reached or fails unexpectedly
            NotFound: If the PR does not exist
        """
        filters = filters or ThreadFilters()
        fetched = self._fetch_from_source(filters)

        threads: dict[str, Thread] = {}
        for thread in fetched:
            if thread.id in threads:
                logger.warning(f"[THREADS] PR {self.pr_id}: duplicate thread id {thread.id}, keeping first")
                continue
            if not filters.matches(thread):
                continue
            if thread.priority is None and not thread.after:
                thread.priority, thread.after = parse_annotations(thread.body)
            threads[thread.id] = thread

        self._threads = threads
        logger.info(f"[THREADS] PR {self.pr_id}: {len(threads)} thread(s) after filtering")
        return self.threads

    def still_unresolved(self, thread_ids: list[str]) -> list[str]:
        """Re-fetch and return the given threads the source still shows as open.

        The snapshot is not replaced; listed threads are marked unresolved.
        """
        fetched = self._fetch_from_source(ThreadFilters(unresolved_only=True, not_outdated=False))
        open_ids = {t.id for t in fetched if not t.is_resolved}
        remaining = [tid for tid in thread_ids if tid in open_ids]
        for tid in remaining:
            if tid in self._threads:
                self._threads[tid].is_resolved = False
        return remaining

    def _fetch_from_source(self, filters: ThreadFilters) -> list[Thread]:
        try:
            return self.source.fetch_threads(self.pr_id, filters)
        except ThreadfixError:
            raise
        except Exception as e:
            raise SourceUnavailable(f"PR {self.pr_id}: {type(e).__name__}: {e}") from e

    def reply(self, thread_id: str, body: str, author: str = "threadfix") -> None:
        """Post a reply, then record it on the local thread."""
        thread = self._threads[thread_id]
        self.source.reply_to_thread(self.pr_id, thread_id, body)
        thread.replies.append(Reply(author=author, body=body))

    def resolve(self, thread_id: str) -> None:
        """Resolve a thread, then mark it resolved locally."""
        thread = self._threads[thread_id]
        self.source.resolve_thread(self.pr_id, thread_id)
        thread.is_resolved = True
