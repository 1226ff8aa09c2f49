"""
Shared data types for threadfix.

This module contains the dataclasses and collaborator protocols used across
planning, execution and workflow modules to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple, Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from threadfix.lib.report import OrchestrationReport


@dataclass
class Reply:
    """A reply posted in a review thread."""
    author: str
    body: str
    created_at: str | None = None


@dataclass
class Thread:
    """A single review thread on a pull request.

    The id is assigned once by the review-data source and cannot be changed.
    """
    id: str
    path: str
    body: str
    author: str
    line: int | None = None
    is_resolved: bool = False
    is_outdated: bool = False
    replies: list[Reply] = field(default_factory=list)
    review_state: str | None = None  # "CHANGES_REQUESTED", "COMMENTED", ...
    priority: int | None = None  # From a "priority: N" annotation
    after: list[str] = field(default_factory=list)  # From "after: ID" annotations

    def __setattr__(self, name, value):
        if name == "id" and "id" in self.__dict__:
            raise AttributeError("Thread id is immutable")
        super().__setattr__(name, value)

    @property
    def location(self) -> str:
        return f"{self.path}:{self.line if self.line is not None else '?'}"


@dataclass
class ThreadFilters:
    """Filters applied when fetching threads."""
    unresolved_only: bool = True
    not_outdated: bool = True
    reviewer: str | None = None
    states: frozenset[str] = frozenset()

    def matches(self, thread: Thread) -> bool:
        if self.unresolved_only and thread.is_resolved:
            return False
        if self.not_outdated and thread.is_outdated:
            return False
        if self.reviewer and thread.author != self.reviewer:
            return False
        if self.states and (thread.review_state or "").upper() not in self.states:
            return False
        return True


class DependencyEdge(NamedTuple):
    """Thread `before` must complete before thread `after` starts."""
    before: str
    after: str


@dataclass
class Assignment:
    """Ordered thread ids handed to one worker."""
    worker_id: str
    thread_ids: list[str] = field(default_factory=list)


@dataclass
class Batch:
    """Assignments that may run concurrently."""
    index: int
    assignments: list[Assignment] = field(default_factory=list)

    @property
    def thread_ids(self) -> list[str]:
        return [tid for a in self.assignments for tid in a.thread_ids]


class OutcomeStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class Outcome:
    """Terminal result of processing one thread."""
    thread_id: str
    status: OutcomeStatus
    commit_ref: str | None = None
    reason: str | None = None
    attempts: int = 1

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED

    @classmethod
    def success(cls, thread_id: str, commit_ref: str | None) -> "Outcome":
        return cls(thread_id, OutcomeStatus.SUCCEEDED, commit_ref=commit_ref)

    @classmethod
    def failure(cls, thread_id: str, reason: str) -> "Outcome":
        return cls(thread_id, OutcomeStatus.FAILED, reason=reason)


class VerifyResult(NamedTuple):
    """Verifier verdict for one change."""
    passed: bool
    diagnostic: str = ""


# --- Collaborator protocols ---

class ReviewSource(Protocol):
    """Where threads come from and where replies/resolutions go."""

    def fetch_threads(self, pr_id: str, filters: ThreadFilters) -> list[Thread]: ...

    def reply_to_thread(self, pr_id: str, thread_id: str, body: str) -> None: ...

    def resolve_thread(self, pr_id: str, thread_id: str) -> None: ...


class ChangeApplier(Protocol):
    """Produces a reviewable change for a thread."""

    def apply(self, thread: Thread) -> str: ...

    def revert(self, change_ref: str) -> None: ...


class Verifier(Protocol):
    """Checks a change, e.g. by running the test suite."""

    def verify(self, change_ref: str) -> VerifyResult: ...


class ReportSink(Protocol):
    """Receives the final orchestration report."""

    def publish(self, report: "OrchestrationReport") -> None: ...
