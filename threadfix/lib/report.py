"""
Resolution reports.

A report lists, per PR, which threads were resolved, which failed (always
with a reason) and which were deferred. It renders as markdown for PR
comments and as JSON for tooling.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

STATE_SKIPPED = "skipped"  # PR never started (progressive halt or cancellation)


@dataclass
class ThreadReport:
    """One thread's line in a report."""
    thread_id: str
    location: str
    reason: str | None = None
    commit_ref: str | None = None
    attempts: int = 0


@dataclass
class PRReport:
    """Outcome of one PR resolution run."""
    pr_id: str
    state: str  # "done", "aborted" or "skipped"
    reason: str | None = None
    resolved: list[ThreadReport] = field(default_factory=list)
    failed: list[ThreadReport] = field(default_factory=list)
    deferred: list[ThreadReport] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state == "done" and not self.failed

    def to_markdown(self) -> str:
        """Render as a PR status comment."""
        lines = ["## Automated Resolution Summary", ""]

        if self.state != "done":
            lines.append(f"Run {self.state}: {self.reason or 'unknown reason'}")
            lines.append("")

        sections = [
            ("Resolved Threads", self.resolved),
            ("Failed Threads", self.failed),
            ("Deferred Threads", self.deferred),
        ]
        for title, items in sections:
            if not items:
                continue
            lines.append(f"### {title}")
            for item in items:
                detail = item.reason or (f"addressed in {item.commit_ref}" if item.commit_ref else "")
                suffix = f" - {detail}" if detail else ""
                lines.append(f"- [{item.thread_id}] {item.location}{suffix}")
            lines.append("")

        lines.append("### Status")
        if self.ok and not self.deferred:
            lines.append("All threads marked as resolved ✅")
        else:
            lines.append(
                f"{len(self.resolved)} resolved, {len(self.failed)} failed, "
                f"{len(self.deferred)} deferred"
            )
        return "\n".join(lines) + "\n"


@dataclass
class OrchestrationReport:
    """Report over every PR of an orchestration run."""
    strategy: str
    policy: str
    prs: list[PRReport] = field(default_factory=list)
    gate_open: bool | None = None  # Only set for batch gating

    @property
    def ok(self) -> bool:
        return all(pr.ok for pr in self.prs)

    def get(self, pr_id: str) -> PRReport:
        for pr in self.prs:
            if pr.pr_id == pr_id:
                return pr
        raise KeyError(pr_id)

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def to_markdown(self) -> str:
        parts = [f"# threadfix report ({self.strategy}, {self.policy})", ""]
        if self.gate_open is False:
            parts.append("Batch gate closed: no threads were resolved.")
            parts.append("")
        for pr in self.prs:
            parts.append(f"# PR {pr.pr_id} [{pr.state}]")
            parts.append(pr.to_markdown())
        return "\n".join(parts)


class StdoutSink:
    """Prints the markdown report."""

    def publish(self, report: OrchestrationReport) -> None:
        print(report.to_markdown())


class JsonFileSink:
    """Writes the report as JSON to a file."""

    def __init__(self, path: Path):
        self.path = path

    def publish(self, report: OrchestrationReport) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(report.to_json() + "\n")
        logger.info(f"Report written to {self.path}")
