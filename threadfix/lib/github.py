"""
GitHub integration through the gh CLI and the gh-pr-review extension.

GhReviewSource implements ReviewSource:

    gh pr-review review view -R owner/repo --pr N --unresolved --not_outdated
    gh pr-review comments reply N -R owner/repo --thread-id ID --body TEXT
    gh pr-review threads resolve N -R owner/repo --thread-id ID

PR identifiers are "N", "#N" or "owner/repo#N". Without an explicit repo gh
infers it from the current checkout.
"""

import json
import logging
import re
import subprocess
from pathlib import Path

from threadfix.lib.errors import InvalidConfiguration, NotFound, SourceUnavailable
from threadfix.lib.types import Reply, Thread, ThreadFilters
from threadfix.lib.validate import ValidationError, validate

logger = logging.getLogger(__name__)

# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30

PR_REVIEW_EXTENSION = "agynio/gh-pr-review"

PR_REF_PATTERN = re.compile(r'^(?:(?P<repo>[\w.-]+/[\w.-]+)#|#)?(?P<number>\d+)$')
THREAD_ID_PATTERN = re.compile(r'PRRT_[A-Za-z0-9_-]+')

_NOT_FOUND_MARKERS = ("could not resolve to a pullrequest", "not found", "no pull requests found")


def parse_pr_ref(pr_id: str, default_repo: str | None = None) -> tuple[str | None, int]:
    """Split a PR identifier into (repo, number).

    Raises:
        InvalidConfiguration: If pr_id is not N, #N or owner/repo#N
    """
    match = PR_REF_PATTERN.match(str(pr_id).strip())
    if not match:
        raise InvalidConfiguration(f"Invalid PR identifier: {pr_id!r} (expected N or owner/repo#N)")
    return match.group("repo") or default_repo, int(match.group("number"))


def threads_from_review_view(data: dict) -> list[Thread]:
    """Map `gh pr-review review view` JSON to Threads, in output order.

    Raises:
        ValidationError: If data does not match the expected shape
    """
    validate(data, "review_view")

    threads = []
    for review in data["reviews"]:
        state = review.get("state")
        for comment in review.get("comments") or []:
            replies = [
                Reply(
                    author=c.get("author_login") or "",
                    body=c.get("body", ""),
                    created_at=c.get("created_at"),
                )
                for c in comment.get("thread_comments") or []
            ]
            threads.append(Thread(
                id=comment["thread_id"],
                path=comment["path"],
                body=comment["body"],
                author=comment.get("author_login") or review.get("author_login") or "",
                line=comment.get("line"),
                is_resolved=comment.get("is_resolved", False),
                is_outdated=comment.get("is_outdated", False),
                replies=replies,
                review_state=state,
            ))
    return threads


def parse_thread_ids(text: str) -> list[str]:
    """Extract thread ids from review-view JSON, free text or one id per line."""
    ids: list[str] = []
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict):
        for review in data.get("reviews") or []:
            for comment in review.get("comments") or []:
                if comment.get("thread_id"):
                    ids.append(comment["thread_id"])
    else:
        ids = THREAD_ID_PATTERN.findall(text)
        if not ids:
            ids = [
                line.strip() for line in text.splitlines()
                if line.strip() and not line.strip().startswith("#")
            ]

    return list(dict.fromkeys(ids))


class GhReviewSource:
    """ReviewSource backed by `gh pr-review`."""

    def __init__(self, repo: str | None = None, cwd: Path | None = None, timeout: int = GH_TIMEOUT_SECONDS):
        self.repo = repo
        self.cwd = cwd
        self.timeout = timeout

    def fetch_threads(self, pr_id: str, filters: ThreadFilters) -> list[Thread]:
        """
        Raises:
            NotFound: If gh reports the PR does not exist
            SourceUnavailable: On any other gh failure or malformed output
        """
        repo, number = parse_pr_ref(pr_id, self.repo)
        args = ["pr-review", "review", "view", *self._repo_args(repo), "--pr", str(number)]
        if filters.unresolved_only:
            args.append("--unresolved")
        if filters.not_outdated:
            args.append("--not_outdated")
        if filters.reviewer:
            args += ["--reviewer", filters.reviewer]
        if filters.states:
            args += ["--states", ",".join(sorted(filters.states))]

        result = self._run_gh(args)
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if any(marker in stderr.lower() for marker in _NOT_FOUND_MARKERS):
                raise NotFound(f"PR {pr_id}: {stderr}")
            raise SourceUnavailable(f"gh pr-review failed for PR {pr_id}: {stderr}")

        try:
            data = json.loads(result.stdout or "{}")
            threads = threads_from_review_view(data)
        except json.JSONDecodeError:
            raise SourceUnavailable(f"Invalid JSON from gh pr-review for PR {pr_id}") from None
        except ValidationError as e:
            raise SourceUnavailable(f"Unexpected gh pr-review output for PR {pr_id}: {e}") from None

        logger.debug(f"[GH] PR {pr_id}: {len(threads)} thread(s) from gh")
        return threads

    def reply_to_thread(self, pr_id: str, thread_id: str, body: str) -> None:
        repo, number = parse_pr_ref(pr_id, self.repo)
        self._check(self._run_gh([
            "pr-review", "comments", "reply", str(number), *self._repo_args(repo),
            "--thread-id", thread_id, "--body", body,
        ]), f"reply to {thread_id}")

    def resolve_thread(self, pr_id: str, thread_id: str) -> None:
        repo, number = parse_pr_ref(pr_id, self.repo)
        self._check(self._run_gh([
            "pr-review", "threads", "resolve", str(number), *self._repo_args(repo),
            "--thread-id", thread_id,
        ]), f"resolve {thread_id}")

    def post_comment(self, pr_id: str, body: str) -> None:
        """Post a top-level PR comment."""
        repo, number = parse_pr_ref(pr_id, self.repo)
        self._check(self._run_gh(
            ["pr", "comment", str(number), *self._repo_args(repo), "--body", body]
        ), f"comment on PR {pr_id}")

    @staticmethod
    def _repo_args(repo: str | None) -> list[str]:
        return ["-R", repo] if repo else []

    def _run_gh(self, args: list[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["gh", *args],
                capture_output=True,
                text=True,
                cwd=str(self.cwd) if self.cwd else None,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise SourceUnavailable(f"GitHub API timeout after {self.timeout}s") from None
        except FileNotFoundError:
            raise SourceUnavailable("gh CLI not found on PATH") from None

    @staticmethod
    def _check(result: subprocess.CompletedProcess, action: str) -> None:
        if result.returncode != 0:
            raise SourceUnavailable(f"Failed to {action}: {result.stderr.strip()}")


class GhCommentSink:
    """ReportSink posting each PR's summary as a PR comment."""

    def __init__(self, source: GhReviewSource):
        self.source = source

    def post(self, pr_report) -> None:
        """Post one PR summary. Raises SourceUnavailable on failure."""
        self.source.post_comment(pr_report.pr_id, pr_report.to_markdown())
        logger.info(f"[GH] Posted summary to PR {pr_report.pr_id}")

    def publish(self, report) -> None:
        for pr_report in report.prs:
            if pr_report.state == "skipped":
                continue
            try:
                self.post(pr_report)
            except SourceUnavailable as e:
                logger.warning(f"[GH] Could not post summary to PR {pr_report.pr_id}: {e}")


def check_gh_cli() -> bool:
    """Check if gh CLI is available and authenticated."""
    try:
        result = subprocess.run(
            ["gh", "auth", "status"],
            capture_output=True,
            text=True,
            timeout=GH_TIMEOUT_SECONDS,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, subprocess.SubprocessError, FileNotFoundError):
        return False


def check_pr_review_extension() -> bool:
    """Check if the gh-pr-review extension is installed."""
    try:
        result = subprocess.run(
            ["gh", "extension", "list"],
            capture_output=True,
            text=True,
            timeout=GH_TIMEOUT_SECONDS,
        )
    except (subprocess.TimeoutExpired, subprocess.SubprocessError, FileNotFoundError):
        return False
    return result.returncode == 0 and PR_REVIEW_EXTENSION in result.stdout
