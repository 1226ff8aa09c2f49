"""
Command-line collaborators: fix a thread with an agent CLI, verify with tests.

CommandChangeApplier runs the configured agent in the worktree, then commits
the paths it changed. The commit sha is the change ref. CommandVerifier runs
the project's test command.

Both act on a shared checkout, so one apply/verify/revert sequence must own
the checkout at a time. The run command gives the coordinators of a checkout
one dispatch lock.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from threadfix import git
from threadfix.lib.agents_config import AgentsConfig, get_stage_command
from threadfix.lib.types import Thread, VerifyResult

logger = logging.getLogger(__name__)

DEFAULT_AGENT_TIMEOUT = 600
DEFAULT_TEST_TIMEOUT = 900
DIAGNOSTIC_TAIL_LINES = 20

PROMPT_TEMPLATE = """Address this pull request review comment.

Thread: {thread_id}
File: {location}
Reviewer: {author}

{body}
{replies}
Make the smallest change that resolves the comment. Do not commit."""


@dataclass
class CommandResult:
    """Result of an external command."""
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def tail(self, lines: int = DIAGNOSTIC_TAIL_LINES) -> str:
        output = (self.stdout + "\n" + self.stderr).strip()
        return "\n".join(output.splitlines()[-lines:])


def run_command(
    cmd: list[str],
    cwd: Path,
    timeout: int,
    stdin: str | None = None,
) -> CommandResult:
    """Run a command, capturing output. Never raises on failure."""
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd),
            input=stdin,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return CommandResult(-1, "", f"Timed out after {timeout}s", timed_out=True)
    except FileNotFoundError:
        return CommandResult(127, "", f"Command not found: {cmd[0]}")
    return CommandResult(result.returncode, result.stdout, result.stderr)


def build_prompt(thread: Thread) -> str:
    """Fix instructions for one thread."""
    replies = "".join(f"\n{r.author}: {r.body}\n" for r in thread.replies)
    return PROMPT_TEMPLATE.format(
        thread_id=thread.id,
        location=thread.location,
        author=thread.author,
        body=thread.body,
        replies=replies,
    )


def commit_message(thread: Thread) -> str:
    summary = thread.body.strip().splitlines()[0][:60] if thread.body.strip() else ""
    return (
        f"fix: address review thread {thread.id}\n\n"
        f"- {thread.location} - {summary}"
    )


def detect_test_command(worktree: Path) -> list[str] | None:
    """Pick a test runner from the project files, or None if unknown."""
    if (worktree / "pytest.ini").exists() or (worktree / "setup.py").exists() \
            or (worktree / "pyproject.toml").exists():
        return ["pytest", "--tb=short"]
    if (worktree / "package.json").exists():
        return ["npm", "test"]
    if (worktree / "go.mod").exists():
        return ["go", "test", "./..."]
    return None


class CommandChangeApplier:
    """Runs the agent command for a thread and commits the result."""

    def __init__(
        self,
        worktree: Path,
        agents: AgentsConfig | None = None,
        timeout: int = DEFAULT_AGENT_TIMEOUT,
    ):
        self.worktree = worktree
        self.agents = agents or AgentsConfig()
        self.timeout = timeout

    def apply(self, thread: Thread) -> str:
        """Fix the thread and return the commit sha.

        Only paths the agent changed are committed. Paths that were already
        dirty before the agent ran are left out.

        Raises:
            RuntimeError: If the agent fails, changes nothing, or the commit fails
        """
        prompt = build_prompt(thread)
        stage = get_stage_command(self.agents, "apply", {
            "prompt": prompt,
            "worktree": str(self.worktree),
            "path": thread.path,
            "line": str(thread.line or ""),
            "thread_id": thread.id,
        })

        before = git.dirty_paths(self.worktree)
        logger.info(f"[AGENT] {thread.id}: {stage.cmd[0]} in {self.worktree}")
        result = run_command(stage.cmd, self.worktree, self.timeout, stdin=stage.get_stdin_input(prompt))
        if not result.success:
            raise RuntimeError(f"agent exited with {result.returncode}: {result.tail(5)}")

        touched = sorted(git.dirty_paths(self.worktree) - before)
        if not touched:
            raise RuntimeError("agent made no changes")
        if before:
            logger.debug(f"[AGENT] {thread.id}: leaving pre-existing changes out: {sorted(before)}")

        staged = git.stage_paths(self.worktree, touched)
        if not staged.success:
            raise RuntimeError(f"git add failed: {staged.error}")
        committed = git.commit(self.worktree, commit_message(thread), touched)
        if not committed.success:
            raise RuntimeError(f"git commit failed: {committed.error}")
        sha = git.get_commit_sha(self.worktree, short=True)

        if not sha:
            raise RuntimeError("could not read commit sha")
        return sha

    def revert(self, change_ref: str) -> None:
        """Undo a commit made by apply().

        Raises:
            RuntimeError: If git revert fails
        """
        result = git.revert_commit(self.worktree, change_ref)
        if not result.success:
            raise RuntimeError(f"git revert {change_ref} failed: {result.error}")


class CommandVerifier:
    """Runs the project's tests against the worktree."""

    def __init__(
        self,
        worktree: Path,
        agents: AgentsConfig | None = None,
        timeout: int = DEFAULT_TEST_TIMEOUT,
    ):
        self.worktree = worktree
        self.agents = agents or AgentsConfig()
        self.timeout = timeout

    def command(self) -> list[str] | None:
        if self.agents.stages.get("verify"):
            return get_stage_command(self.agents, "verify", {"worktree": str(self.worktree)}).cmd
        return detect_test_command(self.worktree)

    def verify(self, change_ref: str) -> VerifyResult:
        cmd = self.command()
        if cmd is None:
            logger.warning("[VERIFY] No recognized test framework found, skipping tests")
            return VerifyResult(True, "no tests run")

        logger.info(f"[VERIFY] {change_ref}: {' '.join(cmd)}")
        result = run_command(cmd, self.worktree, self.timeout)
        if result.success:
            return VerifyResult(True)
        if result.timed_out:
            return VerifyResult(False, f"Tests timed out after {self.timeout}s")
        return VerifyResult(False, f"Tests failed:\n{result.tail()}")
