"""Run git in a worktree without ever blocking on a prompt."""

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

# Credential prompts would hang a worker; C locale keeps messages parseable
GIT_ENV_OVERRIDES = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_EDITOR": "true",
    "LC_ALL": "C",
}


@dataclass
class GitResult:
    """Outcome of one git invocation."""
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return self.stdout.strip()

    @property
    def error(self) -> str:
        """Best available failure message."""
        return self.stderr.strip() or self.output or f"git exited with {self.returncode}"


def run_git(args: list[str], cwd: Path, timeout: int = DEFAULT_TIMEOUT) -> GitResult:
    """Run `git -C cwd <args>`.

    Failures, including a missing git binary or a timeout, come back as a
    GitResult rather than an exception.
    """
    cmd = ["git", "-C", str(cwd), *args]
    logger.debug(f"[GIT] {' '.join(args)} ({cwd})")
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env={**os.environ, **GIT_ENV_OVERRIDES},
        )
    except subprocess.TimeoutExpired:
        return GitResult(-1, "", f"git {args[0]} timed out after {timeout}s", timed_out=True)
    except FileNotFoundError:
        return GitResult(127, "", "git not found on PATH")
    return GitResult(proc.returncode, proc.stdout, proc.stderr)
