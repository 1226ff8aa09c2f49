"""Git commit operations."""

from pathlib import Path

from threadfix.git.runner import run_git, GitResult


def stage_paths(worktree: Path, paths: list[str]) -> GitResult:
    """Stage additions, modifications and deletions of the given paths only."""
    return run_git(["add", "-A", "--", *paths], worktree)


def commit(worktree: Path, message: str, paths: list[str] | None = None) -> GitResult:
    """Create a commit. With paths, only those paths are committed."""
    args = ["commit", "-m", message]
    if paths:
        args += ["--", *paths]
    return run_git(args, worktree)


def revert_commit(worktree: Path, sha: str) -> GitResult:
    """Create a commit undoing sha."""
    return run_git(["revert", "--no-edit", sha], worktree)


def get_commit_sha(worktree: Path, ref: str = "HEAD", short: bool = False) -> str | None:
    """Get the SHA of a ref."""
    args = ["rev-parse", "--short", ref] if short else ["rev-parse", ref]
    result = run_git(args, worktree)
    if result.success:
        return result.output
    return None
