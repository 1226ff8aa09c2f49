"""Git status operations."""

from pathlib import Path

from threadfix.git.runner import run_git


def dirty_paths(worktree: Path) -> set[str]:
    """Paths with staged, unstaged or untracked changes.

    Both sides of a rename are included so that staging them records the move.
    """
    result = run_git(["status", "--porcelain", "-z", "--untracked-files=all"], worktree)
    if not result.success:
        return set()

    paths: set[str] = set()
    entries = iter(result.stdout.split("\0"))
    for entry in entries:
        if len(entry) < 4:
            continue
        status, path = entry[:2], entry[3:]
        paths.add(path)
        if "R" in status or "C" in status:
            paths.add(next(entries, ""))
    paths.discard("")
    return paths


def is_inside_work_tree(path: Path) -> bool:
    """Check if path is inside a git work tree."""
    result = run_git(["rev-parse", "--is-inside-work-tree"], path)
    return result.success and result.output == "true"
