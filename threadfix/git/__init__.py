"""Git operations for threadfix.

Return type conventions:
- Functions returning GitResult: Caller must check .success before using output.
  Examples: stage_paths(), commit(), revert_commit()
- Functions returning bool: True on success/condition met, False otherwise.
  Examples: is_inside_work_tree()
- Functions returning collections: Empty on failure.
  Examples: dirty_paths()
- Functions returning parsed values: Return None on failure.
  Examples: get_commit_sha()
"""

from threadfix.git.runner import GitResult, run_git
from threadfix.git.status import (
    dirty_paths,
    is_inside_work_tree,
)
from threadfix.git.commit import (
    stage_paths,
    commit,
    revert_commit,
    get_commit_sha,
)

__all__ = [
    "GitResult",
    "run_git",
    # status
    "dirty_paths",
    "is_inside_work_tree",
    # commit
    "stage_paths",
    "commit",
    "revert_commit",
    "get_commit_sha",
]
