"""
threadfix check - Verify that the tools a run shells out to are available.
"""

from threadfix.git import is_inside_work_tree
from threadfix.lib.agents_config import load_agents_config, validate_stage_binaries
from threadfix.lib.config import ResolverConfig
from threadfix.lib.github import PR_REVIEW_EXTENSION, check_gh_cli, check_pr_review_extension


def cmd_check(args, config: ResolverConfig) -> int:
    problems = []

    if check_gh_cli():
        print("✓ gh CLI installed and authenticated")
    else:
        problems.append("gh CLI missing or not authenticated (run: gh auth login)")

    if check_pr_review_extension():
        print(f"✓ {PR_REVIEW_EXTENSION} extension installed")
    else:
        problems.append(f"gh-pr-review extension missing (run: gh extension install {PR_REVIEW_EXTENSION})")

    if is_inside_work_tree(config.worktree):
        print(f"✓ {config.worktree} is a git work tree")
    else:
        problems.append(f"{config.worktree} is not inside a git work tree")

    binaries = validate_stage_binaries(load_agents_config(config.worktree), ["apply", "verify"])
    if binaries.ok:
        print("✓ agent commands available")
    else:
        problems.append(binaries.error_message)

    for problem in problems:
        print(f"✗ {problem}")
    return 1 if problems else 0
