"""
Configuration loaders for threadfix.

Run settings come from threadfix.env (KEY=value, validated against
schemas/config.schema.json). PR batches can be described in a YAML manifest.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import yaml

from . import envparse
from .errors import InvalidConfiguration
from .types import ThreadFilters
from .validate import ValidationError, validate

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "threadfix.env"
DEFAULT_REPLY_TEMPLATE = "Addressed in commit {commit_ref}"


class GatingStrategy(Enum):
    INDEPENDENT = "independent"
    BATCH = "batch"
    PROGRESSIVE = "progressive"


class FailurePolicy(Enum):
    CONTINUE = "continue"
    FAIL_FAST = "fail-fast"
    RETRY = "retry"


class SameFilePolicy(Enum):
    SERIALIZE = "serialize"  # Per-file lock around worker execution
    ALLOW = "allow"  # Rely on planner affinity only


@dataclass(frozen=True)
class RetryPolicy:
    """Per-thread retry with exponential backoff."""
    max_attempts: int
    base_delay: float

    def delay_for(self, attempt: int) -> float:
        """Delay before re-submitting after the given (1-based) failed attempt."""
        return self.base_delay * (2 ** (attempt - 1))


@dataclass
class ResolverConfig:
    """Settings for one threadfix invocation."""
    repo: str | None = None  # "owner/repo"; None lets gh infer from the worktree
    worktree: Path = field(default_factory=Path.cwd)
    gating_strategy: GatingStrategy = GatingStrategy.INDEPENDENT
    failure_policy: FailurePolicy = FailurePolicy.CONTINUE
    concurrency_limit: int = 2
    worker_count: int = 2
    worker_timeout: float | None = 600.0  # None disables the timeout
    retry_attempts: int = 3
    retry_base_delay: float = 2.0
    same_file_policy: SameFilePolicy = SameFilePolicy.SERIALIZE
    tier_size: int = 1
    reply_template: str = DEFAULT_REPLY_TEMPLATE
    post_summary: bool = True
    verify_resolution: bool = True  # re-fetch after resolving to confirm threads closed
    filters: ThreadFilters = field(default_factory=ThreadFilters)

    @property
    def retry_policy(self) -> RetryPolicy | None:
        if self.failure_policy != FailurePolicy.RETRY:
            return None
        return RetryPolicy(self.retry_attempts, self.retry_base_delay)


def config_from_env(env: dict[str, str], base_dir: Path | None = None) -> ResolverConfig:
    """Build a ResolverConfig from a parsed env dict.

    Raises:
        InvalidConfiguration: If the env does not match the config schema.
    """
    try:
        validate(env, "config")
    except ValidationError as e:
        raise InvalidConfiguration(str(e)) from None

    config = ResolverConfig()
    if "REPO" in env:
        config.repo = env["REPO"]
    if "WORKTREE" in env:
        worktree = Path(env["WORKTREE"]).expanduser()
        if not worktree.is_absolute() and base_dir is not None:
            worktree = base_dir / worktree
        config.worktree = worktree
    if "GATING_STRATEGY" in env:
        config.gating_strategy = GatingStrategy(env["GATING_STRATEGY"])
    if "FAILURE_POLICY" in env:
        config.failure_policy = FailurePolicy(env["FAILURE_POLICY"])
    if "SAME_FILE_POLICY" in env:
        config.same_file_policy = SameFilePolicy(env["SAME_FILE_POLICY"])

    config.concurrency_limit = int(env.get("CONCURRENCY_LIMIT", config.concurrency_limit))
    config.worker_count = int(env.get("WORKER_COUNT", config.worker_count))
    config.retry_attempts = int(env.get("RETRY_ATTEMPTS", config.retry_attempts))
    config.retry_base_delay = float(env.get("RETRY_BASE_DELAY", config.retry_base_delay))
    config.tier_size = int(env.get("TIER_SIZE", config.tier_size))

    if "WORKER_TIMEOUT" in env:
        timeout = float(env["WORKER_TIMEOUT"])
        config.worker_timeout = timeout if timeout > 0 else None

    if env.get("REPLY_TEMPLATE"):
        config.reply_template = env["REPLY_TEMPLATE"]
    if "POST_SUMMARY" in env:
        config.post_summary = envparse.to_bool(env["POST_SUMMARY"])
    if "VERIFY_RESOLUTION" in env:
        config.verify_resolution = envparse.to_bool(env["VERIFY_RESOLUTION"])

    include_outdated = envparse.to_bool(env.get("INCLUDE_OUTDATED", "false"))
    states = frozenset(
        s.strip().upper() for s in env.get("FILTER_STATES", "").split(",") if s.strip()
    )
    config.filters = ThreadFilters(
        unresolved_only=True,
        not_outdated=not include_outdated,
        reviewer=env.get("FILTER_REVIEWER") or None,
        states=states,
    )
    return config


def load_config(path: Path | None = None) -> ResolverConfig:
    """Load threadfix.env and return ResolverConfig.

    With no path, looks for threadfix.env in the current directory and
    falls back to defaults when it is absent.
    """
    if path is None:
        path = Path.cwd() / DEFAULT_CONFIG_FILENAME
        if not path.exists():
            logger.debug(f"No {DEFAULT_CONFIG_FILENAME} found, using defaults")
            return ResolverConfig()

    try:
        env = envparse.load_env(path)
    except FileNotFoundError as e:
        raise InvalidConfiguration(str(e)) from None
    except ValueError as e:
        raise InvalidConfiguration(f"Invalid config file: {e}") from None

    return config_from_env(env, base_dir=path.parent)


@dataclass
class PRManifest:
    """PRs to process, optionally grouped into progressive tiers."""
    prs: list[str]
    tiers: list[list[str]] | None = None
    strategy: GatingStrategy | None = None
    policy: FailurePolicy | None = None


def load_manifest(path: Path) -> PRManifest:
    """Load a YAML PR manifest.

    Example:
        tiers:
          - [101, 102]
          - ["acme/api#57"]
    """
    try:
        data = yaml.safe_load(path.read_text())
    except OSError as e:
        raise InvalidConfiguration(f"Cannot read manifest {path}: {e}") from None
    except yaml.YAMLError as e:
        raise InvalidConfiguration(f"Invalid YAML in {path}: {e}") from None

    try:
        validate(data, "manifest")
    except ValidationError as e:
        raise InvalidConfiguration(str(e)) from None

    tiers = None
    if "tiers" in data:
        tiers = [[str(pr) for pr in tier] for tier in data["tiers"]]
        prs = [pr for tier in tiers for pr in tier]
    else:
        prs = [str(pr) for pr in data["prs"]]

    return PRManifest(
        prs=prs,
        tiers=tiers,
        strategy=GatingStrategy(data["strategy"]) if "strategy" in data else None,
        policy=FailurePolicy(data["policy"]) if "policy" in data else None,
    )
