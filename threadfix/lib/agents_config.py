"""
Agent command configuration.

Loads agents.yaml to decide which command lines fix and verify threads.
Without a config file the defaults below apply.

Templates use {variable} substitution from a context dict:
- {prompt}: Fix instructions for the thread. If absent from the template the
  prompt is passed via stdin instead.
- {worktree}: Checkout where changes are made.
- {path}, {line}, {thread_id}: The thread being fixed.

Example agents.yaml:

    stages:
      apply: claude --dangerously-skip-permissions -p {prompt}
      verify: make test
"""

import logging
import re
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_STAGE_COMMANDS = {
    "apply": "codex exec --full-auto -C {worktree} {prompt}",
    # Empty: detect the test runner from the worktree (pytest, npm, go)
    "verify": "",
}

STAGE_REQUIRED_VARIABLES = {
    "apply": ["worktree"],
}

_PROMPT_PLACEHOLDER = "__PROMPT_PLACEHOLDER__"


@dataclass
class AgentsConfig:
    """Agent configuration from agents.yaml."""
    stages: dict[str, str] = field(default_factory=lambda: DEFAULT_STAGE_COMMANDS.copy())


def load_agents_config(project_dir: Path | None) -> AgentsConfig:
    """Load agents.yaml and return AgentsConfig.

    If project_dir is None or file doesn't exist, returns defaults.
    """
    if project_dir is None:
        return AgentsConfig()

    config_path = project_dir / "agents.yaml"
    if not config_path.exists():
        return AgentsConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return AgentsConfig()

    stages = DEFAULT_STAGE_COMMANDS.copy()
    if isinstance(data, dict) and isinstance(data.get("stages"), dict):
        stages.update({k: str(v or "") for k, v in data["stages"].items()})
    return AgentsConfig(stages=stages)


@dataclass
class StageCommand:
    """Result of building a stage command."""
    cmd: list[str]  # Command ready for subprocess
    prompt_via_stdin: bool  # True if prompt should be passed via stdin

    def get_stdin_input(self, prompt: str) -> str | None:
        """Return prompt if it should be passed via stdin, else None."""
        return prompt if self.prompt_via_stdin else None


def get_stage_command(
    config: AgentsConfig,
    stage: str,
    context: dict[str, str] | None = None,
) -> StageCommand:
    """Build command list for a stage with variable substitution.

    Raises:
        ValueError: If stage is unknown or required variables are missing from context.

    Example:
        >>> config = AgentsConfig()
        >>> result = get_stage_command(config, "apply", {"worktree": "/tmp/ws", "prompt": "fix it"})
        >>> result.cmd
        ['codex', 'exec', '--full-auto', '-C', '/tmp/ws', 'fix it']
    """
    if stage not in config.stages:
        raise ValueError(f"Unknown stage: {stage}")

    required_vars = STAGE_REQUIRED_VARIABLES.get(stage, [])
    context_keys = set(context.keys()) if context else set()
    missing = [v for v in required_vars if v not in context_keys]
    if missing:
        raise ValueError(f"Stage '{stage}' requires variables {required_vars}, missing: {missing}")

    cmd_template = config.stages[stage]
    prompt_via_stdin = "{prompt}" not in cmd_template

    # The prompt is swapped in after shlex parsing so quotes in it survive
    prompt_value = None
    if context and "prompt" in context:
        prompt_value = context["prompt"]
        cmd_template = cmd_template.replace("{prompt}", _PROMPT_PLACEHOLDER)

    if context:
        for key, value in context.items():
            if key != "prompt":
                cmd_template = cmd_template.replace(f"{{{key}}}", shlex.quote(str(value)))

    remaining_vars = re.findall(r'\{(\w+)\}', cmd_template)
    if remaining_vars:
        logger.error(f"Stage '{stage}' has unsubstituted variables: {remaining_vars}")

    cmd = shlex.split(cmd_template)
    if prompt_value is not None:
        cmd = [prompt_value if arg == _PROMPT_PLACEHOLDER else arg for arg in cmd]

    return StageCommand(cmd=cmd, prompt_via_stdin=prompt_via_stdin)


def get_stage_binary(config: AgentsConfig, stage: str) -> str:
    """Get the binary name for a stage (first element of command)."""
    if stage not in config.stages:
        raise ValueError(f"Unknown stage: {stage}")
    parts = shlex.split(config.stages[stage])
    return parts[0] if parts else ""


def check_binary_available(binary: str) -> bool:
    """Check if a binary is available in PATH."""
    return shutil.which(binary) is not None


@dataclass
class BinaryCheckResult:
    """Result of checking stage binaries."""
    ok: bool
    missing_binary: str | None = None
    stages_affected: list[str] = field(default_factory=list)
    error_message: str | None = None


def validate_stage_binaries(config: AgentsConfig, stages: list[str]) -> BinaryCheckResult:
    """Validate that binaries for the given stages are available.

    Stages with an empty command (auto-detected) are skipped.
    """
    binary_to_stages: dict[str, list[str]] = {}
    for stage in stages:
        if stage not in config.stages:
            continue
        binary = get_stage_binary(config, stage)
        if binary:
            binary_to_stages.setdefault(binary, []).append(stage)

    for binary, affected_stages in binary_to_stages.items():
        if not check_binary_available(binary):
            error_lines = [
                f"Required tool '{binary}' is not installed.",
                f"Stages that need it: {', '.join(affected_stages)}",
                "Install it, or set a different command in agents.yaml:",
                "",
                "  stages:",
            ]
            for stage in affected_stages:
                error_lines.append(f"    {stage}: <command>")
            return BinaryCheckResult(
                ok=False,
                missing_binary=binary,
                stages_affected=affected_stages,
                error_message="\n".join(error_lines),
            )

    return BinaryCheckResult(ok=True)
