"""Tests for threadfix.runner.commands."""

import shutil
import subprocess
from pathlib import Path
from unittest.mock import patch, MagicMock

import pytest

from threadfix.git import GitResult
from threadfix.lib.agents_config import AgentsConfig
from threadfix.lib.types import Reply
from threadfix.runner.commands import (
    CommandChangeApplier,
    CommandResult,
    CommandVerifier,
    build_prompt,
    commit_message,
    detect_test_command,
    run_command,
)

from fakes import make_thread

OK = GitResult(0, "", "")


class TestRunCommand:
    @patch("threadfix.runner.commands.subprocess.run")
    def test_success(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="ok", stderr="")
        result = run_command(["echo"], Path("/w"), 5, stdin="hi")
        assert result.success
        assert mock_run.call_args[1]["input"] == "hi"
        assert mock_run.call_args[1]["cwd"] == "/w"

    @patch("threadfix.runner.commands.subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="x", timeout=5)
        result = run_command(["x"], Path("/w"), 5)
        assert result.timed_out and not result.success

    @patch("threadfix.runner.commands.subprocess.run")
    def test_missing_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError("x")
        assert run_command(["x"], Path("/w"), 5).returncode == 127

    def test_tail(self):
        result = CommandResult(1, "\n".join(f"line {i}" for i in range(50)), "")
        assert result.tail(2) == "line 48\nline 49"


class TestPrompt:
    def test_prompt_includes_thread_context(self):
        thread = make_thread("PRRT_1", path="src/a.py", line=3, body="Use a set here",
                             replies=[Reply("dev", "Why?")])
        prompt = build_prompt(thread)
        assert "PRRT_1" in prompt
        assert "src/a.py:3" in prompt
        assert "Use a set here" in prompt
        assert "dev: Why?" in prompt

    def test_commit_message(self):
        message = commit_message(make_thread("PRRT_1", path="a.py", line=2, body="Rename x\nmore text"))
        assert message.splitlines()[0] == "fix: address review thread PRRT_1"
        assert "- a.py:2 - Rename x" in message


class TestDetectTestCommand:
    @pytest.mark.parametrize("marker,expected", [
        ("pytest.ini", ["pytest", "--tb=short"]),
        ("setup.py", ["pytest", "--tb=short"]),
        ("package.json", ["npm", "test"]),
        ("go.mod", ["go", "test", "./..."]),
    ])
    def test_markers(self, tmp_path, marker, expected):
        (tmp_path / marker).write_text("")
        assert detect_test_command(tmp_path) == expected

    def test_unknown_project(self, tmp_path):
        assert detect_test_command(tmp_path) is None


class TestCommandChangeApplier:
    """Agent run + commit, with git and subprocess mocked."""

    @patch("threadfix.git.get_commit_sha", return_value="abc1234")
    @patch("threadfix.git.commit", return_value=OK)
    @patch("threadfix.git.stage_paths", return_value=OK)
    @patch("threadfix.git.dirty_paths", side_effect=[set(), {"a.py"}])
    @patch("threadfix.runner.commands.run_command", return_value=CommandResult(0, "", ""))
    def test_apply_commits_changes(self, mock_cmd, mock_dirty, mock_stage, mock_commit, mock_sha):
        applier = CommandChangeApplier(Path("/w"))
        sha = applier.apply(make_thread("PRRT_1"))

        assert sha == "abc1234"
        cmd = mock_cmd.call_args[0][0]
        assert cmd[:5] == ["codex", "exec", "--full-auto", "-C", "/w"]
        assert "PRRT_1" in cmd[-1]
        assert "PRRT_1" in mock_commit.call_args[0][1]

    @patch("threadfix.git.get_commit_sha", return_value="abc1234")
    @patch("threadfix.git.commit", return_value=OK)
    @patch("threadfix.git.stage_paths", return_value=OK)
    @patch("threadfix.git.dirty_paths", side_effect=[{"b.py"}, {"a.py", "b.py"}])
    @patch("threadfix.runner.commands.run_command", return_value=CommandResult(0, "", ""))
    def test_pre_existing_changes_stay_out_of_commit(self, mock_cmd, mock_dirty, mock_stage, mock_commit, mock_sha):
        CommandChangeApplier(Path("/w")).apply(make_thread("PRRT_1", path="a.py"))

        mock_stage.assert_called_once_with(Path("/w"), ["a.py"])
        assert mock_commit.call_args[0][2] == ["a.py"]

    @patch("threadfix.git.dirty_paths", return_value=set())
    @patch("threadfix.runner.commands.run_command", return_value=CommandResult(2, "", "rate limited"))
    def test_agent_failure_raises(self, mock_cmd, mock_dirty):
        with pytest.raises(RuntimeError, match="agent exited with 2"):
            CommandChangeApplier(Path("/w")).apply(make_thread("PRRT_1"))

    @patch("threadfix.git.dirty_paths", return_value={"b.py"})
    @patch("threadfix.runner.commands.run_command", return_value=CommandResult(0, "", ""))
    def test_no_changes_raises(self, mock_cmd, mock_dirty):
        with pytest.raises(RuntimeError, match="no changes"):
            CommandChangeApplier(Path("/w")).apply(make_thread("PRRT_1"))

    @patch("threadfix.git.commit", return_value=GitResult(1, "", "hook rejected"))
    @patch("threadfix.git.stage_paths", return_value=OK)
    @patch("threadfix.git.dirty_paths", side_effect=[set(), {"a.py"}])
    @patch("threadfix.runner.commands.run_command", return_value=CommandResult(0, "", ""))
    def test_commit_failure_raises(self, mock_cmd, mock_dirty, mock_stage, mock_commit):
        with pytest.raises(RuntimeError, match="hook rejected"):
            CommandChangeApplier(Path("/w")).apply(make_thread("PRRT_1"))

    @patch("threadfix.git.revert_commit", return_value=GitResult(1, "", "conflict"))
    def test_revert_failure_raises(self, mock_revert):
        with pytest.raises(RuntimeError, match="conflict"):
            CommandChangeApplier(Path("/w")).revert("abc1234")

    @patch("threadfix.git.revert_commit", return_value=OK)
    def test_revert(self, mock_revert):
        CommandChangeApplier(Path("/w")).revert("abc1234")
        mock_revert.assert_called_once_with(Path("/w"), "abc1234")


def git(repo: Path, *args: str) -> str:
    return subprocess.run(["git", "-C", str(repo), *args], capture_output=True, text=True, check=True).stdout


@pytest.fixture
def repo(tmp_path):
    git(tmp_path, "init", "-q")
    git(tmp_path, "config", "user.email", "dev@example.com")
    git(tmp_path, "config", "user.name", "dev")
    git(tmp_path, "config", "commit.gpgsign", "false")
    (tmp_path / "a.py").write_text("a = 1\n")
    (tmp_path / "b.py").write_text("b = 1\n")
    git(tmp_path, "add", "-A")
    git(tmp_path, "commit", "-q", "-m", "init")
    return tmp_path


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestCommandChangeApplierWithGit:
    """Against a real repository; the agent is a shell one-liner."""

    def applier(self, repo, script):
        return CommandChangeApplier(repo, AgentsConfig(stages={"apply": f"sh -c '{script}'", "verify": ""}))

    def test_commit_contains_only_agent_edits(self, repo):
        (repo / "b.py").write_text("b = 2  # edit in progress elsewhere\n")

        sha = self.applier(repo, "echo a = 2 > a.py").apply(make_thread("PRRT_1", path="a.py"))

        files = git(repo, "show", "--name-only", "--format=", sha).split()
        assert files == ["a.py"]
        assert "b.py" in git(repo, "status", "--porcelain")

    def test_revert_leaves_other_edits_alone(self, repo):
        applier = self.applier(repo, "echo a = 2 > a.py")
        sha = applier.apply(make_thread("PRRT_1", path="a.py"))
        (repo / "b.py").write_text("b = 3\n")

        applier.revert(sha)

        assert (repo / "a.py").read_text() == "a = 1\n"
        assert (repo / "b.py").read_text() == "b = 3\n"

    def test_new_file_is_committed(self, repo):
        sha = self.applier(repo, "echo c = 1 > c.py").apply(make_thread("PRRT_1", path="c.py"))
        assert git(repo, "show", "--name-only", "--format=", sha).split() == ["c.py"]


class TestCommandVerifier:
    def test_no_test_framework_passes(self, tmp_path):
        assert CommandVerifier(tmp_path).verify("abc").passed

    @patch("threadfix.runner.commands.run_command")
    def test_failure_diagnostic(self, mock_cmd, tmp_path):
        (tmp_path / "go.mod").write_text("module x\n")
        mock_cmd.return_value = CommandResult(1, "--- FAIL: TestX\n", "")
        result = CommandVerifier(tmp_path).verify("abc")
        assert not result.passed
        assert "FAIL: TestX" in result.diagnostic
        assert mock_cmd.call_args[0][0] == ["go", "test", "./..."]

    @patch("threadfix.runner.commands.run_command")
    def test_configured_command(self, mock_cmd, tmp_path):
        mock_cmd.return_value = CommandResult(0, "", "")
        agents = AgentsConfig(stages={"apply": "x", "verify": "make check"})
        assert CommandVerifier(tmp_path, agents).verify("abc").passed
        assert mock_cmd.call_args[0][0] == ["make", "check"]

    @patch("threadfix.runner.commands.run_command")
    def test_timeout(self, mock_cmd, tmp_path):
        (tmp_path / "package.json").write_text("{}")
        mock_cmd.return_value = CommandResult(-1, "", "", timed_out=True)
        result = CommandVerifier(tmp_path, timeout=9).verify("abc")
        assert result.diagnostic == "Tests timed out after 9s"
