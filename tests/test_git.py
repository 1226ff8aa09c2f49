"""Tests for threadfix.git module."""

import subprocess
from pathlib import Path
from unittest.mock import patch, MagicMock

from threadfix.git.runner import run_git, GitResult
from threadfix.git.status import dirty_paths, is_inside_work_tree
from threadfix.git.commit import commit, get_commit_sha, revert_commit, stage_paths


class TestGitResult:
    """Test GitResult dataclass."""

    def test_success_when_returncode_zero(self):
        result = GitResult(returncode=0, stdout="ok", stderr="")
        assert result.success is True

    def test_failure_when_returncode_nonzero(self):
        result = GitResult(returncode=1, stdout="", stderr="error")
        assert result.success is False

    def test_failure_when_timed_out(self):
        result = GitResult(returncode=0, stdout="ok", stderr="", timed_out=True)
        assert result.success is False

    def test_error_prefers_stderr(self):
        assert GitResult(1, "out", " bad ").error == "bad"
        assert GitResult(3, "", "").error == "git exited with 3"


class TestRunGit:
    """Test run_git function."""

    @patch("threadfix.git.runner.subprocess.run")
    def test_returns_result_on_success(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="output", stderr="")
        result = run_git(["status"], Path("/tmp"))
        assert result.success
        assert result.stdout == "output"
        mock_run.assert_called_once()

    @patch("threadfix.git.runner.subprocess.run")
    def test_handles_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="git", timeout=30)
        result = run_git(["status"], Path("/tmp"))
        assert not result.success
        assert result.timed_out
        assert "timed out" in result.stderr

    @patch("threadfix.git.runner.subprocess.run")
    def test_handles_missing_git(self, mock_run):
        mock_run.side_effect = FileNotFoundError("git")
        result = run_git(["status"], Path("/tmp"))
        assert result.returncode == 127

    @patch("threadfix.git.runner.subprocess.run")
    def test_passes_cwd_with_C_flag(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        run_git(["status", "--porcelain"], Path("/my/repo"))
        call_args = mock_run.call_args[0][0]
        assert call_args == ["git", "-C", "/my/repo", "status", "--porcelain"]

    @patch("threadfix.git.runner.subprocess.run")
    def test_never_prompts(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        run_git(["fetch"], Path("/repo"))
        env = mock_run.call_args[1]["env"]
        assert env["GIT_TERMINAL_PROMPT"] == "0"
        assert env["LC_ALL"] == "C"


class TestGitOperations:
    @patch("threadfix.git.runner.subprocess.run")
    def test_dirty_paths(self, mock_run):
        mock_run.return_value = MagicMock(
            returncode=0,
            stdout=" M src/app.py\0?? new file.py\0R  moved.py\0old.py\0 D gone.py\0",
            stderr="",
        )
        assert dirty_paths(Path("/repo")) == {"src/app.py", "new file.py", "moved.py", "old.py", "gone.py"}
        assert mock_run.call_args[0][0][3:] == ["status", "--porcelain", "-z", "--untracked-files=all"]

    @patch("threadfix.git.runner.subprocess.run")
    def test_dirty_paths_clean_or_failed(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        assert dirty_paths(Path("/repo")) == set()
        mock_run.return_value = MagicMock(returncode=128, stdout="", stderr="fatal")
        assert dirty_paths(Path("/repo")) == set()

    @patch("threadfix.git.runner.subprocess.run")
    def test_is_inside_work_tree(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="true\n", stderr="")
        assert is_inside_work_tree(Path("/repo"))
        mock_run.return_value = MagicMock(returncode=128, stdout="", stderr="fatal: not a git repository")
        assert not is_inside_work_tree(Path("/tmp"))

    @patch("threadfix.git.runner.subprocess.run")
    def test_commit_commands(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="abc1234\n", stderr="")
        stage_paths(Path("/repo"), ["a.py"])
        commit(Path("/repo"), "fix: thing", ["a.py"])
        revert_commit(Path("/repo"), "abc1234")
        sha = get_commit_sha(Path("/repo"), short=True)

        commands = [c[0][0][3:] for c in mock_run.call_args_list]
        assert commands == [
            ["add", "-A", "--", "a.py"],
            ["commit", "-m", "fix: thing", "--", "a.py"],
            ["revert", "--no-edit", "abc1234"],
            ["rev-parse", "--short", "HEAD"],
        ]
        assert sha == "abc1234"

    @patch("threadfix.git.runner.subprocess.run")
    def test_get_commit_sha_failure(self, mock_run):
        mock_run.return_value = MagicMock(returncode=128, stdout="", stderr="bad ref")
        assert get_commit_sha(Path("/repo"), "nope") is None
