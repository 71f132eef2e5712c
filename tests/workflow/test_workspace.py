"""Tests for working copies and external actions."""

import shlex
import subprocess
import sys
from unittest.mock import Mock, patch

import pytest

from ripple.exceptions import ActionSkipped, FingerprintUnavailableError, NodeActionError
from ripple.workflow.workspace import CloneAction, CommandAction, Workspace, run_command

PYTHON = shlex.quote(sys.executable)


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "utils").mkdir()
    (tmp_path / "utils" / "pom.xml").write_text("<project/>")
    (tmp_path / "docs").mkdir()
    return Workspace(tmp_path)


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestWorkspace:
    """Test existence and fingerprint reads."""

    def test_exists(self, workspace):
        assert workspace.exists("utils")
        assert not workspace.exists("app")

    def test_head_fingerprint(self, workspace):
        with patch("ripple.workflow.workspace.subprocess.run", return_value=_completed(stdout="abc123\n")) as run:
            assert workspace.head_fingerprint("utils") == "abc123"

        args, kwargs = run.call_args
        assert args[0] == ["git", "rev-parse", "HEAD"]
        assert kwargs["cwd"] == str(workspace.path("utils"))

    def test_head_fingerprint_not_a_repository(self, workspace):
        result = _completed(returncode=128, stderr="fatal: not a git repository\n")
        with patch("ripple.workflow.workspace.subprocess.run", return_value=result):
            with pytest.raises(FingerprintUnavailableError, match="not a git repository"):
                workspace.head_fingerprint("docs")

    def test_head_fingerprint_git_missing(self, workspace):
        with patch("ripple.workflow.workspace.subprocess.run", side_effect=FileNotFoundError("git")):
            with pytest.raises(FingerprintUnavailableError) as exc_info:
                workspace.head_fingerprint("utils")
        assert exc_info.value.node == "utils"


class TestRunCommand:
    """Test subprocess execution with real processes."""

    def test_returns_combined_output(self, tmp_path):
        script = "import sys; print('out'); print('err', file=sys.stderr)"
        output = run_command("utils", [sys.executable, "-c", script], cwd=tmp_path)
        assert "out" in output
        assert "err" in output

    def test_non_zero_exit(self, tmp_path):
        script = "import sys; print('[ERROR] broken'); sys.exit(3)"
        with pytest.raises(NodeActionError) as exc_info:
            run_command("utils", [sys.executable, "-c", script], cwd=tmp_path)

        assert exc_info.value.exit_code == 3
        assert "[ERROR] broken" in exc_info.value.output
        assert str(exc_info.value) == "exit code 3"

    def test_env_is_merged(self, tmp_path):
        script = "import os; print(os.environ['RIPPLE_TEST_VALUE'])"
        output = run_command(
            "utils", [sys.executable, "-c", script], cwd=tmp_path, env={"RIPPLE_TEST_VALUE": "42"}
        )
        assert output.strip() == "42"

    def test_missing_executable(self, tmp_path):
        with pytest.raises(NodeActionError, match="command not found"):
            run_command("utils", ["definitely-not-a-real-binary-ripple"], cwd=tmp_path)

    def test_timeout(self, tmp_path):
        script = "import time; time.sleep(5)"
        with pytest.raises(NodeActionError, match="timed out"):
            run_command("utils", [sys.executable, "-c", script], cwd=tmp_path, timeout=0.2)


class TestCommandAction:
    """Test the build action."""

    def test_missing_build_file_skips(self, workspace):
        action = CommandAction(workspace, "mvn clean install")
        with pytest.raises(ActionSkipped, match="no pom.xml"):
            action("docs", {})

    def test_skip_tests_flag(self, workspace):
        action = CommandAction(workspace, "mvn clean install", skip_tests_flag="-DskipTests")
        assert action.build_command({"skip_tests": True}) == ["mvn", "clean", "install", "-DskipTests"]
        assert action.build_command({}) == ["mvn", "clean", "install"]

    def test_runs_in_working_copy(self, workspace):
        action = CommandAction(
            workspace,
            f"{PYTHON} -c \"import os; print(os.getcwd())\"",
        )
        output = action("utils", {})
        assert output.strip().endswith("utils")

    def test_passes_env_and_timeout(self, workspace):
        action = CommandAction(workspace, "mvn install", env={"JAVA_HOME": "/opt/jdk"}, timeout=60)
        with patch("ripple.workflow.workspace.run_command", return_value="ok") as run:
            action("utils", {"env": {"MAVEN_OPTS": "-Xmx1g"}})

        kwargs = run.call_args.kwargs
        assert kwargs["env"] == {"JAVA_HOME": "/opt/jdk", "MAVEN_OPTS": "-Xmx1g"}
        assert kwargs["timeout"] == 60
        assert kwargs["cwd"] == workspace.path("utils")

    def test_no_build_file_check(self, workspace):
        action = CommandAction(workspace, f"{PYTHON} -c \"print('built')\"", build_file="")
        assert "built" in action("docs", {})

    def test_missing_working_copy_skips(self, workspace):
        action = CommandAction(workspace, "mvn install", build_file="")
        with patch("ripple.workflow.workspace.run_command") as run:
            with pytest.raises(ActionSkipped, match="no working copy"):
                action("app", {})
        run.assert_not_called()


class TestCloneAction:
    """Test the clone action."""

    def test_url_template(self, workspace):
        action = CloneAction(workspace, "git@github.com:{org}/{node}.git", org="acme")
        assert action.url_for("utils") == "git@github.com:acme/utils.git"

    def test_existing_directory_skips(self, workspace):
        action = CloneAction(workspace, "https://example.com/{node}.git")
        with pytest.raises(ActionSkipped, match="already cloned"):
            action("utils", {})

    def test_clone_command(self, workspace):
        action = CloneAction(workspace, "https://example.com/{org}/{node}.git", org="acme", branch="main")
        run = Mock(return_value="Cloning into 'app'...")
        with patch("ripple.workflow.workspace.run_command", run):
            assert action("app", {}) == "Cloning into 'app'..."

        args = run.call_args.args
        assert args[0] == "app"
        assert args[1] == [
            "git", "clone", "--branch", "main",
            "https://example.com/acme/app.git", str(workspace.path("app")),
        ]
