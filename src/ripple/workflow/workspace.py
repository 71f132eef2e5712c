"""
Working copies and the external actions run inside them.

``Workspace`` maps node ids to directories under a repos root and reads the
fingerprint (current git commit) of each working copy. ``CommandAction`` and
``CloneAction`` are the callables the layered executor invokes per node; both
return the combined command output and raise ``NodeActionError`` or
``ActionSkipped``.
"""

import logging
import os
import shlex
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

from ripple.exceptions import ActionSkipped, FingerprintUnavailableError, NodeActionError

logger = logging.getLogger(__name__)

# Keep log files bounded
MAX_OUTPUT_CHARS = 200_000


class Action(Protocol):
    def __call__(self, node_id: str, options: Mapping[str, Any]) -> str: ...


class Workspace:
    """Directory layout of the component working copies.

    Args:
        repos_dir: Directory holding one working copy per node, named after the node.
        git_timeout: Seconds to wait for ``git rev-parse``.
    """

    def __init__(self, repos_dir: Path, git_timeout: int = 10):
        self.repos_dir = Path(repos_dir).expanduser()
        self.git_timeout = git_timeout

    def path(self, node_id: str) -> Path:
        return self.repos_dir / node_id

    def exists(self, node_id: str) -> bool:
        return self.path(node_id).is_dir()

    def head_fingerprint(self, node_id: str) -> str:
        """Read the commit the working copy is at.

        Raises:
            FingerprintUnavailableError: If the directory is not a readable
                git working copy
        """
        try:
            result = subprocess.run(
                ["git", "rev-parse", "HEAD"],
                cwd=str(self.path(node_id)),
                capture_output=True,
                text=True,
                timeout=self.git_timeout,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired, OSError) as e:
            raise FingerprintUnavailableError(node_id, str(e)) from e

        if result.returncode != 0:
            raise FingerprintUnavailableError(node_id, result.stderr.strip())

        sha = result.stdout.strip()
        if not sha:
            raise FingerprintUnavailableError(node_id, "empty revision")
        return sha


def _trim(output: str) -> str:
    if len(output) > MAX_OUTPUT_CHARS:
        return output[-MAX_OUTPUT_CHARS:]
    return output


def run_command(
    node_id: str,
    cmd: List[str],
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
) -> str:
    """Run a command for a node and return its combined stdout/stderr.

    Raises:
        NodeActionError: On a non-zero exit, a missing executable or a timeout.
            The captured output travels on the exception.
    """
    proc_env = os.environ.copy()
    if env:
        proc_env.update({str(k): str(v) for k, v in env.items()})

    logger.debug("Running %s in %s", " ".join(cmd), cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            env=proc_env,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise NodeActionError(node_id, f"command not found: {cmd[0]}") from e
    except subprocess.TimeoutExpired as e:
        output = e.output or ""
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        raise NodeActionError(
            node_id, f"timed out after {timeout}s", output=_trim(output)
        ) from e

    output = _trim(result.stdout or "")
    if result.returncode != 0:
        raise NodeActionError(
            node_id,
            f"exit code {result.returncode}",
            output=output,
            exit_code=result.returncode,
        )
    return output


class CommandAction:
    """Runs the configured build command inside a node's working copy.

    Args:
        workspace: Workspace the node lives in.
        command: Command line, e.g. ``"mvn clean install"``.
        build_file: File that must exist in the working copy; when it is
            missing the node is skipped. Empty to disable the check.
        skip_tests_flag: Appended when ``options["skip_tests"]`` is true.
        env: Extra environment for every invocation.
        timeout: Seconds before the command is killed; None for no limit.
    """

    def __init__(
        self,
        workspace: Workspace,
        command: str,
        build_file: str = "pom.xml",
        skip_tests_flag: str = "-DskipTests",
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ):
        self.workspace = workspace
        self.command = command
        self.build_file = build_file
        self.skip_tests_flag = skip_tests_flag
        self.env = dict(env or {})
        self.timeout = timeout

    def build_command(self, options: Mapping[str, Any]) -> List[str]:
        cmd = shlex.split(self.command)
        if options.get("skip_tests") and self.skip_tests_flag:
            cmd.extend(shlex.split(self.skip_tests_flag))
        return cmd

    def __call__(self, node_id: str, options: Mapping[str, Any]) -> str:
        cwd = self.workspace.path(node_id)
        if not self.workspace.exists(node_id):
            raise ActionSkipped(node_id, "no working copy")
        if self.build_file and not (cwd / self.build_file).exists():
            raise ActionSkipped(node_id, f"no {self.build_file}")

        env: Dict[str, str] = dict(self.env)
        env.update(options.get("env") or {})
        return run_command(
            node_id, self.build_command(options), cwd=cwd, env=env, timeout=self.timeout
        )


class CloneAction:
    """Clones a node's repository into the workspace.

    Args:
        workspace: Workspace to clone into.
        url_template: Clone URL with ``{node}`` and ``{org}`` placeholders.
        org: Value for ``{org}``.
        branch: Branch to check out; empty for the remote default.
    """

    def __init__(
        self,
        workspace: Workspace,
        url_template: str,
        org: str = "",
        branch: str = "",
        timeout: Optional[float] = None,
    ):
        self.workspace = workspace
        self.url_template = url_template
        self.org = org
        self.branch = branch
        self.timeout = timeout

    def url_for(self, node_id: str) -> str:
        return self.url_template.format(node=node_id, org=self.org)

    def __call__(self, node_id: str, options: Mapping[str, Any]) -> str:
        target = self.workspace.path(node_id)
        if target.exists():
            raise ActionSkipped(node_id, "already cloned")

        cmd = ["git", "clone"]
        if self.branch:
            cmd.extend(["--branch", self.branch])
        cmd.extend([self.url_for(node_id), str(target)])

        target.parent.mkdir(parents=True, exist_ok=True)
        return run_command(node_id, cmd, timeout=self.timeout)
