"""
Docker runtime adapter.

Wraps the docker CLI for the operations sessions need: start a keep-alive
sandbox, build the interactive shell command (fresh run or exec), and
force-remove sandboxes.
"""

from __future__ import annotations

import logging
import os
import re
import socket
import subprocess

from sshbox.config import SandboxPolicy
from sshbox.errors import SandboxCreateFailed, SandboxRemoveFailed
from sshbox.sandbox.login import login_script

logger = logging.getLogger(__name__)

KEEPALIVE_SCRIPT = "while true; do sleep 1; done"
_NAME_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_.-]")


def sandbox_name(prefix: str, identity: str, sequence: int | None = None, pid: int | None = None) -> str:
    """Container name for an identity, unique per server process.

    Persistent sandboxes pass no sequence: one name per identity.
    """
    pid = os.getpid() if pid is None else pid
    name = f"{prefix}-{pid}-{_NAME_UNSAFE_RE.sub('-', identity)}"
    if sequence is not None:
        name = f"{name}-{sequence}"
    return name


def default_hostname(image: str) -> str:
    hostname = socket.gethostname()
    if hostname:
        return hostname
    return image.split("/", 1)[0]


class DockerRuntime:
    """
    Sandbox engine backed by the local docker CLI.

    Notes:
    - Success is the tool's exit status; stdout carries the container id.
    - Every create is bounded by policy.create_timeout_sec.
    """

    def __init__(self, policy: SandboxPolicy):
        self.policy = policy
        self.hostname = policy.hostname or default_hostname(policy.image)

    def create(self, name: str, identity: str) -> str:
        """Start a detached keep-alive sandbox and return its container id."""
        cmd = [
            self.policy.docker_binary,
            "run",
            "-d",
            "-h",
            self.hostname,
            "--name",
            name,
            *self._labels(identity),
            self.policy.image,
            "bash",
            "-c",
            KEEPALIVE_SCRIPT,
        ]
        try:
            container_id = self._create(cmd)
        except SandboxCreateFailed:
            # The daemon may have registered the name before the CLI failed.
            self._discard(name)
            raise
        logger.info("Sandbox created name=%s id=%s identity=%s", name, container_id[:12], identity)
        return container_id

    def _create(self, cmd: list[str]) -> str:
        try:
            result = self._run(cmd, timeout=self.policy.create_timeout_sec)
        except subprocess.TimeoutExpired as e:
            raise SandboxCreateFailed(
                f"docker run timed out after {self.policy.create_timeout_sec}s",
                _decode(e.output) + _decode(e.stderr),
            ) from e
        except OSError as e:
            raise SandboxCreateFailed(f"docker run failed to start: {e}") from e
        output = (result.stdout + result.stderr).strip()
        if result.returncode != 0:
            raise SandboxCreateFailed(f"docker run exited with status {result.returncode}", output)
        container_id = result.stdout.strip()
        if not container_id:
            raise SandboxCreateFailed("docker run returned no container id", output)
        return container_id

    def _discard(self, name: str) -> None:
        """Best-effort removal of a half-created sandbox so its name can be reused."""
        try:
            self.remove([name])
        except SandboxRemoveFailed as e:
            # Usually "No such container": nothing was left behind.
            logger.debug("Cleanup after failed create name=%s: %s", name, e)

    def run_command(self, name: str, identity: str) -> list[str]:
        """Shell command for an ephemeral sandbox, removed when the shell exits."""
        return [
            self.policy.docker_binary,
            "run",
            "-it",
            "--rm",
            "-h",
            self.hostname,
            "--name",
            name,
            *self._labels(identity),
            self.policy.image,
            "bash",
            "-c",
            login_script(identity, self.policy.root_alias),
        ]

    def exec_command(self, sandbox_id: str, identity: str) -> list[str]:
        """Shell command inside an already running sandbox."""
        return [
            self.policy.docker_binary,
            "exec",
            "-it",
            sandbox_id,
            "bash",
            "-c",
            login_script(identity, self.policy.root_alias),
        ]

    def remove(self, sandbox_ids: list[str]) -> None:
        if not sandbox_ids:
            return
        cmd = [self.policy.docker_binary, "rm", "-f", *sandbox_ids]
        try:
            result = self._run(cmd, timeout=self.policy.create_timeout_sec)
        except (subprocess.TimeoutExpired, OSError) as e:
            raise SandboxRemoveFailed(f"docker rm failed: {e}") from e
        if result.returncode != 0:
            raise SandboxRemoveFailed(
                f"docker rm exited with status {result.returncode}",
                (result.stdout + result.stderr).strip(),
            )
        logger.info("Sandboxes removed count=%d", len(sandbox_ids))

    def _labels(self, identity: str) -> list[str]:
        return [
            "--label",
            f"sshbox.identity={identity}",
            "--label",
            f"sshbox.pid={os.getpid()}",
        ]

    def _run(self, cmd: list[str], *, timeout: float) -> subprocess.CompletedProcess[str]:
        logger.debug("Running %s", " ".join(cmd[:3]))
        return subprocess.run(
            cmd,
            text=True,
            capture_output=True,
            timeout=timeout,
        )


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
