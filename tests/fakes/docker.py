"""Fake docker runtime recording every engine call."""

from __future__ import annotations

import itertools
import threading
import time

from sshbox.errors import SandboxCreateFailed, SandboxRemoveFailed


class FakeRuntime:
    def __init__(
        self,
        *,
        shell: list[str] | None = None,
        create_delay: float = 0.0,
        fail_create: bool = False,
        fail_remove: bool = False,
    ):
        self.shell = shell
        self.create_delay = create_delay
        self.fail_create = fail_create
        self.fail_remove = fail_remove
        self.created: list[tuple[str, str]] = []
        self.removed: list[list[str]] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, name: str, identity: str) -> str:
        time.sleep(self.create_delay)
        with self._lock:
            self.created.append((name, identity))
        if self.fail_create:
            raise SandboxCreateFailed("docker run exited with status 125", "Unable to find image 'nope:latest'")
        return f"cid{next(self._ids):04d}"

    def run_command(self, name: str, identity: str) -> list[str]:
        return list(self.shell) if self.shell else ["docker", "run", "-it", "--rm", "--name", name]

    def exec_command(self, sandbox_id: str, identity: str) -> list[str]:
        return list(self.shell) if self.shell else ["docker", "exec", "-it", sandbox_id]

    def remove(self, sandbox_ids: list[str]) -> None:
        self.removed.append(list(sandbox_ids))
        if self.fail_remove:
            raise SandboxRemoveFailed("docker rm exited with status 1", "Error: No such container")
