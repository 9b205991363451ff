"""Sandbox registry: identity -> sandbox resolution with create-or-reuse.

Persistent sandboxes are created lazily on an identity's first session and
kept until destroy_all(). Creation for one identity is serialized so that
concurrent first sessions issue a single create; other identities proceed in
parallel.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass

from sshbox.config import SandboxPolicy
from sshbox.sandbox.docker import DockerRuntime, sandbox_name
from sshbox.sandbox.login import validate_identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedSandbox:
    """A sandbox bound to one session, plus the command that opens its shell."""

    sandbox_id: str
    identity: str
    persistent: bool
    shell_command: list[str]


class SandboxRegistry:
    def __init__(self, runtime: DockerRuntime):
        self.runtime = runtime
        self._guard = threading.Lock()
        self._identity_locks: dict[str, threading.Lock] = {}
        self._sandboxes: dict[str, str] = {}  # identity -> container id
        self._ephemeral: set[str] = set()
        self._sequence = itertools.count(1)

    def resolve(self, identity: str, policy: SandboxPolicy) -> ResolvedSandbox:
        """Resolve the sandbox for a new session.

        Raises:
            InvalidIdentity: identity cannot be used as an account name.
            SandboxCreateFailed: the engine could not start a persistent sandbox.
                Nothing is recorded, so the next session retries.
        """
        validate_identity(identity)
        if not policy.persistent:
            return self._resolve_ephemeral(identity, policy)

        with self._identity_lock(identity):
            with self._guard:
                sandbox_id = self._sandboxes.get(identity)
            if sandbox_id is None:
                sandbox_id = self.runtime.create(sandbox_name(policy.name_prefix, identity), identity)
                with self._guard:
                    self._sandboxes[identity] = sandbox_id
            else:
                logger.info("Reusing sandbox id=%s identity=%s", sandbox_id[:12], identity)
        return ResolvedSandbox(
            sandbox_id=sandbox_id,
            identity=identity,
            persistent=True,
            shell_command=self.runtime.exec_command(sandbox_id, identity),
        )

    def _resolve_ephemeral(self, identity: str, policy: SandboxPolicy) -> ResolvedSandbox:
        name = sandbox_name(policy.name_prefix, identity, sequence=next(self._sequence))
        with self._guard:
            self._ephemeral.add(name)
        return ResolvedSandbox(
            sandbox_id=name,
            identity=identity,
            persistent=False,
            shell_command=self.runtime.run_command(name, identity),
        )

    def release(self, sandbox: ResolvedSandbox) -> None:
        """Forget an ephemeral sandbox once its session has ended."""
        if sandbox.persistent:
            return
        with self._guard:
            self._ephemeral.discard(sandbox.sandbox_id)

    def lookup(self, identity: str) -> str | None:
        with self._guard:
            return self._sandboxes.get(identity)

    def tracked(self) -> list[str]:
        with self._guard:
            return [*self._sandboxes.values(), *sorted(self._ephemeral)]

    def destroy_all(self) -> None:
        """Force-remove every tracked sandbox in one engine call.

        Raises:
            SandboxRemoveFailed: the engine reported an error. Entries are kept.
        """
        with self._guard:
            sandbox_ids = [*self._sandboxes.values(), *sorted(self._ephemeral)]
        if not sandbox_ids:
            return
        logger.info("Destroying sandboxes count=%d", len(sandbox_ids))
        self.runtime.remove(sandbox_ids)
        removed = set(sandbox_ids)
        with self._guard:
            self._sandboxes = {k: v for k, v in self._sandboxes.items() if v not in removed}
            self._ephemeral -= removed

    def _identity_lock(self, identity: str) -> threading.Lock:
        with self._guard:
            lock = self._identity_locks.get(identity)
            if lock is None:
                lock = threading.Lock()
                self._identity_locks[identity] = lock
            return lock
