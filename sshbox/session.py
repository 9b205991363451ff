"""Session orchestration: one accepted "session" channel from open to teardown.

Flow:
    opened → resolving (registry) → starting_shell (pty) → bridging → closed

Any SessionError before bridging goes straight to closed through the bridge's
close path, so the channel is closed and nothing is leaked.
"""

from __future__ import annotations

import logging
import threading
import uuid

from sshbox.config import SandboxPolicy
from sshbox.control import ControlRequest, ControlRequestDispatcher, TerminalSize
from sshbox.errors import SessionError
from sshbox.lifecycle import SessionState, assert_session_transition
from sshbox.sandbox.registry import ResolvedSandbox, SandboxRegistry
from sshbox.terminal import Channel, ShellProcess, Spawner, TerminalBridge

logger = logging.getLogger(__name__)


class Session:
    """State for one interactive channel."""

    def __init__(self, identity: str, bridge: TerminalBridge):
        self.session_id = f"sess-{uuid.uuid4().hex[:12]}"
        self.identity = identity
        self.bridge = bridge
        self.dispatcher = ControlRequestDispatcher(bridge)
        self.sandbox: ResolvedSandbox | None = None
        self.state = SessionState.OPENED
        self._state_lock = threading.Lock()

    def transition(self, target: SessionState, *, reason: str) -> None:
        with self._state_lock:
            assert_session_transition(self.state, target, reason=reason)
            self.state = target
        logger.debug("Session %s -> %s (%s)", self.session_id, target, reason)

    def handle_request(self, request: ControlRequest) -> bool:
        return self.dispatcher.dispatch(request)

    @property
    def size(self) -> TerminalSize | None:
        return self.bridge.size


class SessionOrchestrator:
    """Create sessions and drive each one through its lifecycle."""

    def __init__(
        self,
        registry: SandboxRegistry,
        policy: SandboxPolicy,
        spawn: Spawner = ShellProcess.spawn,
    ):
        self.registry = registry
        self.policy = policy
        self._spawn = spawn

    def open_session(self, identity: str) -> Session:
        bridge = TerminalBridge(spawn=self._spawn, exit_grace_sec=self.policy.shell_exit_grace_sec)
        return Session(identity, bridge)

    def serve(self, session: Session, channel: Channel) -> None:
        """Run a session to completion. Blocks until teardown has finished."""
        session.bridge.bind(channel)
        try:
            session.transition(SessionState.RESOLVING, reason="channel accepted")
            session.sandbox = self.registry.resolve(session.identity, self.policy)
            session.transition(SessionState.STARTING_SHELL, reason="sandbox resolved")
            session.bridge.start(session.sandbox.shell_command)
            session.transition(SessionState.BRIDGING, reason="shell started")
            logger.info(
                "Session %s bridging identity=%s sandbox=%s persistent=%s",
                session.session_id,
                session.identity,
                session.sandbox.sandbox_id[:24],
                session.sandbox.persistent,
            )
        except SessionError as e:
            logger.error("Session %s setup failed identity=%s: %s", session.session_id, session.identity, e)
            session.bridge.close()
        except Exception:
            logger.exception("Session %s crashed during setup", session.session_id)
            session.bridge.close()
            raise
        session.bridge.wait_closed()
        session.transition(SessionState.CLOSED, reason="bridge closed")
        if session.sandbox is not None:
            self.registry.release(session.sandbox)
