"""Tests for SessionOrchestrator lifecycle handling."""

import fcntl
import struct
import termios
import threading
import time

import pytest

from fakes.channel import FakeChannel
from fakes.docker import FakeRuntime
from sshbox.config import SandboxPolicy
from sshbox.control import ControlRequest, TerminalSize
from sshbox.lifecycle import SessionState
from sshbox.sandbox.registry import SandboxRegistry
from sshbox.session import SessionOrchestrator
from sshbox.terminal import ShellProcess


def _serve_in_thread(orchestrator, session, channel):
    thread = threading.Thread(target=orchestrator.serve, args=(session, channel), daemon=True)
    thread.start()
    return thread


def _wait_for_state(session, state, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if session.state == state:
            return True
        time.sleep(0.02)
    return False


class RecordingSpawn:
    def __init__(self):
        self.calls = []

    def __call__(self, command, size):
        self.calls.append(command)
        return ShellProcess.spawn(command, size)


@pytest.fixture
def spawn():
    return RecordingSpawn()


def _orchestrator(runtime, spawn, *, persistent):
    policy = SandboxPolicy(persistent=persistent, shell_exit_grace_sec=2.0)
    return SessionOrchestrator(SandboxRegistry(runtime), policy, spawn=spawn)


def test_session_bridges_until_remote_closes(spawn):
    runtime = FakeRuntime(shell=["cat"])
    orchestrator = _orchestrator(runtime, spawn, persistent=False)
    session = orchestrator.open_session("alice")
    channel = FakeChannel()
    thread = _serve_in_thread(orchestrator, session, channel)

    assert _wait_for_state(session, SessionState.BRIDGING)
    channel.feed(b"echo me\n")
    assert channel.wait_for_output(b"echo me")

    channel.send_eof()
    thread.join(10)
    assert not thread.is_alive()
    assert session.state == SessionState.CLOSED
    assert channel.close_calls == 1
    assert spawn.calls == [["cat"]]
    assert orchestrator.registry.tracked() == []


def test_persistent_session_reuses_sandbox(spawn):
    runtime = FakeRuntime(shell=["/bin/sh", "-c", "true"])
    orchestrator = _orchestrator(runtime, spawn, persistent=True)
    sandboxes = []
    for _ in range(2):
        session = orchestrator.open_session("alice")
        orchestrator.serve(session, FakeChannel())
        sandboxes.append(session.sandbox.sandbox_id)
    assert sandboxes[0] == sandboxes[1]
    assert len(runtime.created) == 1
    assert orchestrator.registry.lookup("alice") == sandboxes[0]


def test_create_failure_closes_channel_without_pty(spawn):
    runtime = FakeRuntime(shell=["cat"], fail_create=True)
    orchestrator = _orchestrator(runtime, spawn, persistent=True)
    session = orchestrator.open_session("alice")
    channel = FakeChannel()
    orchestrator.serve(session, channel)
    assert channel.close_calls == 1
    assert spawn.calls == []
    assert session.bridge.shell is None
    assert session.state == SessionState.CLOSED


def test_invalid_identity_closes_channel(spawn):
    runtime = FakeRuntime(shell=["cat"])
    orchestrator = _orchestrator(runtime, spawn, persistent=True)
    session = orchestrator.open_session("not a user")
    channel = FakeChannel()
    orchestrator.serve(session, channel)
    assert channel.closed
    assert runtime.created == []
    assert spawn.calls == []


def test_shell_start_failure_closes_channel():
    runtime = FakeRuntime(shell=["/nonexistent/sshbox-shell"])
    orchestrator = SessionOrchestrator(SandboxRegistry(runtime), SandboxPolicy())
    session = orchestrator.open_session("alice")
    channel = FakeChannel()
    orchestrator.serve(session, channel)
    assert channel.close_calls == 1
    assert session.state == SessionState.CLOSED
    assert orchestrator.registry.tracked() == []


def test_terminal_requests_before_and_after_shell(spawn):
    runtime = FakeRuntime(shell=["cat"])
    orchestrator = _orchestrator(runtime, spawn, persistent=False)
    session = orchestrator.open_session("alice")

    term = b"xterm"
    pty_req = struct.pack(">I", len(term)) + term + struct.pack(">IIII", 80, 24, 0, 0) + struct.pack(">I", 0)
    assert session.handle_request(ControlRequest("pty-req", pty_req))
    assert session.handle_request(ControlRequest("shell", b""))
    assert session.size == TerminalSize(80, 24)

    channel = FakeChannel()
    thread = _serve_in_thread(orchestrator, session, channel)
    assert _wait_for_state(session, SessionState.BRIDGING)

    assert session.handle_request(ControlRequest("window-change", struct.pack(">IIII", 100, 40, 0, 0)))
    raw = fcntl.ioctl(session.bridge.shell.master_fd, termios.TIOCGWINSZ, b"\x00" * 8)
    rows, cols, _, _ = struct.unpack("HHHH", raw)
    assert (cols, rows) == (100, 40)
    assert len(spawn.calls) == 1

    session.bridge.close()
    thread.join(10)
    assert session.state == SessionState.CLOSED
