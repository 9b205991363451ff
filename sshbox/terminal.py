"""Terminal bridge between a remote channel and a sandbox shell on a pty.

Architecture:
    remote channel ──recv──▶ pty master ──▶ sandbox shell (docker client)
    remote channel ◀─send─── pty master ◀──
"""

from __future__ import annotations

import errno
import fcntl
import logging
import os
import pty
import select
import signal
import struct
import subprocess
import termios
import threading
from collections.abc import Callable
from typing import Protocol

from sshbox.control import TerminalSize
from sshbox.errors import PtyStartFailed

logger = logging.getLogger(__name__)

_READ_CHUNK = 32 * 1024
_POLL_INTERVAL_SEC = 0.2
_JOIN_TIMEOUT_SEC = 2.0


class Channel(Protocol):
    """The part of a paramiko Channel the bridge uses."""

    def recv(self, nbytes: int) -> bytes: ...

    def sendall(self, data: bytes) -> None: ...

    def close(self) -> None: ...


def set_window_size(fd: int, size: TerminalSize) -> None:
    winsize = struct.pack(
        "HHHH",
        _clamp_u16(size.rows),
        _clamp_u16(size.columns),
        _clamp_u16(size.width_px),
        _clamp_u16(size.height_px),
    )
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _clamp_u16(value: int) -> int:
    return max(0, min(value, 0xFFFF))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(): stdin is the pty slave. Without a
    # controlling tty the docker client never receives SIGWINCH on resize.
    # Only a single ioctl happens here, no locks or allocation, so running
    # it as preexec_fn from a threaded parent is safe.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class ShellProcess:
    """A subprocess attached to the slave side of a fresh pty."""

    def __init__(self, process: subprocess.Popen, master_fd: int):
        self.process = process
        self.master_fd: int | None = master_fd

    @classmethod
    def spawn(cls, command: list[str], size: TerminalSize | None = None) -> ShellProcess:
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise PtyStartFailed(f"failed to allocate pty: {e}") from e
        try:
            if size is not None:
                set_window_size(slave_fd, size)
            process = subprocess.Popen(
                command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
                close_fds=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise PtyStartFailed(f"failed to start {command[0]}: {e}") from e
        finally:
            os.close(slave_fd)
        return cls(process, master_fd)

    def resize(self, size: TerminalSize) -> None:
        if self.master_fd is not None:
            set_window_size(self.master_fd, size)

    def read(self, nbytes: int) -> bytes:
        """Read pty output; b"" once the slave side has gone away."""
        fd = self._fd()
        try:
            return os.read(fd, nbytes)
        except OSError as e:
            if e.errno == errno.EIO:
                return b""
            raise

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = os.write(self._fd(), view)
            view = view[written:]

    def _fd(self) -> int:
        fd = self.master_fd
        if fd is None:
            raise OSError(errno.EBADF, "pty master already closed")
        return fd

    def hangup(self) -> None:
        if self.process.poll() is not None:
            return
        try:
            os.killpg(self.process.pid, signal.SIGHUP)
        except ProcessLookupError:
            pass

    def wait(self, grace_sec: float) -> int:
        try:
            return self.process.wait(timeout=grace_sec)
        except subprocess.TimeoutExpired:
            logger.warning("Shell pid=%s ignored hangup, killing", self.process.pid)
            self.process.kill()
            return self.process.wait()

    def close_pty(self) -> None:
        if self.master_fd is not None:
            os.close(self.master_fd)
            self.master_fd = None


Spawner = Callable[[list[str], TerminalSize | None], ShellProcess]


class TerminalBridge:
    """Owns one session's pty and the two byte pumps around it.

    resize() may be called at any time: before start() the size is kept and
    applied when the pty is created. close() runs its body at most once no
    matter how many threads trigger it.
    """

    def __init__(self, spawn: Spawner = ShellProcess.spawn, exit_grace_sec: float = 5.0):
        self._spawn = spawn
        self.exit_grace_sec = exit_grace_sec
        self.channel: Channel | None = None
        self.shell: ShellProcess | None = None
        self.exit_status: int | None = None
        self._size: TerminalSize | None = None
        self._size_lock = threading.Lock()
        self._latch = threading.Lock()
        self._stopping = threading.Event()
        self._closed = threading.Event()
        self._pumps_started = threading.Event()
        self._pumps: list[threading.Thread] = []

    @property
    def size(self) -> TerminalSize | None:
        return self._size

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def bind(self, channel: Channel) -> None:
        self.channel = channel

    def start(self, command: list[str]) -> None:
        """Spawn the shell on a new pty and start both pumps.

        Raises:
            PtyStartFailed: the pty or process could not be created.
        """
        if self.channel is None:
            raise RuntimeError("TerminalBridge.start() before bind()")
        with self._size_lock:
            if self._stopping.is_set():
                raise PtyStartFailed("session closed before shell start")
            self.shell = self._spawn(command, self._size)
        logger.info("Shell started pid=%s", self.shell.process.pid)
        self._pumps = [
            threading.Thread(target=self._pump_output, name="sshbox-pty-out", daemon=True),
            threading.Thread(target=self._pump_input, name="sshbox-pty-in", daemon=True),
        ]
        try:
            for thread in self._pumps:
                thread.start()
        finally:
            # Teardown may already be running on the first pump; it joins
            # only after this is set.
            self._pumps_started.set()

    def resize(self, size: TerminalSize) -> None:
        with self._size_lock:
            self._size = size
            if self.shell is not None and not self._stopping.is_set():
                try:
                    self.shell.resize(size)
                except OSError as e:
                    logger.warning("Failed to resize pty: %s", e)

    def close(self) -> None:
        if not self._latch.acquire(blocking=False):
            return
        try:
            self._teardown()
        finally:
            self._closed.set()

    def wait_closed(self, timeout: float | None = None) -> bool:
        return self._closed.wait(timeout)

    def _teardown(self) -> None:
        with self._size_lock:
            self._stopping.set()
        if self.channel is not None:
            self.channel.close()
        shell = self.shell
        if shell is None:
            logger.info("Session closed (no shell started)")
            return
        try:
            shell.hangup()
            status = shell.wait(self.exit_grace_sec)
            self.exit_status = status
            if status != 0:
                logger.warning("Shell pid=%s exited with status %s", shell.process.pid, status)
            self._join_pumps()
        finally:
            shell.close_pty()
        logger.info("Session closed")

    def _join_pumps(self) -> None:
        self._pumps_started.wait(_JOIN_TIMEOUT_SEC)
        current = threading.current_thread()
        for thread in self._pumps:
            if thread is current or thread.ident is None:
                continue
            thread.join(_JOIN_TIMEOUT_SEC)

    def _pump_output(self) -> None:
        shell = self.shell
        assert shell is not None and self.channel is not None
        try:
            while not self._stopping.is_set():
                readable, _, _ = select.select([shell.master_fd], [], [], _POLL_INTERVAL_SEC)
                if not readable:
                    continue
                data = shell.read(_READ_CHUNK)
                if not data:
                    break
                self.channel.sendall(data)
        except (OSError, TypeError, ValueError) as e:
            if not self._stopping.is_set():
                logger.debug("pty -> channel pump stopped: %s", e)
        finally:
            self.close()

    def _pump_input(self) -> None:
        shell = self.shell
        assert shell is not None and self.channel is not None
        try:
            while not self._stopping.is_set():
                data = self.channel.recv(_READ_CHUNK)
                if not data:
                    break
                shell.write(data)
        except OSError as e:
            if not self._stopping.is_set():
                logger.debug("channel -> pty pump stopped: %s", e)
        finally:
            self.close()
