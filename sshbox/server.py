"""SSH front end: paramiko server interface and the connection supervisor.

One thread per TCP connection runs the handshake and accepts channels; one
thread per accepted "session" channel runs the SessionOrchestrator. Control
requests are answered on paramiko's transport thread through the session's
dispatcher.
"""

from __future__ import annotations

import logging
import socket
import threading
import time

import paramiko

from sshbox.auth import Authorizer
from sshbox.control import ENV, PTY_REQ, SHELL, WINDOW_CHANGE, ControlRequest
from sshbox.errors import HandshakeError, ListenError
from sshbox.lifecycle import ConnectionState, assert_connection_transition
from sshbox.session import Session, SessionOrchestrator

logger = logging.getLogger(__name__)

SESSION_CHANNEL = "session"


class SandboxSSHServer(paramiko.ServerInterface):
    """Per-connection paramiko callbacks.

    Sessions are created when a "session" channel is opened, before any of
    its requests can arrive, and are looked up by channel id afterwards.
    """

    def __init__(self, orchestrator: SessionOrchestrator, authorizer: Authorizer, peer: str = "-"):
        self.orchestrator = orchestrator
        self.authorizer = authorizer
        self.peer = peer
        self.identity: str | None = None
        self._sessions: dict[int, Session] = {}
        self._lock = threading.Lock()

    # ── authentication ──

    def get_allowed_auths(self, username: str) -> str:
        return "publickey"

    def check_auth_publickey(self, username: str, key: paramiko.PKey) -> int:
        if self.authorizer.authorize(username, key):
            logger.info("Accepted key peer=%s user=%s type=%s", self.peer, username, key.get_name())
            self.identity = username
            return paramiko.AUTH_SUCCESSFUL
        logger.info("Rejected key peer=%s user=%s type=%s", self.peer, username, key.get_name())
        return paramiko.AUTH_FAILED

    # ── channels ──

    def check_channel_request(self, kind: str, chanid: int) -> int:
        if kind != SESSION_CHANNEL:
            logger.info("Rejected channel peer=%s kind=%s", self.peer, kind)
            return paramiko.OPEN_FAILED_UNKNOWN_CHANNEL_TYPE
        if self.identity is None:
            return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED
        session = self.orchestrator.open_session(self.identity)
        with self._lock:
            self._sessions[chanid] = session
        return paramiko.OPEN_SUCCEEDED

    def check_channel_direct_tcpip_request(self, chanid: int, origin, destination) -> int:
        # paramiko routes direct-tcpip here instead of check_channel_request.
        return self.check_channel_request("direct-tcpip", chanid)

    def session_for(self, chanid: int) -> Session | None:
        with self._lock:
            return self._sessions.get(chanid)

    def discard_session(self, chanid: int) -> None:
        with self._lock:
            self._sessions.pop(chanid, None)

    @property
    def sessions(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    # ── control requests ──

    def check_channel_shell_request(self, channel: paramiko.Channel) -> bool:
        return self._dispatch(channel, SHELL, b"")

    def check_channel_pty_request(
        self,
        channel: paramiko.Channel,
        term: bytes,
        width: int,
        height: int,
        pixelwidth: int,
        pixelheight: int,
        modes: bytes,
    ) -> bool:
        m = paramiko.Message()
        m.add_string(term)
        m.add_int(width)
        m.add_int(height)
        m.add_int(pixelwidth)
        m.add_int(pixelheight)
        m.add_string(modes)
        return self._dispatch(channel, PTY_REQ, m.asbytes())

    def check_channel_window_change_request(
        self,
        channel: paramiko.Channel,
        width: int,
        height: int,
        pixelwidth: int,
        pixelheight: int,
    ) -> bool:
        m = paramiko.Message()
        m.add_int(width)
        m.add_int(height)
        m.add_int(pixelwidth)
        m.add_int(pixelheight)
        return self._dispatch(channel, WINDOW_CHANGE, m.asbytes())

    def check_channel_env_request(self, channel: paramiko.Channel, name: bytes, value: bytes) -> bool:
        m = paramiko.Message()
        m.add_string(name)
        m.add_string(value)
        return self._dispatch(channel, ENV, m.asbytes())

    def check_channel_exec_request(self, channel: paramiko.Channel, command: bytes) -> bool:
        m = paramiko.Message()
        m.add_string(command)
        return self._dispatch(channel, "exec", m.asbytes())

    def check_channel_subsystem_request(self, channel: paramiko.Channel, name: str) -> bool:
        m = paramiko.Message()
        m.add_string(name)
        return self._dispatch(channel, "subsystem", m.asbytes())

    def _dispatch(self, channel: paramiko.Channel, kind: str, payload: bytes) -> bool:
        session = self.session_for(channel.get_id())
        if session is None:
            return False
        # The verdict is the reply; paramiko sends it only when want-reply is set.
        return session.handle_request(ControlRequest(kind=kind, payload=payload))


class ConnectionSupervisor:
    """Accept loop plus per-connection handshake and channel dispatch."""

    def __init__(
        self,
        host_keys: list[paramiko.PKey],
        orchestrator: SessionOrchestrator,
        authorizer: Authorizer,
        *,
        auth_timeout_sec: float = 30.0,
        poll_interval_sec: float = 0.5,
    ):
        self.host_keys = host_keys
        self.orchestrator = orchestrator
        self.authorizer = authorizer
        self.auth_timeout_sec = auth_timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self._stopping = threading.Event()
        self._listener: socket.socket | None = None
        self._transports: set[paramiko.Transport] = set()
        self._lock = threading.Lock()

    def listen(self, host: str, port: int) -> socket.socket:
        try:
            family = socket.AF_INET6 if ":" in host else socket.AF_INET
            sock = socket.create_server((host, port), family=family, backlog=128)
        except OSError as e:
            raise ListenError(f"Failed to listen on {host}:{port}: {e}") from e
        sock.settimeout(self.poll_interval_sec)
        self._listener = sock
        return sock

    def serve_forever(self) -> None:
        if self._listener is None:
            raise RuntimeError("serve_forever() before listen()")
        listener = self._listener
        while not self._stopping.is_set():
            try:
                conn, addr = listener.accept()
            except TimeoutError:
                continue
            except OSError as e:
                if self._stopping.is_set():
                    break
                logger.error("Failed to accept incoming connection: %s", e)
                continue
            conn.settimeout(None)
            peer = f"{addr[0]}:{addr[1]}" if isinstance(addr, tuple) else str(addr)
            threading.Thread(
                target=self.handle_connection,
                args=(conn, peer),
                name=f"sshbox-conn-{peer}",
                daemon=True,
            ).start()

    def stop(self) -> None:
        self._stopping.set()
        if self._listener is not None:
            self._listener.close()
        with self._lock:
            transports = list(self._transports)
        for transport in transports:
            transport.close()

    def handle_connection(self, sock: socket.socket, peer: str = "-") -> None:
        state = ConnectionState.ACCEPTED

        def advance(target: ConnectionState, reason: str) -> None:
            nonlocal state
            assert_connection_transition(state, target, reason=reason)
            state = target

        transport = paramiko.Transport(sock)
        for key in self.host_keys:
            transport.add_server_key(key)
        server = SandboxSSHServer(self.orchestrator, self.authorizer, peer=peer)
        with self._lock:
            self._transports.add(transport)
        try:
            advance(ConnectionState.HANDSHAKING, "socket accepted")
            try:
                self._handshake(transport, server)
            except HandshakeError as e:
                logger.warning("Failed to handshake peer=%s: %s", peer, e)
                advance(ConnectionState.FAILED, "handshake error")
                return
            if not self._wait_authenticated(transport, server):
                logger.info("Authentication not completed peer=%s", peer)
                advance(ConnectionState.FAILED, "no accepted key")
                return
            advance(ConnectionState.AUTHENTICATED, "publickey accepted")
            self._accept_channels(transport, server)
        finally:
            with self._lock:
                self._transports.discard(transport)
            transport.close()
            advance(ConnectionState.CLOSED, "connection ended")
            logger.debug("Connection closed peer=%s", peer)

    @staticmethod
    def _handshake(transport: paramiko.Transport, server: SandboxSSHServer) -> None:
        """Run key exchange on the transport thread and wait for it to finish.

        Raises:
            HandshakeError: negotiation failed or the peer went away.
        """
        try:
            transport.start_server(server=server)
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise HandshakeError(str(e) or type(e).__name__) from e

    def _wait_authenticated(self, transport: paramiko.Transport, server: SandboxSSHServer) -> bool:
        deadline = time.monotonic() + self.auth_timeout_sec
        while time.monotonic() < deadline:
            if transport.is_authenticated() and server.identity is not None:
                return True
            if not transport.is_active():
                return False
            if self._stopping.wait(self.poll_interval_sec):
                return False
        return False

    def _accept_channels(self, transport: paramiko.Transport, server: SandboxSSHServer) -> None:
        while transport.is_active() and not self._stopping.is_set():
            channel = transport.accept(timeout=self.poll_interval_sec)
            if channel is None:
                continue
            session = server.session_for(channel.get_id())
            if session is None:
                channel.close()
                continue
            threading.Thread(
                target=self._serve_session,
                args=(server, session, channel),
                name=f"sshbox-{session.session_id}",
                daemon=True,
            ).start()

    def _serve_session(self, server: SandboxSSHServer, session: Session, channel: paramiko.Channel) -> None:
        try:
            self.orchestrator.serve(session, channel)
        finally:
            server.discard_session(channel.get_id())
