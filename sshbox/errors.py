"""Error taxonomy for sshbox.

Startup errors (ConfigError, ListenError) are fatal. SessionError and its
subclasses are scoped to one channel: the orchestrator logs them and runs the
close path, they never cross into other sessions.
"""

from __future__ import annotations


class SshboxError(Exception):
    """Base class for all sshbox errors."""


class ConfigError(SshboxError):
    """Missing or invalid configuration, including host key material."""


class ListenError(SshboxError):
    """The listening address could not be bound."""


class HandshakeError(SshboxError):
    """SSH negotiation with a client failed."""


class SessionError(SshboxError):
    """Failure that ends a single session."""


class SandboxCreateFailed(SessionError):
    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output

    def __str__(self) -> str:
        if self.output:
            return f"{self.args[0]}: {self.output}"
        return self.args[0]


class PtyStartFailed(SessionError):
    pass


class InvalidIdentity(SessionError):
    pass


class SandboxRemoveFailed(SshboxError):
    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class MalformedRequest(ValueError):
    """A control request payload could not be decoded."""
