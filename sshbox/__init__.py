"""sshbox: an SSH server that routes each identity into a docker sandbox.

Usage:
    from sshbox import Gateway, ServerConfig

    gateway = Gateway(ServerConfig.load("sshbox.yaml"))
"""

from sshbox.config import AuthConfig, SandboxPolicy, ServerConfig
from sshbox.gateway import Gateway

__version__ = "0.1.0"

__all__ = [
    "AuthConfig",
    "Gateway",
    "SandboxPolicy",
    "ServerConfig",
    "__version__",
]
