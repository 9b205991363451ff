"""Sandbox layer: docker runtime adapter and identity registry.

Usage:
    from sshbox.sandbox import DockerRuntime, SandboxRegistry

    registry = SandboxRegistry(DockerRuntime(policy))
    sandbox = registry.resolve("alice", policy)
"""

from sshbox.sandbox.docker import DockerRuntime, sandbox_name
from sshbox.sandbox.login import login_script, validate_identity
from sshbox.sandbox.registry import ResolvedSandbox, SandboxRegistry

__all__ = [
    "DockerRuntime",
    "ResolvedSandbox",
    "SandboxRegistry",
    "login_script",
    "sandbox_name",
    "validate_identity",
]
