"""Gateway: owns the long-lived state of one sshbox process.

Usage:
    gateway = Gateway(ServerConfig.load("sshbox.yaml"))
    try:
        gateway.run()
    finally:
        gateway.shutdown()
"""

from __future__ import annotations

import logging
import threading

from sshbox.auth import create_authorizer
from sshbox.config import ServerConfig
from sshbox.errors import SandboxRemoveFailed
from sshbox.keys import load_host_keys
from sshbox.sandbox import DockerRuntime, SandboxRegistry
from sshbox.server import ConnectionSupervisor
from sshbox.session import SessionOrchestrator

logger = logging.getLogger(__name__)


class Gateway:
    def __init__(self, config: ServerConfig):
        self.config = config
        self.host_keys = load_host_keys(config.private_keys)
        self.authorizer = create_authorizer(config.auth)
        self.registry = SandboxRegistry(DockerRuntime(config.sandbox))
        self.orchestrator = SessionOrchestrator(self.registry, config.sandbox)
        self.supervisor = ConnectionSupervisor(self.host_keys, self.orchestrator, self.authorizer)
        self._shutdown_once = threading.Lock()

    def run(self) -> None:
        """Bind the listening socket and accept connections until stop()."""
        host, port = self.config.listen_address()
        self.supervisor.listen(host, port)
        logger.info(
            "Listening on %s image=%s persistent=%s auth=%s",
            self.config.listen,
            self.config.sandbox.image,
            self.config.sandbox.persistent,
            self.config.auth.mode,
        )
        self.supervisor.serve_forever()

    def stop(self) -> None:
        self.supervisor.stop()

    def shutdown(self) -> None:
        """Stop accepting and force-remove every tracked sandbox. Idempotent."""
        if not self._shutdown_once.acquire(blocking=False):
            return
        self.supervisor.stop()
        try:
            self.registry.destroy_all()
        except SandboxRemoveFailed as e:
            logger.error("Sandbox cleanup failed: %s %s", e, e.output)
