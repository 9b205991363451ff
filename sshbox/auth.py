"""Public-key authorization policies.

The gateway only advertises the publickey method; every offered key is passed
to the configured Authorizer. The default denies everyone.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import paramiko

from sshbox.config import AuthConfig
from sshbox.errors import ConfigError

logger = logging.getLogger(__name__)

_KEY_TYPES = {
    "ssh-rsa",
    "ssh-dss",
    "ssh-ed25519",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "sk-ssh-ed25519@openssh.com",
    "sk-ecdsa-sha2-nistp256@openssh.com",
}


class Authorizer(Protocol):
    def authorize(self, identity: str, key: paramiko.PKey) -> bool: ...


class DenyAll:
    def authorize(self, identity: str, key: paramiko.PKey) -> bool:
        return False


class AllowAll:
    def authorize(self, identity: str, key: paramiko.PKey) -> bool:
        return True


class AuthorizedKeys:
    """Accept keys listed in an OpenSSH authorized_keys file (any identity)."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self.keys = self._load(self.path)

    def authorize(self, identity: str, key: paramiko.PKey) -> bool:
        return (key.get_name(), key.get_base64()) in self.keys

    @staticmethod
    def _load(path: Path) -> set[tuple[str, str]]:
        try:
            lines = path.read_text().splitlines()
        except OSError as e:
            raise ConfigError(f"Cannot read authorized keys {path}: {e}") from e
        keys: set[tuple[str, str]] = set()
        for line in lines:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            fields = line.split()
            # Lines may start with an options field: skip to the key type.
            for i, field in enumerate(fields[:-1]):
                if field in _KEY_TYPES:
                    keys.add((field, fields[i + 1]))
                    break
        return keys


def create_authorizer(config: AuthConfig) -> Authorizer:
    if config.mode == "allow-all":
        logger.warning("Authorization disabled: every public key is accepted")
        return AllowAll()
    if config.mode == "authorized-keys":
        assert config.authorized_keys is not None
        return AuthorizedKeys(config.authorized_keys)
    return DenyAll()
