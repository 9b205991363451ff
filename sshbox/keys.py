"""Host key loading."""

from __future__ import annotations

from pathlib import Path

import paramiko

from sshbox.errors import ConfigError

_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
    paramiko.RSAKey,
)


def load_host_key(path: str | Path) -> paramiko.PKey:
    path = Path(path).expanduser()
    if not path.is_file():
        raise ConfigError(f"Host key not found: {path}")
    errors: list[str] = []
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key_file(str(path))
        except (paramiko.SSHException, TypeError, ValueError) as e:
            errors.append(f"{key_class.__name__}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read host key {path}: {e}") from e
    raise ConfigError(f"Unsupported or invalid host key {path} ({'; '.join(errors)})")


def load_host_keys(paths: list[str]) -> list[paramiko.PKey]:
    if not paths:
        raise ConfigError("No private keys provided")
    return [load_host_key(p) for p in paths]
