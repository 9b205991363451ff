"""Server configuration.

Priority: CLI flags > config file (--config <path> or SSHBOX_CONFIG env) > defaults
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from sshbox.errors import ConfigError

DEFAULT_LISTEN = ":22"
DEFAULT_IMAGE = "ubuntu"


class SandboxPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    image: str = DEFAULT_IMAGE
    persistent: bool = False
    hostname: str | None = None
    name_prefix: str = "sshbox"
    root_alias: str = "r00t"
    docker_binary: str = "docker"
    create_timeout_sec: float = Field(default=60.0, gt=0)
    shell_exit_grace_sec: float = Field(default=5.0, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _default_blank_image(cls, value):
        # An explicit empty image falls back to the base distribution image.
        if isinstance(value, dict) and not value.get("image"):
            payload = dict(value)
            payload.pop("image", None)
            return payload
        return value


class AuthConfig(BaseModel):
    mode: Literal["deny", "allow-all", "authorized-keys"] = "deny"
    authorized_keys: str | None = None

    @model_validator(mode="after")
    def _require_keys_file(self) -> AuthConfig:
        if self.mode == "authorized-keys" and not self.authorized_keys:
            raise ValueError("auth mode 'authorized-keys' requires an authorized_keys path")
        return self


class ServerConfig(BaseModel):
    listen: str = DEFAULT_LISTEN
    private_keys: list[str] = Field(default_factory=list)
    sandbox: SandboxPolicy = Field(default_factory=SandboxPolicy)
    auth: AuthConfig = Field(default_factory=AuthConfig)

    @classmethod
    def load(cls, path: str | Path) -> ServerConfig:
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        try:
            text = path.read_text()
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(text) or {}
            else:
                data = json.loads(text)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read config {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must contain a mapping")
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> ServerConfig:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def with_overrides(self, overrides: dict[str, Any]) -> ServerConfig:
        """Return a copy with CLI overrides merged in. None values are skipped."""
        data = self.model_dump()
        for key, value in overrides.items():
            if value is None:
                continue
            if isinstance(value, dict):
                data[key] = {**data.get(key, {}), **{k: v for k, v in value.items() if v is not None}}
            else:
                data[key] = value
        return self.from_mapping(data)

    def listen_address(self) -> tuple[str, int]:
        return parse_listen_address(self.listen)


def parse_listen_address(listen: str) -> tuple[str, int]:
    host, sep, port = listen.rpartition(":")
    if not sep:
        raise ConfigError(f"Invalid listen address (expected host:port): {listen!r}")
    host = host.strip("[]")
    try:
        port_num = int(port)
    except ValueError as e:
        raise ConfigError(f"Invalid listen port: {listen!r}") from e
    if not 0 <= port_num <= 65535:
        raise ConfigError(f"Listen port out of range: {listen!r}")
    return host, port_num


def resolve_config_path(cli_arg: str | None) -> str | None:
    if cli_arg:
        return cli_arg
    return os.getenv("SSHBOX_CONFIG") or None
