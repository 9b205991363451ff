"""Command line entry point: python -m sshbox"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import Any

from sshbox.config import ServerConfig, resolve_config_path
from sshbox.errors import ConfigError, ListenError
from sshbox.gateway import Gateway
from sshbox.logging_config import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sshbox",
        description="SSH server that drops every identity into its own docker sandbox",
    )
    parser.add_argument("--config", help="YAML or JSON config file (default: $SSHBOX_CONFIG)")
    parser.add_argument("--listen", help="host:port to listen on (default :22)")
    parser.add_argument("--key", action="append", dest="keys", help="host private key file (repeatable)")
    parser.add_argument("--image", help="sandbox image (default ubuntu)")
    parser.add_argument(
        "--persistent",
        action="store_true",
        default=None,
        help="reuse one sandbox per identity instead of one per session",
    )
    parser.add_argument("--auth", choices=["deny", "allow-all", "authorized-keys"], help="authorization policy")
    parser.add_argument("--authorized-keys", help="authorized_keys file for --auth authorized-keys")
    parser.add_argument("--log-level", help="logging level (default $SSHBOX_LOG_LEVEL or INFO)")
    return parser


def load_config(args: argparse.Namespace) -> ServerConfig:
    path = resolve_config_path(args.config)
    config = ServerConfig.load(path) if path else ServerConfig()
    overrides: dict[str, Any] = {
        "listen": args.listen,
        "private_keys": args.keys,
        "sandbox": {"image": args.image, "persistent": args.persistent},
        "auth": {"mode": args.auth, "authorized_keys": args.authorized_keys},
    }
    return config.with_overrides(overrides)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        gateway = Gateway(load_config(args))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 2

    signal.signal(signal.SIGTERM, lambda signum, frame: gateway.stop())
    try:
        gateway.run()
    except ListenError as e:
        logger.error("%s", e)
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        gateway.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
