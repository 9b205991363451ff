import logging
import os
import sys


def configure_logging(level: str | None = None) -> None:
    if logging.getLogger().handlers:
        return
    level = (level or os.getenv("SSHBOX_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("paramiko").setLevel(max(logging.getLogger().level, logging.WARNING))
