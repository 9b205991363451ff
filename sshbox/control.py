"""Session control requests: wire decoding and dispatch.

Payload layouts (all integers big-endian uint32):
    pty-req:        string term, cols, rows, width_px, height_px, string modes
    window-change:  cols, rows, width_px, height_px
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Protocol

from sshbox.errors import MalformedRequest

logger = logging.getLogger(__name__)

SHELL = "shell"
PTY_REQ = "pty-req"
WINDOW_CHANGE = "window-change"
ENV = "env"

_DIMENSIONS = struct.Struct(">IIII")
_LENGTH = struct.Struct(">I")


@dataclass(frozen=True)
class TerminalSize:
    columns: int
    rows: int
    width_px: int = 0
    height_px: int = 0


@dataclass
class ControlRequest:
    kind: str
    payload: bytes = b""


class Resizable(Protocol):
    def resize(self, size: TerminalSize) -> None: ...


def decode_dimensions(payload: bytes, offset: int = 0) -> TerminalSize:
    if offset < 0 or len(payload) < offset + _DIMENSIONS.size:
        raise MalformedRequest(
            f"dimension payload too short: need {offset + _DIMENSIONS.size} bytes, got {len(payload)}"
        )
    cols, rows, width_px, height_px = _DIMENSIONS.unpack_from(payload, offset)
    return TerminalSize(columns=cols, rows=rows, width_px=width_px, height_px=height_px)


def decode_pty_request(payload: bytes) -> tuple[str, TerminalSize]:
    """Return (terminal name, size). Trailing terminal modes are not interpreted."""
    if len(payload) < _LENGTH.size:
        raise MalformedRequest("pty-req payload missing terminal name length")
    (term_len,) = _LENGTH.unpack_from(payload, 0)
    name_end = _LENGTH.size + term_len
    if len(payload) < name_end:
        raise MalformedRequest("pty-req terminal name truncated")
    term = payload[_LENGTH.size:name_end].decode("utf-8", errors="replace")
    return term, decode_dimensions(payload, name_end)


def decode_window_change(payload: bytes) -> TerminalSize:
    return decode_dimensions(payload, 0)


class ControlRequestDispatcher:
    """Translate control requests into terminal effects and reply verdicts.

    | kind          | effect                 | verdict                  |
    |---------------|------------------------|--------------------------|
    | shell         | none (already running) | payload is empty         |
    | pty-req       | resize                 | payload decodes          |
    | window-change | resize                 | payload decodes          |
    | env           | ignored                | always                   |
    | other         | ignored                | never                    |
    """

    def __init__(self, terminal: Resizable):
        self.terminal = terminal
        self.term_name: str | None = None

    def dispatch(self, request: ControlRequest) -> bool:
        """Apply one request and return the verdict sent back when a reply was asked for."""
        try:
            return self._handle(request)
        except MalformedRequest as e:
            logger.warning("Malformed %s request: %s", request.kind, e)
            return False

    def _handle(self, request: ControlRequest) -> bool:
        if request.kind == SHELL:
            return len(request.payload) == 0
        if request.kind == PTY_REQ:
            term, size = decode_pty_request(request.payload)
            self.term_name = term
            self.terminal.resize(size)
            return True
        if request.kind == WINDOW_CHANGE:
            self.terminal.resize(decode_window_change(request.payload))
            return True
        if request.kind == ENV:
            return True
        logger.debug("Refusing unsupported request kind=%s", request.kind)
        return False
