"""In-band escape detection for proxied terminal input.

Typing ``~.`` at the start of a line ends the session, the same way it does
in OpenSSH. Every other use of ``~`` (``~/``, ``~user``, ``~~``) passes
through unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

TILDE = ord("~")
DOT = ord(".")
LINE_BREAKS = frozenset((ord("\r"), ord("\n")))


class ActionKind(Enum):
    """What to do with a scanned byte."""

    FORWARD = "forward"
    SUPPRESS = "suppress"
    ESCAPE = "escape"


@dataclass(frozen=True)
class Action:
    """Result of scanning one byte."""

    kind: ActionKind
    data: bytes = b""


SUPPRESS = Action(ActionKind.SUPPRESS)
ESCAPE = Action(ActionKind.ESCAPE)


class EscapeScanner:
    """Byte-at-a-time state machine recognising ``~.`` after a line break."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.at_line_start = True
        self.tilde_armed = False
        self.triggered = False

    def step(self, byte: int) -> Action:
        """Scan one byte and return the action for it.

        Once the escape has fired, everything is suppressed until ``reset``.
        """
        if self.triggered:
            return SUPPRESS

        if self.tilde_armed:
            self.tilde_armed = False
            if byte == DOT:
                self.triggered = True
                return ESCAPE
            self.at_line_start = byte in LINE_BREAKS
            return Action(ActionKind.FORWARD, bytes((TILDE, byte)))

        if byte == TILDE and self.at_line_start:
            self.tilde_armed = True
            self.at_line_start = False
            return SUPPRESS

        self.at_line_start = byte in LINE_BREAKS
        return Action(ActionKind.FORWARD, bytes((byte,)))

    def feed(self, data: bytes) -> tuple[bytes, bool]:
        """Scan a chunk. Returns the bytes to forward and whether escape fired.

        Bytes after the escape sequence are dropped.
        """
        out = bytearray()
        for byte in data:
            action = self.step(byte)
            if action.kind is ActionKind.ESCAPE:
                return bytes(out), True
            out += action.data
        return bytes(out), False
