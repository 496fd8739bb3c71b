"""Raw mode handling for the controlling terminal."""

from __future__ import annotations

import os
import termios
import tty


class TerminalError(Exception):
    """The terminal mode could not be read or changed."""


def is_terminal(fd: int) -> bool:
    return os.isatty(fd)


class RawTerminal:
    """Scoped raw mode on a terminal file descriptor.

    ``enter`` saves the current mode and switches to raw. ``restore`` puts the
    saved mode back and is a no-op after the first call, so it can be called
    early on one path and again from a ``finally`` block.
    """

    def __init__(self, fd: int):
        self.fd = fd
        self._saved: list | None = None

    @property
    def active(self) -> bool:
        return self._saved is not None

    def enter(self) -> RawTerminal:
        try:
            saved = self._read_mode()
            self._make_raw()
        except termios.error as e:
            raise TerminalError(f"cannot switch fd {self.fd} to raw mode: {e}") from e
        self._saved = saved
        return self

    def restore(self) -> None:
        if self._saved is None:
            return
        saved, self._saved = self._saved, None
        self._write_mode(saved)

    def __enter__(self) -> RawTerminal:
        return self.enter()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.restore()

    # termios primitives

    def _read_mode(self) -> list:
        return termios.tcgetattr(self.fd)

    def _make_raw(self) -> None:
        tty.setraw(self.fd, termios.TCSANOW)

    def _write_mode(self, mode: list) -> None:
        termios.tcsetattr(self.fd, termios.TCSADRAIN, mode)
