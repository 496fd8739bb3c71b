"""Interactive proxy between the local terminal and a tunnel process.

The child gets the terminal's output streams directly. Its stdin goes through
a pipe so that keystrokes can be scanned for the ``~.`` escape sequence
before they are forwarded.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from dataclasses import dataclass
from enum import Enum
from typing import TextIO

from .colors import green, yellow
from .escape import EscapeScanner
from .terminal import RawTerminal, TerminalError, is_terminal

GRACE_PERIOD = 3.0
READ_SIZE = 1024
FORWARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ProxyError(Exception):
    """The proxied process could not be started or its input broke."""


class OutcomeReason(Enum):
    """What ended a proxied run."""

    EXITED = "exited"
    ESCAPED = "escaped"
    SIGNALLED = "signalled"


@dataclass
class ProxyOutcome:
    """How a proxied run ended."""

    reason: OutcomeReason
    returncode: int

    @property
    def ok(self) -> bool:
        # Escape and signal shutdowns are requested by the user
        return self.reason is not OutcomeReason.EXITED or self.returncode == 0


def _send_signal(process: asyncio.subprocess.Process, signum: int) -> bool:
    """Signal a process. Returns False if it was already gone."""
    try:
        process.send_signal(signum)
    except ProcessLookupError:
        return False
    return True


async def terminate_gracefully(
    process: asyncio.subprocess.Process,
    grace_period: float = GRACE_PERIOD,
    stderr: TextIO | None = None,
) -> int:
    """SIGTERM the process, then SIGKILL it if still alive after the grace period.

    Returns the exit status. A process that is already gone counts as
    terminated.
    """
    stderr = stderr or sys.stderr

    if process.returncode is not None or not _send_signal(process, signal.SIGTERM):
        return await process.wait()

    try:
        returncode = await asyncio.wait_for(process.wait(), timeout=grace_period)
    except asyncio.TimeoutError:
        stderr.write(yellow("Graceful termination timed out, forcing exit...") + "\r\n")
        stderr.flush()
        _send_signal(process, signal.SIGKILL)
        return await process.wait()

    stderr.write(green("Session terminated gracefully") + "\r\n")
    stderr.flush()
    return returncode


class ProcessProxy:
    """Runs an external process attached to the local terminal."""

    def __init__(
        self,
        stdin: int | None = None,
        stderr: TextIO | None = None,
        terminal: RawTerminal | None = None,
        grace_period: float = GRACE_PERIOD,
        interactive: bool | None = None,
    ):
        self.stdin_fd = sys.stdin.fileno() if stdin is None else stdin
        self.stderr = stderr or sys.stderr
        self.terminal = terminal or RawTerminal(self.stdin_fd)
        self.grace_period = grace_period
        self.interactive = interactive
        self.scanner = EscapeScanner()

    def run(self, executable: str, args: list[str]) -> ProxyOutcome:
        return asyncio.run(self.run_async(executable, args))

    async def run_async(self, executable: str, args: list[str]) -> ProxyOutcome:
        interactive = self.interactive
        if interactive is None:
            interactive = is_terminal(self.stdin_fd)
        if not interactive:
            return await self._run_direct(executable, args)

        try:
            self.terminal.enter()
        except TerminalError:
            return await self._run_direct(executable, args)

        try:
            process = await self._spawn(executable, args, stdin=asyncio.subprocess.PIPE)
            return await self._supervise(process)
        finally:
            self.terminal.restore()

    def _write(self, text: str) -> None:
        self.stderr.write(text)
        self.stderr.flush()

    async def _spawn(self, executable: str, args: list[str], stdin) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(executable, *args, stdin=stdin)
        except OSError as e:
            raise ProxyError(f"failed to start {executable}: {e}") from e

    async def _run_direct(self, executable: str, args: list[str]) -> ProxyOutcome:
        """Run with the standard streams inherited and no escape handling."""
        loop = asyncio.get_running_loop()
        process = await self._spawn(executable, args, stdin=self.stdin_fd)

        # The child receives SIGINT from the terminal itself
        loop.add_signal_handler(signal.SIGINT, lambda: None)
        try:
            returncode = await process.wait()
        finally:
            loop.remove_signal_handler(signal.SIGINT)
        return ProxyOutcome(OutcomeReason.EXITED, returncode)

    async def _forward_input(self, writer: asyncio.StreamWriter) -> bool:
        """Copy local input to the child through the escape scanner.

        Returns True when the escape sequence was typed, False on EOF. The
        child's stdin is closed either way.
        """
        loop = asyncio.get_running_loop()
        chunks: asyncio.Queue[bytes | OSError] = asyncio.Queue()

        def on_readable() -> None:
            try:
                data = os.read(self.stdin_fd, READ_SIZE)
            except OSError as e:
                loop.remove_reader(self.stdin_fd)
                chunks.put_nowait(e)
                return
            if not data:
                loop.remove_reader(self.stdin_fd)
            chunks.put_nowait(data)

        self.scanner.reset()
        loop.add_reader(self.stdin_fd, on_readable)
        try:
            while True:
                chunk = await chunks.get()
                if isinstance(chunk, OSError):
                    raise chunk
                if not chunk:
                    return False
                data, escaped = self.scanner.feed(chunk)
                if data:
                    writer.write(data)
                    await writer.drain()
                if escaped:
                    return True
        finally:
            loop.remove_reader(self.stdin_fd)
            writer.close()

    async def _supervise(self, process: asyncio.subprocess.Process) -> ProxyOutcome:
        """Race process exit, escape, signals and input errors."""
        loop = asyncio.get_running_loop()
        signalled: asyncio.Future[int] = loop.create_future()

        def deliver(signum: int) -> None:
            if not signalled.done():
                signalled.set_result(signum)

        def release_signals() -> None:
            for signum in FORWARDED_SIGNALS:
                loop.remove_signal_handler(signum)

        for signum in FORWARDED_SIGNALS:
            loop.add_signal_handler(signum, deliver, signum)

        forward = asyncio.ensure_future(self._forward_input(process.stdin))
        exited = asyncio.ensure_future(process.wait())
        pending = {forward, exited, signalled}
        try:
            while True:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)

                if exited in done:
                    self._write("\r\n")
                    self.terminal.restore()
                    return ProxyOutcome(OutcomeReason.EXITED, exited.result())

                if signalled in done:
                    await self._stop(forward)
                    _send_signal(process, signalled.result())
                    returncode = await exited
                    self.terminal.restore()
                    return ProxyOutcome(OutcomeReason.SIGNALLED, returncode)

                error = forward.exception()
                if error is not None:
                    await exited
                    self.terminal.restore()
                    raise ProxyError(f"input forwarding failed: {error}") from error

                if forward.result():
                    self.terminal.restore()
                    # Signals during the grace period act on ssmgate itself again
                    release_signals()
                    self._write("\r\n" + yellow("Escape sequence detected. Terminating session...") + "\r\n")
                    returncode = await terminate_gracefully(process, self.grace_period, self.stderr)
                    return ProxyOutcome(OutcomeReason.ESCAPED, returncode)

                # Local input hit EOF; the child's stdin is closed, keep waiting
        finally:
            release_signals()
            if not signalled.done():
                signalled.cancel()
            await self._stop(forward)
            if not exited.done():
                _send_signal(process, signal.SIGKILL)
                exited.cancel()

    @staticmethod
    async def _stop(task: asyncio.Future) -> None:
        if task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
