"""Tests for the interactive process proxy."""

import asyncio
import io
import signal
import sys

import pytest

from ssmgate.proxy import OutcomeReason, ProcessProxy, ProxyError, ProxyOutcome, terminate_gracefully

from conftest import RecordingStream, RecordingTerminal

PY = sys.executable


def make_proxy(pipe, events=None, terminal=None, interactive=True, **kwargs):
    events = events if events is not None else []
    return ProcessProxy(
        stdin=pipe.read,
        stderr=RecordingStream(events),
        terminal=terminal or RecordingTerminal(events),
        interactive=interactive,
        **kwargs,
    )


async def wait_for_file(path, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not path.exists():
        if loop.time() > deadline:
            raise TimeoutError(f"{path} never appeared")
        await asyncio.sleep(0.01)


def echo_stdin_script(out):
    return f"import sys; open({str(out)!r}, 'wb').write(sys.stdin.buffer.read())"


class TestProxyOutcome:
    def test_zero_exit_is_ok(self):
        assert ProxyOutcome(OutcomeReason.EXITED, 0).ok

    def test_nonzero_exit_is_not_ok(self):
        assert not ProxyOutcome(OutcomeReason.EXITED, 7).ok

    def test_user_requested_shutdowns_are_ok(self):
        assert ProxyOutcome(OutcomeReason.ESCAPED, -15).ok
        assert ProxyOutcome(OutcomeReason.SIGNALLED, -2).ok


class TestProcessExit:
    @pytest.mark.asyncio
    async def test_returns_exit_code_and_restores_once(self, stdin_pipe):
        events = []
        proxy = make_proxy(stdin_pipe, events)

        outcome = await proxy.run_async(PY, ["-c", "import sys; sys.exit(7)"])

        assert outcome == ProxyOutcome(OutcomeReason.EXITED, 7)
        assert events.count("restore") == 1
        assert events[0] == "raw"

    @pytest.mark.asyncio
    async def test_line_break_written_before_restore(self, stdin_pipe):
        events = []
        proxy = make_proxy(stdin_pipe, events)

        await proxy.run_async(PY, ["-c", "pass"])

        assert events.index(("write", "\r\n")) < events.index("restore")

    @pytest.mark.asyncio
    async def test_input_forwarded_until_eof(self, stdin_pipe, tmp_path):
        out = tmp_path / "received"
        proxy = make_proxy(stdin_pipe)

        stdin_pipe.send(b"echo ~/x\n~~\r~user\n")
        stdin_pipe.close_write()
        outcome = await proxy.run_async(PY, ["-c", echo_stdin_script(out)])

        assert outcome == ProxyOutcome(OutcomeReason.EXITED, 0)
        assert out.read_bytes() == b"echo ~/x\n~~\r~user\n"


class TestEscape:
    @pytest.mark.asyncio
    async def test_escape_restores_before_announcement(self, stdin_pipe):
        events = []
        proxy = make_proxy(stdin_pipe, events)

        stdin_pipe.send(b"\n~.")
        outcome = await proxy.run_async(PY, ["-c", "import time; time.sleep(30)"])

        assert outcome.reason is OutcomeReason.ESCAPED
        assert outcome.returncode == -signal.SIGTERM
        assert outcome.ok
        assert events.count("restore") == 1

        announce = next(
            i for i, e in enumerate(events)
            if isinstance(e, tuple) and "Escape sequence detected" in e[1]
        )
        assert events.index("restore") < announce

    @pytest.mark.asyncio
    async def test_escape_stops_forwarding(self, stdin_pipe, tmp_path):
        out = tmp_path / "received"
        ready = tmp_path / "ready"
        script = (
            "import signal, sys\n"
            "def on_term(*_):\n"
            f"    open({str(out)!r}, 'wb').write(sys.stdin.buffer.read())\n"
            "    sys.exit(0)\n"
            "signal.signal(signal.SIGTERM, on_term)\n"
            f"open({str(ready)!r}, 'w').close()\n"
            "signal.pause()\n"
        )
        proxy = make_proxy(stdin_pipe)

        async def type_when_ready():
            await wait_for_file(ready)
            stdin_pipe.send(b"uptime\n~.whoami\n")

        typist = asyncio.ensure_future(type_when_ready())
        outcome = await proxy.run_async(PY, ["-c", script])
        await typist

        assert outcome == ProxyOutcome(OutcomeReason.ESCAPED, 0)
        assert out.read_bytes() == b"uptime\n"

    @pytest.mark.asyncio
    async def test_signal_handlers_released_during_grace_period(self, stdin_pipe, tmp_path):
        events = []
        ready = tmp_path / "ready"
        script = (
            "import signal, sys, time\n"
            "def on_term(*_):\n"
            "    time.sleep(0.5)\n"
            "    sys.exit(0)\n"
            "signal.signal(signal.SIGTERM, on_term)\n"
            f"open({str(ready)!r}, 'w').close()\n"
            "signal.pause()\n"
        )
        stream = RecordingStream(events)
        proxy = ProcessProxy(
            stdin=stdin_pipe.read,
            stderr=stream,
            terminal=RecordingTerminal(events),
            interactive=True,
            grace_period=5.0,
        )
        handlers = {}

        async def escape_and_inspect():
            await wait_for_file(ready)
            stdin_pipe.send(b"\n~.")
            while "Escape sequence detected" not in stream.text:
                await asyncio.sleep(0.01)
            handlers["int"] = signal.getsignal(signal.SIGINT)
            handlers["term"] = signal.getsignal(signal.SIGTERM)

        inspector = asyncio.ensure_future(escape_and_inspect())
        outcome = await proxy.run_async(PY, ["-c", script])
        await inspector

        assert outcome == ProxyOutcome(OutcomeReason.ESCAPED, 0)
        assert handlers["int"] is signal.default_int_handler
        assert handlers["term"] == signal.SIG_DFL


class TestSignals:
    @pytest.mark.asyncio
    async def test_signal_forwarded_to_child(self, stdin_pipe, tmp_path):
        events = []
        ready = tmp_path / "ready"
        script = f"import time; open({str(ready)!r}, 'w').close(); time.sleep(30)"
        proxy = make_proxy(stdin_pipe, events)
        original = signal.getsignal(signal.SIGTERM)

        async def interrupt():
            await wait_for_file(ready)
            await asyncio.sleep(0.1)
            assert signal.getsignal(signal.SIGTERM) is not original
            signal.raise_signal(signal.SIGTERM)

        sender = asyncio.ensure_future(interrupt())
        outcome = await proxy.run_async(PY, ["-c", script])
        await sender

        assert outcome == ProxyOutcome(OutcomeReason.SIGNALLED, -signal.SIGTERM)
        assert outcome.ok
        assert events.count("restore") == 1

    @pytest.mark.asyncio
    async def test_signal_handlers_removed_afterwards(self, stdin_pipe):
        proxy = make_proxy(stdin_pipe)

        await proxy.run_async(PY, ["-c", "pass"])

        assert signal.getsignal(signal.SIGTERM) == signal.SIG_DFL


class TestErrors:
    @pytest.mark.asyncio
    async def test_spawn_error_restores_terminal(self, stdin_pipe, tmp_path):
        events = []
        proxy = make_proxy(stdin_pipe, events)

        with pytest.raises(ProxyError, match="failed to start"):
            await proxy.run_async(str(tmp_path / "missing-plugin"), [])

        assert events == ["raw", "restore"]

    @pytest.mark.asyncio
    async def test_broken_input_pipe_raises(self, stdin_pipe, tmp_path):
        events = []
        ready = tmp_path / "ready"
        script = f"import os, time; os.close(0); open({str(ready)!r}, 'w').close(); time.sleep(1)"
        proxy = make_proxy(stdin_pipe, events)

        async def type_after_close():
            await wait_for_file(ready)
            for _ in range(3):
                stdin_pipe.send(b"ls\n")
                await asyncio.sleep(0.05)

        typist = asyncio.ensure_future(type_after_close())
        with pytest.raises(ProxyError, match="input forwarding failed"):
            await proxy.run_async(PY, ["-c", script])
        await typist

        assert events.count("restore") == 1


class TestDirectFallback:
    @pytest.mark.asyncio
    async def test_non_interactive_runs_directly(self, stdin_pipe):
        events = []
        proxy = make_proxy(stdin_pipe, events, interactive=False)

        outcome = await proxy.run_async(PY, ["-c", "import sys; sys.exit(3)"])

        assert outcome == ProxyOutcome(OutcomeReason.EXITED, 3)
        assert events == []

    @pytest.mark.asyncio
    async def test_raw_mode_failure_falls_back(self, stdin_pipe):
        events = []
        terminal = RecordingTerminal(events, fail_raw=True)
        proxy = make_proxy(stdin_pipe, events, terminal=terminal)

        outcome = await proxy.run_async(PY, ["-c", "pass"])

        assert outcome == ProxyOutcome(OutcomeReason.EXITED, 0)
        assert "restore" not in events

    @pytest.mark.asyncio
    async def test_direct_mode_does_not_scan_input(self, stdin_pipe, tmp_path):
        out = tmp_path / "received"
        proxy = make_proxy(stdin_pipe, interactive=False)

        stdin_pipe.send(b"\n~.\n")
        stdin_pipe.close_write()
        await proxy.run_async(PY, ["-c", echo_stdin_script(out)])

        assert out.read_bytes() == b"\n~.\n"

    @pytest.mark.asyncio
    async def test_direct_mode_spawn_error(self, stdin_pipe, tmp_path):
        proxy = make_proxy(stdin_pipe, interactive=False)

        with pytest.raises(ProxyError):
            await proxy.run_async(str(tmp_path / "missing-plugin"), [])


class TestTerminateGracefully:
    @pytest.mark.asyncio
    async def test_exits_within_grace_period(self):
        process = await asyncio.create_subprocess_exec(PY, "-c", "import time; time.sleep(30)")
        stderr = io.StringIO()
        loop = asyncio.get_running_loop()

        started = loop.time()
        returncode = await terminate_gracefully(process, grace_period=5.0, stderr=stderr)

        assert returncode == -signal.SIGTERM
        assert loop.time() - started < 5.0
        assert "terminated gracefully" in stderr.getvalue()
        assert "forcing exit" not in stderr.getvalue()

    @pytest.mark.asyncio
    async def test_force_kill_only_after_grace_period(self):
        script = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n"
        )
        process = await asyncio.create_subprocess_exec(
            PY, "-c", script, stdout=asyncio.subprocess.PIPE
        )
        assert (await process.stdout.readline()).strip() == b"ready"
        stderr = io.StringIO()
        loop = asyncio.get_running_loop()

        started = loop.time()
        returncode = await terminate_gracefully(process, grace_period=0.5, stderr=stderr)

        assert returncode == -signal.SIGKILL
        assert loop.time() - started >= 0.5
        assert "forcing exit" in stderr.getvalue()

    @pytest.mark.asyncio
    async def test_already_exited_is_success(self):
        process = await asyncio.create_subprocess_exec(PY, "-c", "pass")
        await process.wait()

        returncode = await terminate_gracefully(process, grace_period=0.5, stderr=io.StringIO())

        assert returncode == 0
