import os
import threading

import pytest

from ssmgate.broker import BrokerError, InvocationRef, InvocationStatus
from ssmgate.session import SessionHandle, session_parameters
from ssmgate.terminal import RawTerminal


class FakeBroker:
    """In-memory broker with scripted invocation statuses per target."""

    region = "us-east-1"

    def __init__(self, scripts=None, command_id="cmd-1"):
        # target -> list of InvocationStatus or BrokerError; the last entry repeats
        self.scripts = scripts or {}
        self.command_id = command_id
        self.sent = []
        self.polls = {}
        self.created = []
        self.terminated = []
        self._lock = threading.Lock()

    def create_session(self, target, document_name=None, parameters=None):
        self.created.append((target, document_name, parameters))
        return SessionHandle(
            session_id=f"sess-{len(self.created)}",
            token_value="token",
            stream_url="wss://ssmmessages.us-east-1.amazonaws.com/v1/data-channel/sess",
            parameters=session_parameters(target, document_name, parameters),
        )

    def terminate_session(self, session_id):
        self.terminated.append(session_id)

    def send_command(self, target_ids, command):
        self.sent.append((list(target_ids), command))
        return [InvocationRef(self.command_id, target) for target in target_ids]

    def get_invocation_status(self, ref):
        with self._lock:
            count = self.polls.get(ref.target, 0)
            self.polls[ref.target] = count + 1
        script = self.scripts.get(ref.target, [InvocationStatus("InProgress")])
        step = script[min(count, len(script) - 1)]
        if isinstance(step, BrokerError):
            raise step
        return step


class RecordingTerminal(RawTerminal):
    """Terminal double that records mode changes instead of calling termios."""

    def __init__(self, events=None, fail_raw=False):
        super().__init__(fd=-1)
        self.events = events if events is not None else []
        self.fail_raw = fail_raw

    @property
    def restores(self):
        return self.events.count("restore")

    def _read_mode(self):
        return ["saved-mode"]

    def _make_raw(self):
        if self.fail_raw:
            import termios

            raise termios.error(25, "Inappropriate ioctl for device")
        self.events.append("raw")

    def _write_mode(self, mode):
        assert mode == ["saved-mode"]
        self.events.append("restore")


class RecordingStream:
    """Text stream that appends writes to a shared event list."""

    def __init__(self, events=None):
        self.events = events if events is not None else []
        self.text = ""

    def write(self, text):
        self.events.append(("write", text))
        self.text += text
        return len(text)

    def flush(self):
        pass


@pytest.fixture
def fake_broker():
    return FakeBroker()


class InputPipe:
    """A pipe standing in for the local terminal's input."""

    def __init__(self):
        self.read, self.write = os.pipe()
        self._open = {self.read, self.write}

    def send(self, data):
        os.write(self.write, data)

    def close_write(self):
        self._close(self.write)

    def _close(self, fd):
        if fd in self._open:
            self._open.discard(fd)
            os.close(fd)

    def close(self):
        for fd in list(self._open):
            self._close(fd)


@pytest.fixture
def stdin_pipe():
    pipe = InputPipe()
    yield pipe
    pipe.close()
