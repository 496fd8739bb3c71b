"""Polling of a single command invocation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .broker import Broker, BrokerError, InvocationRef, InvocationStatus

POLL_INTERVAL = 1.0

# Broker statuses that mean the command has not finished yet
PENDING_STATUSES = frozenset({"pending", "inprogress", "delayed"})
SUCCESS_STATUS = "success"


class InvocationState(Enum):
    """State of one target's invocation."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class InvocationResult:
    """Classified outcome of one target's invocation."""

    target: str
    state: InvocationState
    output: str = ""
    raw_status: str = ""

    @property
    def terminal(self) -> bool:
        return self.state is not InvocationState.RUNNING


ResultCallback = Callable[[InvocationResult], None]


def classify(target: str, status: InvocationStatus) -> InvocationResult:
    """Map a broker status onto an invocation state."""
    normalized = status.status.lower()
    if normalized in PENDING_STATUSES:
        return InvocationResult(target, InvocationState.RUNNING, raw_status=status.status)
    if normalized == SUCCESS_STATUS:
        return InvocationResult(
            target, InvocationState.SUCCEEDED, output=status.stdout, raw_status=status.status
        )
    return InvocationResult(
        target, InvocationState.FAILED, output=status.stderr, raw_status=status.status
    )


class InvocationWatcher:
    """Polls one invocation until it reaches a terminal state."""

    def __init__(
        self,
        broker: Broker,
        ref: InvocationRef,
        poll_interval: float = POLL_INTERVAL,
        on_result: ResultCallback | None = None,
    ):
        self.broker = broker
        self.ref = ref
        self.poll_interval = poll_interval
        self.on_result = on_result

    async def watch(self) -> InvocationResult:
        """Poll until terminal, emit the result once and return it.

        Cancellation propagates without emitting anything.
        """
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                status = await asyncio.to_thread(self.broker.get_invocation_status, self.ref)
            except BrokerError as e:
                result = InvocationResult(
                    self.ref.target,
                    InvocationState.FAILED,
                    output=f"Failed to get command invocation: {e}",
                    raw_status="error",
                )
                break

            result = classify(self.ref.target, status)
            if result.terminal:
                break

        if self.on_result:
            self.on_result(result)
        return result
