"""Fan-out of one shell command to many targets."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Callable

import yaml

from .broker import Broker, InvocationRef
from .config import CommandConfig
from .watcher import InvocationResult, InvocationState, InvocationWatcher, ResultCallback

StatusCallback = Callable[[str, InvocationState], None]  # (target, state) -> None


class Dispatcher:
    """Sends a command to a set of targets and watches every invocation."""

    def __init__(
        self,
        broker: Broker,
        config: CommandConfig | None = None,
        on_result: ResultCallback | None = None,
        on_status: StatusCallback | None = None,
        log_dir: Path | None = None,
        enable_logging: bool = True,
    ):
        self.broker = broker
        self.config = config or CommandConfig()
        self.on_result = on_result
        self.on_status = on_status
        self.log_dir = log_dir
        self.enable_logging = enable_logging
        self.states: dict[str, InvocationResult] = {}
        self._run_dir: Path | None = None

    def _setup_logging(self, command: str, refs: list[InvocationRef]) -> None:
        """Create a timestamped run directory with a summary of the dispatch."""
        if not self.enable_logging or self.log_dir is None:
            return
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self._run_dir = self.log_dir / timestamp
        self._run_dir.mkdir(parents=True, exist_ok=True)

        summary = {
            "command": command,
            "command_id": refs[0].command_id if refs else None,
            "targets": [ref.target for ref in refs],
        }
        with open(self._run_dir / "dispatch.yaml", "w") as f:
            yaml.safe_dump(summary, f, sort_keys=False)

    def _log_result(self, result: InvocationResult) -> None:
        if self._run_dir is None:
            return
        with open(self._run_dir / f"{result.target}.log", "a") as f:
            f.write(f"status: {result.raw_status}\n")
            f.write(result.output)
            if result.output and not result.output.endswith("\n"):
                f.write("\n")

    def _emit_status(self, target: str, state: InvocationState) -> None:
        if target in self.states:
            self.states[target].state = state
        if self.on_status:
            self.on_status(target, state)

    def _emit_result(self, result: InvocationResult) -> None:
        self.states[result.target] = result
        self._log_result(result)
        if self.on_status:
            self.on_status(result.target, result.state)
        if self.on_result:
            self.on_result(result)

    async def run_all(self, command: str, targets: list[str]) -> dict[str, InvocationResult]:
        """Run a command on every target and wait for all results.

        Raises ``BrokerError`` if the command cannot be sent. Individual
        target failures only show up in the returned states. If this
        coroutine is cancelled, unfinished watchers are cancelled too and
        their targets stay RUNNING.
        """
        refs = await asyncio.to_thread(self.broker.send_command, targets, command)
        self._setup_logging(command, refs)

        for ref in refs:
            self.states[ref.target] = InvocationResult(ref.target, InvocationState.RUNNING)
            self._emit_status(ref.target, InvocationState.RUNNING)

        # Give the broker time to register the invocations before polling
        await asyncio.sleep(self.config.warmup_delay)

        watchers = [
            InvocationWatcher(
                self.broker,
                ref,
                poll_interval=self.config.poll_interval,
                on_result=self._emit_result,
            )
            for ref in refs
        ]
        tasks = [asyncio.ensure_future(watcher.watch()) for watcher in watchers]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        return self.states

    def unfinished(self) -> list[str]:
        """Targets that never reached a terminal state."""
        return [target for target, result in self.states.items() if not result.terminal]
