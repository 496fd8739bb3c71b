"""TUI dashboard for command dispatch."""

from rich.markup import escape
from textual.app import App, ComposeResult
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker, WorkerState

from .dispatcher import Dispatcher
from .watcher import InvocationResult, InvocationState

STATUS_ICONS = {
    InvocationState.RUNNING: ("…", "yellow"),
    InvocationState.SUCCEEDED: ("✓", "green"),
    InvocationState.FAILED: ("✗", "red"),
}


def _widget_id(target: str) -> str:
    return target.replace(".", "-").replace(":", "-")


class TargetPanel(Static):
    """A panel displaying the result for a single target."""

    status: reactive[InvocationState] = reactive(InvocationState.RUNNING)

    def __init__(self, target: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.target_id = target
        self.widget_key = _widget_id(target)

    def compose(self) -> ComposeResult:
        yield Label(self._get_header(), id=f"header-{self.widget_key}")
        yield RichLog(
            id=f"log-{self.widget_key}",
            highlight=True,
            markup=True,
            wrap=True,
            auto_scroll=True,
        )

    def _get_header(self) -> str:
        icon, color = STATUS_ICONS.get(self.status, ("?", "white"))
        return f"[{color}]{icon}[/] [{color}][bold]{self.target_id}[/bold] {self.status.value}[/]"

    def watch_status(self, status: InvocationState) -> None:
        """Update header when status changes."""
        if not self.is_mounted:
            return
        header = self.query_one(f"#header-{self.widget_key}", Label)
        header.update(self._get_header())

    def show_result(self, result: InvocationResult) -> None:
        """Write the invocation output into this panel."""
        log = self.query_one(f"#log-{self.widget_key}", RichLog)
        style = "green" if result.state is InvocationState.SUCCEEDED else "red"
        log.write(f"[bold {style}]status: {escape(result.raw_status)}[/bold {style}]")
        for line in result.output.splitlines():
            log.write(f"[{style}]{escape(line)}[/{style}]")


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    completed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    running: reactive[bool] = reactive(True)

    def render(self) -> str:
        status = "Running..." if self.running else "Complete"
        return f"Progress: {self.completed}/{self.total} targets complete | {status} | Press 'q' to quit"


class TargetResult(Message):
    """Message for a terminal invocation result."""

    def __init__(self, result: InvocationResult) -> None:
        super().__init__()
        self.result = result


class TargetStatusChange(Message):
    """Message for a target status change."""

    def __init__(self, target: str, status: InvocationState) -> None:
        super().__init__()
        self.target_id = target
        self.status = status


class Dashboard(App):
    """Dispatches a command and shows one panel per target."""

    CSS = """
    Screen {
        layout: grid;
        grid-size: 2;
        grid-gutter: 1;
    }

    TargetPanel {
        border: solid $primary;
        height: 100%;
        min-height: 10;
    }

    TargetPanel Label {
        dock: top;
        padding: 0 1;
        background: $surface;
    }

    TargetPanel RichLog {
        height: 1fr;
        padding: 0 1;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("escape", "quit", "Quit"),
    ]

    def __init__(self, dispatcher: Dispatcher, command: str, targets: list[str], **kwargs) -> None:
        super().__init__(**kwargs)
        self.dispatcher = dispatcher
        self.command = command
        self.targets = targets
        self.panels: dict[str, TargetPanel] = {}
        self.error: Exception | None = None
        self._worker: Worker | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        for target in self.targets:
            panel = TargetPanel(target, id=f"panel-{_widget_id(target)}")
            self.panels[target] = panel
            yield panel

        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start the dispatch when the app mounts."""
        self.title = self.command
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.total = len(self.targets)

        self.dispatcher.on_result = self._on_result
        self.dispatcher.on_status = self._on_status

        # On the app loop so cancelling the worker cancels every watcher
        self._worker = self.run_worker(self._run_dispatch(), exclusive=True, exit_on_error=False)

    async def _run_dispatch(self) -> None:
        await self.dispatcher.run_all(self.command, self.targets)

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        """Handle worker completion."""
        if event.worker is not self._worker:
            return
        if event.state in (WorkerState.SUCCESS, WorkerState.ERROR):
            self.query_one("#status-bar", StatusBar).running = False
        if event.state == WorkerState.ERROR:
            self.error = event.worker.error
            self.exit()

    def _on_result(self, result: InvocationResult) -> None:
        """Posts results as messages so panels update between polls."""
        self.post_message(TargetResult(result))

    def _on_status(self, target: str, status: InvocationState) -> None:
        self.post_message(TargetStatusChange(target, status))

    def on_target_result(self, message: TargetResult) -> None:
        result = message.result
        if result.target in self.panels:
            self.panels[result.target].show_result(result)
        self.query_one("#status-bar", StatusBar).completed += 1

    def on_target_status_change(self, message: TargetStatusChange) -> None:
        if message.target_id in self.panels:
            self.panels[message.target_id].status = message.status

    async def action_quit(self) -> None:
        """Quit the application."""
        if self._worker and self._worker.is_running:
            self._worker.cancel()
        self.exit()
