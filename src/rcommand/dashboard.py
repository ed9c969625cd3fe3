"""TUI Dashboard for rcommand."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from rich.markup import escape
from textual.app import App, ComposeResult
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker

from .config import HostSpec, Settings
from .executor import Executor, HostState
from .summary import Outcome

STATE_STYLES = {
    HostState.PENDING: ("·", "dim"),
    HostState.OPENING: ("…", "yellow"),
    HostState.RUNNING: ("▶", "yellow"),
    HostState.DRAINING: ("▶", "yellow"),
    HostState.DONE: ("■", "white"),
}


class HostPanel(Static):
    """A panel displaying output for a single host."""

    state: reactive[HostState] = reactive(HostState.PENDING)
    outcome: reactive[Outcome | None] = reactive(None)

    def __init__(self, index: int, host: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.index = index
        self.host = host

    def compose(self) -> ComposeResult:
        yield Label(self._get_header(), id=f"header-{self.index}")
        yield RichLog(
            id=f"log-{self.index}",
            highlight=True,
            markup=True,
            wrap=True,
            auto_scroll=True,
        )

    def _get_header(self) -> str:
        if self.outcome is not None:
            icon, color = ("✓", "green") if self.outcome.succeeded else ("✗", "red")
            detail = "" if self.outcome.succeeded else f" ({escape(self.outcome.reason)})"
        else:
            icon, color = STATE_STYLES.get(self.state, ("?", "white"))
            detail = f" {self.state.value}"
        return f"[{color}]{icon}[/] [{color}][bold]{escape(self.host)}[/bold]{detail}[/]"

    def _refresh_header(self) -> None:
        if not self.is_mounted:
            return
        header = self.query_one(f"#header-{self.index}", Label)
        header.update(self._get_header())

    def watch_state(self, state: HostState) -> None:
        """Update header when the state changes."""
        self._refresh_header()

    def watch_outcome(self, outcome: Outcome | None) -> None:
        self._refresh_header()

    def append_output(self, line: str, is_stderr: bool) -> None:
        """Append a line of output to this panel."""
        log = self.query_one(f"#log-{self.index}", RichLog)
        if line.startswith("ERROR:"):
            log.write(f"[bold red]{escape(line)}[/bold red]")
        elif is_stderr:
            log.write(f"[red]{escape(line)}[/red]")
        else:
            log.write(escape(line))


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    completed: reactive[int] = reactive(0)
    failed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    running: reactive[bool] = reactive(True)

    def render(self) -> str:
        status = "Running..." if self.running else "Complete"
        return (
            f"Progress: {self.completed}/{self.total} hosts done, {self.failed} failed"
            f" | {status} | Press 'q' to quit"
        )


@dataclass
class HostOutput(Message):
    """Message for host output."""

    host: str
    line: str
    is_stderr: bool


@dataclass
class HostStateChange(Message):
    """Message for host state change."""

    host: str
    state: HostState


@dataclass
class HostFinished(Message):
    """Message for a recorded outcome."""

    outcome: Outcome


class Dashboard(App):
    """Main TUI Dashboard application."""

    CSS = """
    Screen {
        layout: grid;
        grid-size: 2;
        grid-gutter: 1;
    }

    HostPanel {
        border: solid $primary;
        height: 100%;
        min-height: 10;
    }

    HostPanel Label {
        dock: top;
        padding: 0 1;
        background: $surface;
    }

    HostPanel RichLog {
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

    def __init__(
        self,
        settings: Settings,
        hosts: list[HostSpec],
        command: list[str],
        script: Path | None = None,
        sudo: bool = False,
        password: str | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.settings = settings
        self.hosts = hosts
        self.command = command
        self.script = script
        self.sudo = sudo
        self.password = password
        self.panels: dict[str, HostPanel] = {}
        self.executor: Executor | None = None
        self._worker: Worker | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        # Create panels for each host
        for i, spec in enumerate(self.hosts):
            panel = HostPanel(i, spec.name, id=f"panel-{i}")
            self.panels[spec.name] = panel
            yield panel

        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start execution when the app mounts."""
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.total = len(self.hosts)

        # Create executor with callbacks
        self.executor = Executor(
            self.settings,
            self.hosts,
            self.command,
            script=self.script,
            sudo=self.sudo,
            password=self.password,
            on_output=self._on_output,
            on_status=self._on_status,
            on_outcome=self._on_outcome,
        )

        # Start execution using Textual's worker system
        self._worker = self.run_worker(self._run_execution(), exclusive=True, thread=True)

    async def _run_execution(self) -> None:
        """Run the executor and update UI when complete."""
        if self.executor:
            await self.executor.run_all()

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        """Handle worker completion."""
        if event.worker == self._worker and event.state == event.worker.state.SUCCESS:
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.running = False

    def _on_output(self, host: str, line: str, is_stderr: bool) -> None:
        """Handle output from a host - posts message to main thread."""
        self.post_message(HostOutput(host, line, is_stderr))

    def _on_status(self, host: str, state: HostState) -> None:
        """Handle state change for a host - posts message to main thread."""
        self.post_message(HostStateChange(host, state))

    def _on_outcome(self, outcome: Outcome) -> None:
        self.post_message(HostFinished(outcome))

    def on_host_output(self, message: HostOutput) -> None:
        """Handle HostOutput message in main thread."""
        if message.host in self.panels:
            self.panels[message.host].append_output(message.line, message.is_stderr)

    def on_host_state_change(self, message: HostStateChange) -> None:
        """Handle HostStateChange message in main thread."""
        if message.host in self.panels:
            self.panels[message.host].state = message.state

    def on_host_finished(self, message: HostFinished) -> None:
        outcome = message.outcome
        if outcome.host in self.panels:
            self.panels[outcome.host].outcome = outcome

        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.completed += 1
        if not outcome.succeeded:
            status_bar.failed += 1

    async def action_quit(self) -> None:
        """Quit the application.

        While hosts are still running the first press interrupts them and
        waits for their cleanup; the next press leaves.
        """
        if self._worker and self._worker.is_running and self.executor:
            if not self.executor.cancelled:
                self.executor.cancel()
                self.notify("Stopping all hosts, press 'q' again to leave")
                return
            self._worker.cancel()
        self.exit()
