"""Textual chat UI on top of ``ChatController``."""

from __future__ import annotations

from rich.markup import escape
from textual import on, work
from textual.app import App, ComposeResult
from textual.containers import VerticalScroll
from textual.reactive import reactive
from textual.widgets import Header, Input, Label, Static

from tether.client.chat import ChatController, ChatMessage
from tether.rpc.connection import ConnectionState

#: Messages kept on screen.
MAX_VISIBLE_MESSAGES = 200

_INDICATORS = {
    ConnectionState.CONNECTED: "[green]●[/green]",
    ConnectionState.CONNECTING: "[yellow]◐[/yellow]",
    ConnectionState.DISCONNECTED: "[red]○[/red]",
}


def format_message(message: ChatMessage) -> str:
    """Rich markup for one chat line."""
    content = escape(message.content)
    match message.role:
        case "user":
            return f"[bold green]You:[/bold green] {content}"
        case "assistant":
            return f"[bold blue]Claude:[/bold blue] {content}"
        case "tool":
            return f"[magenta dim]\\[Tool: {content}][/magenta dim]"
        case _:
            return f"[yellow]{content}[/yellow]"


class StatusLine(Static):
    """Connection indicator, host and working directory."""


class MessageLog(VerticalScroll):
    """Scrollable chat transcript."""

    lines: reactive[list[str]] = reactive(list, recompose=True)

    def compose(self) -> ComposeResult:
        if not self.lines:
            yield Label("No messages yet...", classes="empty-state")
        else:
            for line in self.lines:
                yield Label(line, classes="chat-line", markup=True)

    def watch_lines(self) -> None:
        """Auto-scroll to bottom when lines change."""
        # First call waits for the recompose, second for the new layout.
        self.call_after_refresh(
            lambda: self.call_after_refresh(self.scroll_end, animate=False)
        )


class ChatApp(App[None]):
    """Interactive chat with one remote Claude session."""

    TITLE = "Tether Chat"

    CSS = """
    #status-line {
        height: 1;
        padding: 0 1;
        background: $panel;
    }

    #message-log {
        border: solid $primary;
        padding: 0 1;
        height: 1fr;
    }

    #input-bar {
        dock: bottom;
        height: 3;
        background: $panel;
        border-top: solid $primary;
        padding: 0 1;
    }

    .empty-state {
        color: $text-muted;
        text-style: italic;
    }

    .chat-line {
        width: 1fr;
    }
    """

    BINDINGS = [
        ("ctrl+c", "quit", "Quit"),
    ]

    def __init__(self, controller: ChatController, host: str = "unknown") -> None:
        super().__init__()
        self.controller = controller
        self.host = host
        self._closing = False

    def compose(self) -> ComposeResult:
        yield Header()
        yield StatusLine(id="status-line")
        yield MessageLog(id="message-log")
        yield Input(placeholder="Type a message... (/quit to exit)", id="input-bar")

    def on_mount(self) -> None:
        self.controller.on_update = self.refresh_view
        self.refresh_view()
        self.set_focus(self.query_one("#input-bar", Input))
        self.start_controller()

    @work(exclusive=True, group="controller")
    async def start_controller(self) -> None:
        await self.controller.start()

    def refresh_view(self) -> None:
        """Re-render status and transcript from the controller state."""
        controller = self.controller
        indicator = _INDICATORS.get(controller.connection_state, "?")
        match controller.status:
            case "connecting":
                detail = f"Connecting to {escape(self.host)}..."
            case "spawning":
                detail = "Spawning Claude session..."
            case "error":
                detail = f"[red]Error: {escape(controller.error or 'unknown')}[/red]"
            case _:
                detail = escape(self.host)
        self.query_one(StatusLine).update(
            f"{indicator} {detail} • [dim]{escape(controller.directory)}[/dim]"
        )

        lines = [format_message(m) for m in controller.messages[-MAX_VISIBLE_MESSAGES:]]
        if controller.thinking:
            lines.append("[dim]Claude is thinking...[/dim]")
        self.query_one(MessageLog).lines = lines

    @on(Input.Submitted, "#input-bar")
    async def handle_input(self, event: Input.Submitted) -> None:
        value = event.value
        event.input.value = ""
        if not await self.controller.submit(value):
            await self._shutdown()
            self.exit()

    async def action_quit(self) -> None:
        """Stop the remote session before leaving."""
        await self._shutdown()
        self.exit()

    async def on_unmount(self) -> None:
        await self._shutdown()

    async def _shutdown(self) -> None:
        if self._closing:
            return
        self._closing = True
        await self.controller.close()
        await self.controller.client.close()
