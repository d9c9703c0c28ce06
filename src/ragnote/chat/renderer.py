"""Rich terminal rendering for ragnote chat output."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from ragnote.core.chat import ChatMetadata, Message, message_display_text


class ChatRenderer:
    """Renders chat output with rich formatting."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_welcome(self, vault_root: str, agent_name: str, model_name: str) -> None:
        self.console.print(
            Panel(
                f"[bold]ragnote[/bold] chatting with your notes in {vault_root}\n"
                f"Agent: [cyan]{agent_name}[/cyan]  Model: [cyan]{model_name or 'not set'}[/cyan]\n"
                "/help: commands  Ctrl+C: cancel a response",
                border_style="cyan",
            )
        )

    def render_assistant_message(self, text: str) -> None:
        """Render a complete assistant response."""
        self.console.print()
        self.console.print(Markdown(text))
        self.console.print()

    def render_message(self, message: Message) -> None:
        """Render a stored message when replaying a chat."""
        if message.role == "user":
            self.console.print(f"[bold green]>[/bold green] {message_display_text(message)}")
        elif message.role == "assistant":
            text = message_display_text(message)
            if text:
                self.render_assistant_message(text)
            for call in message.tool_calls:
                self.render_tool_use(call.tool_name, call.args)
        elif message.role == "tool":
            for result in message.tool_results:
                self.render_tool_result(result.tool_name, result.result)

    def render_tool_use(self, tool_name: str, tool_input: dict[str, Any]) -> None:
        """Render a tool use notification."""
        args = ", ".join(f"{k}={v!r}" for k, v in tool_input.items())
        self.console.print(
            Panel(
                f"[bold]{tool_name}[/bold]{f'({args})' if args else ''}",
                title="Tool Use",
                border_style="blue",
                expand=False,
            )
        )

    def render_tool_result(self, tool_name: str, result: Any) -> None:
        """Render a tool execution result."""
        if isinstance(result, list):
            summary = f"{len(result)} result{'s' if len(result) != 1 else ''}"
        elif isinstance(result, dict) and "path" in result:
            summary = result["path"]
        else:
            summary = str(result)[:80]
        self.console.print(f"  [green]OK[/green] [dim]{tool_name}: {summary}[/dim]")

    def render_pending_tools(self, calls: list[Any]) -> None:
        for call in calls:
            self.console.print(
                f"  [yellow]pending[/yellow] {call.tool_name} ({call.tool_call_id}), "
                "use /run to execute"
            )

    def render_advisory(self, message: str) -> None:
        self.console.print(Panel(message, title="Notice", border_style="yellow", expand=False))

    def render_error(self, message: str) -> None:
        """Render an error message."""
        self.console.print(f"[bold red]Error:[/bold red] {message}")

    def render_info(self, message: str) -> None:
        """Render an informational message."""
        self.console.print(f"[dim]{message}[/dim]")

    def render_chat_list(self, chats: list[ChatMetadata]) -> None:
        if not chats:
            self.render_info("No chats yet.")
            return
        table = Table(show_header=True, header_style="bold")
        table.add_column("ID")
        table.add_column("Name")
        for meta in chats:
            table.add_row(meta.id, meta.display_name)
        self.console.print(table)

    def render_model_list(self, models: list[Any], default: str) -> None:
        if not models:
            self.render_info("No models configured.")
            return
        table = Table(show_header=True, header_style="bold")
        table.add_column("Model")
        table.add_column("API")
        table.add_column("Context")
        for config in models:
            marker = " *" if config.model_name == default else ""
            table.add_row(
                f"{config.model_name}{marker}", config.api_name, str(config.context_length)
            )
        self.console.print(table)

    # --- Streaming render methods ---

    def render_streaming_start(self) -> None:
        """Called before the first streamed token."""
        self.console.print()

    def render_text_delta(self, text: str) -> None:
        """Print a streamed token without newline."""
        self.console.out(text, end="", highlight=False)

    def render_status(self, message: str) -> None:
        """Show a transient status message (overwritten by next output)."""
        self.console.print(f"[dim italic]{message}[/dim italic]", end="\r")

    def render_cancelled(self) -> None:
        """Show cancellation notice."""
        self.console.print("\n[bold yellow]Cancelled.[/bold yellow]")

    def render_streaming_end(self) -> None:
        """Called after streaming is complete."""
        self.console.print()
