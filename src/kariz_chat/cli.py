"""Terminal chat client with live streaming output."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.panel import Panel

from kariz_chat.api.client import ChatApiClient
from kariz_chat.config import ClientConfig, load_config
from kariz_chat.core.controller import ChatController
from kariz_chat.core.retry import RetryMode
from kariz_chat.types import ChatEvent, EventType, Message, ModelParameters, Sender

console = Console()

# Repository root: <repo>/src/kariz_chat/cli.py -> <repo>
_REPO_ROOT = Path(__file__).resolve().parent.parent.parent

_HELP = """\
[bold]Commands:[/bold]
  /new             - Start a new chat
  /open <chat-id>  - Open an existing chat and load its history
  /retry           - Retry the last answer as a new message
  /continue        - Retry streaming into the last (failed) answer
  /history         - Show the messages of this chat
  /reset           - Drop all conversation state
  /help            - Show this help
  /quit            - Exit

Press Ctrl-C while an answer is streaming to stop it."""


def get_version() -> str:
    """Read version from pyproject.toml."""
    toml = _REPO_ROOT / "pyproject.toml"
    if toml.exists():
        for line in toml.read_text().splitlines():
            if line.strip().startswith("version"):
                return line.split("=", 1)[1].strip().strip('"').strip("'")
    return "unknown"


class StreamingDisplay:
    """Renders stream events to the terminal in real time."""

    def __init__(self, con: Console):
        self.con = con
        self._in_reasoning = False
        self._in_answer = False

    def handle(self, event: ChatEvent) -> None:
        if event.type == EventType.STREAM_REASONING:
            if not self._in_reasoning:
                self._in_reasoning = True
                self.con.print("[dim italic]thinking:[/dim italic] ", end="")
            self.con.print(event.data["delta"], end="", style="dim italic", highlight=False)

        elif event.type == EventType.STREAM_CONTENT:
            if not self._in_answer:
                if self._in_reasoning:
                    self.con.print()
                self._in_answer = True
                self.con.print()
            self.con.print(event.data["delta"], end="", highlight=False)

        elif event.type == EventType.STREAM_ERROR:
            self._flush()
            self.con.print(f"[red]{event.data['message']}[/red]")

        elif event.type == EventType.STREAM_CANCELLED:
            self._flush()
            self.con.print("[yellow]stopped[/yellow]")

        elif event.type == EventType.STREAM_DONE:
            self._flush()

        elif event.type == EventType.RECONCILE_SCHEDULED:
            self.con.print(
                f"[dim]checking the server for the answer in "
                f"{event.data['delay']:.0f}s...[/dim]"
            )

        elif event.type == EventType.RECONCILE_APPLIED:
            self.con.print("[green]answer recovered from server (see /history)[/green]")

        elif event.type == EventType.CHAT_CREATED:
            self.con.print(f"[dim]chat: {event.data['chat_id']}[/dim]")

    def _flush(self) -> None:
        if self._in_reasoning or self._in_answer:
            self.con.print()
        self._in_reasoning = False
        self._in_answer = False


def render_message(con: Console, msg: Message) -> None:
    if msg.sender is Sender.USER:
        con.print(f"[bold green]you:[/bold green] {msg.text}")
        return
    if msg.reasoning_text:
        con.print(f"[dim italic]{msg.reasoning_text}[/dim italic]")
    style = "red" if msg.is_error else "default"
    con.print(Panel(msg.text or "...", border_style=style, expand=False))
    if msg.show_recharge_button:
        label = msg.button_message or "recharge your account"
        con.print(f"[bold yellow]-> {label}[/bold yellow]")


async def _send_with_interrupt(controller: ChatController, coro) -> None:
    """Run a streaming command with Ctrl-C mapped to ``cancel()``."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        outcome = await coro
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
    if outcome is not None and outcome.error_kind is not None:
        msg = controller.store.get(outcome.message_id)
        if msg is not None and msg.show_recharge_button:
            render_message(console, msg)


async def handle_command(cmd: str, controller: ChatController) -> bool:
    """Run a slash command.  Returns False when the REPL should exit."""
    parts = cmd.split(maxsplit=1)
    name = parts[0].lower()
    arg = parts[1].strip() if len(parts) > 1 else ""

    if name in ("/quit", "/exit", "/q"):
        return False
    if name == "/help":
        console.print(_HELP)
    elif name == "/new":
        await controller.clear_chat()
        console.print("[dim]new chat[/dim]")
    elif name == "/reset":
        await controller.reset_completely()
        console.print("[dim]state reset[/dim]")
    elif name == "/open":
        if not arg:
            console.print("[red]usage: /open <chat-id>[/red]")
        else:
            await controller.select_chat(arg)
            for msg in controller.store.messages:
                render_message(console, msg)
    elif name == "/history":
        for msg in controller.store.messages:
            render_message(console, msg)
    elif name in ("/retry", "/continue"):
        if controller.retry_coordinator.last is None:
            console.print("[dim]nothing to retry[/dim]")
        else:
            mode = RetryMode.RESTART_FRESH if name == "/retry" else RetryMode.CONTINUE_LAST
            await _send_with_interrupt(controller, controller.retry(mode))
    else:
        console.print(f"[red]unknown command: {name}[/red] (try /help)")
    return True


async def run_repl(
    config: ClientConfig,
    params: ModelParameters,
    chat_id: str | None,
    message: str | None,
) -> None:
    controller = ChatController(ChatApiClient(config.api), config)
    display = StreamingDisplay(console)
    controller.bus.subscribe(display.handle)

    try:
        if chat_id:
            await controller.select_chat(chat_id)

        if message is not None:
            await _send_with_interrupt(controller, controller.send(message, params))
            return

        history_dir = Path.home() / ".kariz_chat"
        history_dir.mkdir(parents=True, exist_ok=True)
        session: PromptSession = PromptSession(
            history=FileHistory(str(history_dir / "history")),
        )
        while True:
            try:
                text = await session.prompt_async(HTML("<ansigreen><b>> </b></ansigreen>"))
            except (EOFError, KeyboardInterrupt):
                break
            text = text.strip()
            if not text:
                continue
            if text.startswith("/"):
                if not await handle_command(text, controller):
                    break
                continue
            await _send_with_interrupt(controller, controller.send(text, params))
    finally:
        await controller.close()


@click.command()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to kariz_chat.yaml (auto-detected from CWD or ~/.kariz_chat/)")
@click.option("--chat", "chat_id", default=None, help="Open an existing chat id")
@click.option("--model", "-m", "model_type", default=None, help="Model type to request")
@click.option("--web-search/--no-web-search", default=None, help="Enable web search")
@click.option("--reasoning/--no-reasoning", default=None, help="Request reasoning output")
@click.option("--message", "-g", "message", default=None,
              help="Send one message non-interactively and exit")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
def main(config_path: str | None, chat_id: str | None, model_type: str | None,
         web_search: bool | None, reasoning: bool | None, message: str | None,
         verbose: bool):
    """Kariz chat - streaming AI chat in the terminal."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        config, config_file = load_config(config_path)
    except FileNotFoundError as e:
        raise click.ClickException(str(e)) from e

    defaults = config.stream
    params = ModelParameters(
        model_type=model_type or defaults.default_model,
        web_search=defaults.web_search if web_search is None else web_search,
        reasoning=defaults.reasoning if reasoning is None else reasoning,
    )

    if message is None:
        console.print(f"[bold cyan]Kariz chat[/bold cyan] [dim]v{get_version()}[/dim]")
        if config_file:
            console.print(f"[dim]Config: {config_file}[/dim]")
        else:
            console.print("[dim]Config: defaults (no kariz_chat.yaml found)[/dim]")
        console.print(f"[dim]Server: {config.api.base_url}  Model: {params.model_type}[/dim]")
        console.print("[dim]Type /help for commands[/dim]\n")

    asyncio.run(run_repl(config, params, chat_id, message))


if __name__ == "__main__":
    main()
