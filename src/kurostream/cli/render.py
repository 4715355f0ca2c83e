"""Terminal rendering for kurostream."""

from __future__ import annotations

import re
import threading

from rich.console import Console
from rich.markup import escape

from kurostream.conversation import Conversation
from kurostream.stream.updates import (
    ConnectionStatusChanged,
    ContentAppended,
    ContentReplaced,
    ContentSet,
    MetadataChanged,
    NoticeRaised,
    TurnFinished,
    TurnUpdate,
)
from kurostream.types import TurnOutcome, TurnStatus

PLACEHOLDER_PATTERN = re.compile(r"__TOOL_PENDING_(.+?)__")
NOTICE_STYLES = {"error": "bold red", "warning": "yellow", "info": "cyan"}


class Renderer:
    """CLI renderer using Rich for terminal output."""

    def __init__(self, console: Console | None = None) -> None:
        self.console: Console = console or Console()
        self.show_steps: bool = False
        self._print_lock = threading.Lock()

    def toggle_steps(self) -> None:
        self.show_steps = not self.show_steps
        self._print(f"[dim]Steps {'shown' if self.show_steps else 'hidden'}[/dim]")

    def welcome(self, session_id: str, base_url: str) -> None:
        self._print("[bold blue]kurostream[/bold blue] - type to chat, /quit to leave")
        self._print(f"[bold]Server:[/bold] [cyan]{escape(base_url)}[/cyan]  [bold]Session:[/bold] {session_id}")

    def info(self, message: str) -> None:
        self._print(message)

    def error(self, message: str) -> None:
        self._print(f"[bold red]Error:[/bold red] {escape(message)}")

    def user_message(self, message: str) -> None:
        self._print(f"[bold cyan]You:[/bold cyan] {escape(message)}")

    def assistant_start(self) -> None:
        self._print("[bold yellow]Kuro:[/bold yellow] ", end="")

    def assistant_chunk(self, text: str) -> None:
        """Stream raw reply text; pending tool calls show as a short marker."""
        shown = PLACEHOLDER_PATTERN.sub(lambda m: f"[tool {m.group(1)}]", text)
        with self._print_lock:
            self.console.print(shown, end="", markup=False, highlight=False, soft_wrap=True)

    def tool_result(self, tool_id: str, block: str) -> None:
        self._print(f"\n[dim]tool {escape(tool_id)}:[/dim]")
        with self._print_lock:
            self.console.print(block, markup=False, highlight=False)

    def step(self, text: str) -> None:
        if self.show_steps:
            self._print(f"\n[dim]· {escape(text)}[/dim]")

    def notice(self, level: str, message: str) -> None:
        style = NOTICE_STYLES.get(level, "dim")
        self._print(f"\n[{style}]{escape(message)}[/{style}]")

    def status(self, message: str | None) -> None:
        if message:
            self._print(f"\n[dim italic]{escape(message)}[/dim italic]")

    def outcome(self, outcome: TurnOutcome) -> None:
        self._print("")
        if outcome.status is TurnStatus.COMPLETED:
            model = f" · {escape(outcome.model)}" if outcome.model else ""
            self._print(f"[dim]{outcome.tokens} tokens · {outcome.elapsed_ms / 1000:.1f}s{model}[/dim]")
        elif outcome.status is not TurnStatus.CORRECTED:
            self._print(f"[dim]turn {outcome.status}[/dim]")

    def _print(self, message: str, *, end: str = "\n") -> None:
        with self._print_lock:
            self.console.print(message, end=end)


class TurnPrinter:
    """Conversation listener that echoes turn updates to the terminal."""

    def __init__(self, renderer: Renderer, conversation: Conversation) -> None:
        self._renderer = renderer
        self._conversation = conversation
        self._steps_seen = 0

    def __call__(self, update: TurnUpdate) -> None:
        match update:
            case ContentAppended(text=text):
                self._renderer.assistant_chunk(text)
            case ContentSet(text=text, error=error):
                if not self._reply_is(text):
                    return
                if error:
                    self._renderer.error(text)
                else:
                    self._renderer.assistant_chunk(text)
            case ContentReplaced(search=search, replacement=replacement):
                matched = PLACEHOLDER_PATTERN.fullmatch(search)
                self._renderer.tool_result(matched.group(1) if matched else search, replacement)
            case MetadataChanged():
                self._print_new_steps()
            case NoticeRaised(level=level, message=message):
                self._renderer.notice(level, message)
            case ConnectionStatusChanged(message=message):
                self._renderer.status(message)
            case TurnFinished(outcome=outcome):
                self._steps_seen = 0
                self._renderer.outcome(outcome)

    def _reply_is(self, text: str) -> bool:
        """Whether the conversation actually took ``text`` as the reply."""
        reply = self._conversation.reply
        return reply is not None and reply.content == text

    def _print_new_steps(self) -> None:
        reply = self._conversation.reply
        if reply is None or reply.meta is None:
            return
        steps = reply.meta.steps
        if len(steps) < self._steps_seen:
            self._steps_seen = 0
        for step in steps[self._steps_seen :]:
            self._renderer.step(step.text)
        self._steps_seen = len(steps)
