"""Interactive chat loop."""

from __future__ import annotations

from prompt_toolkit import PromptSession
from prompt_toolkit.buffer import Buffer
from prompt_toolkit.patch_stdout import patch_stdout

from kurostream.conversation import Conversation
from kurostream.errors import KuroError

from .render import Renderer, TurnPrinter

QUIT_COMMANDS = {"/quit", "/exit", "/q"}
PROMPT_REFRESH_SECONDS = 0.5


class InteractiveCli:
    """Prompt loop over one conversation.

    Typing before sending feeds speculative preemption; typing while a reply
    streams feeds correction detection, and Enter applies the redirect.
    """

    def __init__(self, conversation: Conversation, renderer: Renderer, *, base_url: str = "") -> None:
        self._conversation = conversation
        self._renderer = renderer
        self._base_url = base_url
        self._session: PromptSession[str] | None = None

    def _prompt_session(self) -> PromptSession[str]:
        if self._session is None:
            self._session = PromptSession(refresh_interval=PROMPT_REFRESH_SECONDS)
            self._session.default_buffer.on_text_changed += self._on_text_changed
        return self._session

    def _prompt_message(self) -> str:
        return "redirect> " if self._conversation.is_streaming else "> "

    def _on_text_changed(self, buffer: Buffer) -> None:
        self._conversation.on_input_change(buffer.text)

    async def run(self) -> None:
        self._renderer.welcome(self._conversation.session_id, self._base_url)
        unsubscribe = self._conversation.subscribe(TurnPrinter(self._renderer, self._conversation))
        session = self._prompt_session()
        try:
            with patch_stdout(raw=True):
                while True:
                    try:
                        line = await session.prompt_async(self._prompt_message)
                    except KeyboardInterrupt:
                        if self._conversation.is_streaming:
                            await self._conversation.cancel()
                            continue
                        break
                    except EOFError:
                        break
                    if not await self.handle_line(line):
                        break
        finally:
            unsubscribe()
            await self._conversation.close()
        self._renderer.info("Bye.")

    async def handle_line(self, line: str) -> bool:
        """Process one entered line. Returns False when the loop should stop."""
        text = line.strip()
        if not text:
            return True
        if text in QUIT_COMMANDS:
            return False
        if text.startswith("/"):
            await self._run_command(text)
            return True
        if self._conversation.is_streaming:
            await self._redirect(text)
            return True

        self._renderer.user_message(text)
        self._renderer.assistant_start()
        await self._conversation.send(text)
        return True

    async def _redirect(self, text: str) -> None:
        correction = self._conversation.correction
        if not correction.submit(text):
            self._renderer.info("[dim]A redirect needs a few words; use /stop to cancel the reply.[/dim]")
            return
        self._renderer.info(f"[dim]Redirecting: {correction.phrase}[/dim]")
        if await correction.apply():
            self._renderer.assistant_start()

    async def _run_command(self, text: str) -> None:
        command = text.split()[0]
        try:
            if command == "/stop":
                await self._conversation.cancel()
            elif command == "/steps":
                self._renderer.toggle_steps()
            elif command == "/regen":
                index = self._last_reply_index()
                if index is None:
                    self._renderer.error("nothing to regenerate")
                    return
                self._renderer.assistant_start()
                await self._conversation.regenerate(index)
            else:
                self._renderer.error(f"unknown command {command}")
        except KuroError as exc:
            self._renderer.error(str(exc))

    def _last_reply_index(self) -> int | None:
        messages = self._conversation.messages
        for index in range(len(messages) - 1, -1, -1):
            if messages[index].role == "assistant":
                return index
        return None
