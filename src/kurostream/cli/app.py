"""CLI main module for kurostream."""

from __future__ import annotations

import asyncio
from typing import Any

import typer

from kurostream.client import KuroClient
from kurostream.config import Settings, get_settings
from kurostream.conversation import Conversation
from kurostream.errors import ConfigurationError
from kurostream.logging_utils import configure_logging
from kurostream.types import TurnOutcome, TurnStatus

from .interactive import InteractiveCli
from .render import Renderer, TurnPrinter

app = typer.Typer(
    name="kurostream",
    help="Stream turns from a Kuro inference service.",
    add_completion=False,
    rich_markup_mode="rich",
)


def build_client(settings: Settings) -> KuroClient:
    return KuroClient.from_settings(settings)


def _load_settings(base_url: str | None, token: str | None) -> Settings:
    overrides: dict[str, Any] = {}
    if base_url is not None:
        overrides["base_url"] = base_url
    if token is not None:
        overrides["token"] = token
    try:
        return get_settings(**overrides)
    except ConfigurationError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(2) from exc


@app.command()
def chat(
    base_url: str | None = typer.Option(None, "--base-url", help="Inference service base URL"),
    token: str | None = typer.Option(None, "--token", help="Bearer credential", envvar="KURO_TOKEN"),
    session_id: str | None = typer.Option(None, "--session-id", help="Resume a server-side session id"),
) -> None:
    """Interactive chat with live redirects."""

    settings = _load_settings(base_url, token)
    configure_logging(profile="chat", level=settings.log_level)
    asyncio.run(_run_chat(settings, session_id))


async def _run_chat(settings: Settings, session_id: str | None) -> None:
    async with build_client(settings) as client:
        conversation = Conversation(client, settings, session_id=session_id)
        await InteractiveCli(conversation, Renderer(), base_url=settings.base_url).run()


@app.command()
def send(
    message: str = typer.Argument(..., help="User message to send"),
    base_url: str | None = typer.Option(None, "--base-url", help="Inference service base URL"),
    token: str | None = typer.Option(None, "--token", help="Bearer credential", envvar="KURO_TOKEN"),
    image: list[str] = typer.Option([], "--image", help="Attach an image (data URL or URL)"),  # noqa: B008
    steps: bool = typer.Option(False, "--steps", help="Print progress steps"),
) -> None:
    """Send one message and stream the reply to the terminal."""

    settings = _load_settings(base_url, token)
    renderer = Renderer()
    renderer.show_steps = steps
    outcome = asyncio.run(_send_once(settings, message, image, renderer))
    if outcome is None or outcome.status is not TurnStatus.COMPLETED:
        raise typer.Exit(1)


async def _send_once(settings: Settings, message: str, images: list[str], renderer: Renderer) -> TurnOutcome | None:
    async with build_client(settings) as client:
        conversation = Conversation(client, settings)
        conversation.subscribe(TurnPrinter(renderer, conversation))
        renderer.assistant_start()
        await conversation.send(message, images=images)
        outcome = await conversation.wait()
        await conversation.close()
        return outcome


if __name__ == "__main__":
    app()
