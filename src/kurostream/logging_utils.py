"""Runtime logging helpers.

Every record carries the session id of the turn that produced it (bound by
the stream controller through ``logger.contextualize``); records emitted
outside a turn show ``-``.
"""

from __future__ import annotations

import os
import sys
from logging import Handler
from typing import Any, Literal

from loguru import logger
from rich import get_console
from rich.logging import RichHandler

LogProfile = Literal["default", "chat", "json"]

_NO_SESSION = "-"
_PROFILE_FORMATS: dict[LogProfile, str] = {
    "default": "{time:HH:mm:ss.SSS} | {level:<7} | {extra[session]:<12.12} | {name}:{line} | {message}",
    "chat": "[{extra[session]:.8}] {message}",
    "json": "{message}",
}
_CONFIGURED: tuple[LogProfile, str] | None = None


def _build_chat_handler() -> Handler:
    # Shares the renderer's console so log lines stay above the prompt.
    return RichHandler(
        console=get_console(),
        show_level=True,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )


def _sink_options(profile: LogProfile) -> dict[str, Any]:
    match profile:
        case "chat":
            return {"sink": _build_chat_handler()}
        case "json":
            return {"sink": sys.stderr, "serialize": True}
        case _:
            return {"sink": sys.stderr}


def configure_logging(*, profile: LogProfile = "default", level: str | None = None) -> None:
    """Install the sink for ``profile``; repeated calls with the same arguments do nothing."""

    global _CONFIGURED
    resolved = (level or os.getenv("KURO_LOG_LEVEL", "INFO")).upper()
    if _CONFIGURED == (profile, resolved):
        return

    logger.remove()
    logger.configure(extra={"session": _NO_SESSION})
    logger.add(
        **_sink_options(profile),
        level=resolved,
        format=_PROFILE_FORMATS[profile],
        backtrace=False,
        diagnose=False,
    )
    _CONFIGURED = (profile, resolved)
