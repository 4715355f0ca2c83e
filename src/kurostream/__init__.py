"""kurostream - client-side turn engine for a streaming inference service."""

from .client import KuroClient
from .config import Settings, get_settings
from .conversation import Conversation
from .stream.controller import StreamHandle, StreamSessionController
from .types import Message, Turn, TurnOptions, TurnOutcome, TurnStatus

__version__ = "0.1.0"

__all__ = [
    "Conversation",
    "KuroClient",
    "Message",
    "Settings",
    "StreamHandle",
    "StreamSessionController",
    "Turn",
    "TurnOptions",
    "TurnOutcome",
    "TurnStatus",
    "get_settings",
]
