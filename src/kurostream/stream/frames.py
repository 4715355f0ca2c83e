"""Event frame parser.

Splits the streamed response body into newline-delimited records and decodes
each ``data: `` record into a typed stream event.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass

from loguru import logger
from pydantic import ValidationError

from kurostream.stream.events import StreamEvent, decode_event

DATA_PREFIX = "data: "
END_SENTINEL = "[DONE]"
LOG_PREVIEW_LIMIT = 100


@dataclass(frozen=True)
class EndOfStream:
    """The literal end-of-stream sentinel record."""


END_OF_STREAM = EndOfStream()


class FrameDecoder:
    """Incremental UTF-8 line splitter.

    Bytes are fed as they arrive; only complete lines are returned, the
    trailing partial line is kept until more data (or ``close``) completes it.
    Multi-byte characters split across chunks are reassembled.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def close(self) -> list[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        tail = tail.rstrip("\r")
        return [tail] if tail else []


def parse_record(line: str) -> StreamEvent | EndOfStream | None:
    """Decode one line. Returns ``None`` for anything that is not an event.

    Blank separators, lines without the data prefix, malformed JSON and
    unknown event types all yield ``None``; malformed records are logged since
    partial frames at chunk boundaries are expected occasionally.
    """
    if not line.startswith(DATA_PREFIX):
        return None
    raw = line[len(DATA_PREFIX) :]
    if raw.strip() == END_SENTINEL:
        return END_OF_STREAM

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("stream.frame.malformed preview={!r}", raw[:LOG_PREVIEW_LIMIT])
        return None
    if not isinstance(data, dict):
        logger.warning("stream.frame.not_object preview={!r}", raw[:LOG_PREVIEW_LIMIT])
        return None

    try:
        event = decode_event(data)
    except ValidationError as exc:
        logger.warning("stream.frame.invalid type={} errors={}", data.get("type"), exc.error_count())
        return None
    if event is None:
        logger.debug("stream.frame.unknown type={}", data.get("type"))
    return event
