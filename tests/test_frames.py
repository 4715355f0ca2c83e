import pytest
from pydantic import ValidationError

from kurostream.stream.events import CapabilityEvent, DoneEvent, TokenEvent, VisionResultEvent, decode_event
from kurostream.stream.frames import END_OF_STREAM, FrameDecoder, parse_record


def test_decoder_returns_only_complete_lines() -> None:
    decoder = FrameDecoder()
    assert decoder.feed(b'data: {"type":"tok') == []
    assert decoder.feed(b'en","content":"a"}\r\n\r\ndata: [DO') == ['data: {"type":"token","content":"a"}', ""]
    assert decoder.feed(b"NE]\n") == ["data: [DONE]"]
    assert decoder.close() == []


def test_decoder_reassembles_multibyte_characters_split_across_chunks() -> None:
    decoder = FrameDecoder()
    encoded = 'data: {"type":"token","content":"é"}\n'.encode()
    split = encoded.index(b"\xc3") + 1
    assert decoder.feed(encoded[:split]) == []
    assert decoder.feed(encoded[split:]) == ['data: {"type":"token","content":"é"}']


def test_decoder_close_flushes_unterminated_tail() -> None:
    decoder = FrameDecoder()
    decoder.feed(b'data: {"type":"done"}')
    assert decoder.close() == ['data: {"type":"done"}']


def test_parse_record_decodes_token() -> None:
    event = parse_record('data: {"type":"token","content":"Hel"}')
    assert isinstance(event, TokenEvent)
    assert event.content == "Hel"


def test_parse_record_recognizes_end_sentinel() -> None:
    assert parse_record("data: [DONE]") is END_OF_STREAM


@pytest.mark.parametrize(
    "line",
    [
        "",
        ": keepalive",
        "event: token",
        "data: {not json",
        "data: [1, 2]",
        'data: {"type":"hologram","content":"x"}',
        'data: {"type":"token"}',
    ],
)
def test_parse_record_skips_non_events(line: str) -> None:
    assert parse_record(line) is None


def test_decode_event_reads_aliased_fields() -> None:
    event = decode_event(
        {
            "type": "vision_result",
            "toolId": "v1",
            "imageUrl": "/img/1.png",
            "dimensions": {"width": 768, "height": 512},
            "seed": 42,
            "elapsed": 3,
        }
    )
    assert isinstance(event, VisionResultEvent)
    assert event.tool_id == "v1"
    assert event.image_url == "/img/1.png"
    assert (event.dimensions.width, event.dimensions.height) == (768, 512)
    assert event.elapsed == 3


def test_decode_event_defaults() -> None:
    done = decode_event({"type": "done"})
    assert isinstance(done, DoneEvent)
    assert done.model is None

    vision = decode_event({"type": "vision_result", "imageUrl": "/x.png"})
    assert isinstance(vision, VisionResultEvent)
    assert vision.tool_id == "vision-1"


def test_decode_event_keeps_unknown_fields_and_ignores_unknown_types() -> None:
    event = decode_event({"type": "capability", "downgraded": True, "profile": "instant", "extra": 1})
    assert isinstance(event, CapabilityEvent)
    assert decode_event({"type": "brand_new"}) is None


def test_decode_event_rejects_known_type_missing_fields() -> None:
    with pytest.raises(ValidationError):
        decode_event({"type": "gate"})
