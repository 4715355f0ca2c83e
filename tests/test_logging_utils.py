import json

import pytest
from loguru import logger

from kurostream import logging_utils
from kurostream.logging_utils import configure_logging


@pytest.fixture(autouse=True)
def _fresh_logging(monkeypatch):
    monkeypatch.setattr(logging_utils, "_CONFIGURED", None)
    yield
    logger.remove()


def test_json_profile_serializes_session(capsys) -> None:
    configure_logging(profile="json", level="DEBUG")

    with logger.contextualize(session="s1"):
        logger.info("stream.open messages={}", 1)

    record = json.loads(capsys.readouterr().err.strip().splitlines()[-1])["record"]
    assert record["message"] == "stream.open messages=1"
    assert record["extra"]["session"] == "s1"


def test_default_profile_marks_records_outside_a_turn(capsys) -> None:
    configure_logging(level="INFO")

    logger.debug("hidden")
    logger.warning("client.beacon.failed")

    lines = capsys.readouterr().err.strip().splitlines()
    assert len(lines) == 1
    assert "| WARNING | -            |" in lines[0]
    assert lines[0].endswith("client.beacon.failed")
