from __future__ import annotations

import json

import pytest
from loguru import logger

from voicerelay import logging_utils
from voicerelay.logging_utils import configure_logging


@pytest.fixture(autouse=True)
def _fresh_profile(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logging_utils, "_active", None)


def test_stream_profile_writes_plain_lines_to_stderr(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(profile="stream", level="debug")

    logger.bind(session="sess_log").debug("relay.sent key={}", "A1")

    err = capsys.readouterr().err
    assert "[sess_log]" in err
    assert "relay.sent key=A1" in err


def test_stream_profile_can_emit_json_lines(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(profile="stream", json_lines=True)

    logger.info("turn.advanced")
    logger.debug("hidden below INFO")

    records = [json.loads(line) for line in capsys.readouterr().err.splitlines() if line.strip()]
    assert [record["record"]["message"] for record in records] == ["turn.advanced"]
    assert records[0]["record"]["extra"]["session"] == "-"


def test_same_profile_is_configured_once(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(profile="stream")
    logging_utils._stderr_sink("marker\n")
    configure_logging(profile="stream")

    assert logging_utils._active == ("stream", "INFO", False)
    assert capsys.readouterr().err == "marker\n"
