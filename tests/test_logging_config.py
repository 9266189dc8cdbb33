"""
Tests for structured log output and the timing decorator.
"""
import json

import pytest

from upscaler import logging_config
from upscaler.logging_config import StructuredLogger, timed


@pytest.fixture
def json_logger(monkeypatch):
    monkeypatch.setattr(logging_config, "LOG_FORMAT", "json")
    monkeypatch.setattr(logging_config, "LOG_LEVEL", "DEBUG")

    def build(name):
        return StructuredLogger(name)

    return build


def read_lines(capsys):
    return [json.loads(line) for line in capsys.readouterr().out.splitlines()]


def test_event_and_context_are_json_fields(json_logger, capsys):
    logger = json_logger("upscaler.test_json")
    logger.info("batch_created", batch_id="b1", images=3)

    [line] = read_lines(capsys)
    assert line["event"] == "batch_created"
    assert line["level"] == "INFO"
    assert line["logger"] == "upscaler.test_json"
    assert line["batch_id"] == "b1"
    assert line["images"] == 3


def test_error_records_exception_details(json_logger, capsys):
    logger = json_logger("upscaler.test_error")
    try:
        raise RuntimeError("ledger offline")
    except RuntimeError as e:
        logger.error("debit_failed", error=e, job_id="j1")

    [line] = read_lines(capsys)
    assert line["error_type"] == "RuntimeError"
    assert line["error_message"] == "ledger offline"
    assert "ledger offline" in line["traceback"]


def test_text_format_omits_traceback(monkeypatch, capsys):
    monkeypatch.setattr(logging_config, "LOG_FORMAT", "text")
    logger = StructuredLogger("upscaler.test_text")
    try:
        raise ValueError("bad")
    except ValueError as e:
        logger.error("job_crashed", error=e, job_id="j1")

    out = capsys.readouterr().out
    assert "[ERROR] job_crashed" in out
    assert "job_id=j1" in out
    assert "Traceback" not in out


class TestTimed:

    def test_logs_duration_on_success(self, json_logger, capsys):
        logger = json_logger("upscaler.test_timed")

        @timed(logger)
        def create_session():
            return "cs_1"

        assert create_session() == "cs_1"
        [line] = read_lines(capsys)
        assert line["event"] == "call_completed"
        assert line["function"] == "create_session"
        assert line["duration_ms"] >= 0

    def test_logs_and_reraises_failure(self, json_logger, capsys):
        logger = json_logger("upscaler.test_timed_failure")

        @timed(logger)
        def retrieve_session():
            raise LookupError("missing")

        with pytest.raises(LookupError):
            retrieve_session()
        [line] = read_lines(capsys)
        assert line["event"] == "call_failed"
        assert line["error_type"] == "LookupError"
