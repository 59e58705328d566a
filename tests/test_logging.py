from __future__ import annotations

import io
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager

import pytest

from rehome_classifier.logging import (
    _ConsoleFormatter,
    _JsonFormatter,
    _choose_formatter,
    get_logger,
    init_logging,
    log_event,
)
from rehome_classifier.request_context import request_id_var


@contextmanager
def _capture(fmt: logging.Formatter) -> Iterator[io.StringIO]:
    buf = io.StringIO()
    h = logging.StreamHandler(buf)
    h.setFormatter(fmt)
    logger = get_logger()
    prev = logger.level
    logger.setLevel(logging.INFO)
    logger.addHandler(h)
    try:
        yield buf
    finally:
        logger.removeHandler(h)
        logger.setLevel(prev)


def test_log_event_fields_are_typed_in_json() -> None:
    with _capture(_JsonFormatter()) as buf:
        log_event(
            "classify_finished",
            {
                "category": "books",
                "confidence": 0.75,
                "reusable": False,
                "latency_ms": 12,
                "note": "has spaces dropped",
            },
        )
    rec = json.loads(buf.getvalue().strip())
    assert rec["message"] == "classify_finished"
    assert rec["category"] == "books"
    assert rec["confidence"] == 0.75
    assert rec["reusable"] is False
    assert rec["latency_ms"] == 12
    assert "note" not in rec


def test_json_includes_correlation_id_from_context() -> None:
    token = request_id_var.set("cid-9")
    try:
        with _capture(_JsonFormatter()) as buf:
            get_logger().info("hello world")
    finally:
        request_id_var.reset(token)
    rec = json.loads(buf.getvalue().strip())
    assert rec["correlation_id"] == "cid-9"
    assert rec["message"] == "hello world"


def test_exc_info_present_in_json() -> None:
    with _capture(_JsonFormatter()) as buf:
        try:
            raise ValueError("boom")
        except ValueError:
            get_logger().exception("oops")
    out = buf.getvalue()
    assert '"exc_info":' in out and "Traceback" in out


def test_console_formatter_renders_event_and_pairs() -> None:
    with _capture(_ConsoleFormatter()) as buf:
        log_event("model_loaded", {"model_id": "m1", "latency_ms": 5})
        get_logger().warning("reusability_missing label=toys fallback=true")
    out = buf.getvalue()
    assert "model_loaded" in out and "m1" in out
    assert "[WARN]" in out and "reusability_missing" in out


def test_choose_formatter_respects_env(monkeypatch: pytest.MonkeyPatch) -> None:
    assert isinstance(_choose_formatter("json"), _JsonFormatter)
    assert isinstance(_choose_formatter("pretty"), _ConsoleFormatter)
    monkeypatch.setenv("REHOME_LOG_JSON", "1")
    monkeypatch.delenv("REHOME_LOG_PRETTY", raising=False)
    assert isinstance(_choose_formatter(), _JsonFormatter)
    monkeypatch.delenv("REHOME_LOG_JSON")
    monkeypatch.setenv("REHOME_LOG_PRETTY", "yes")
    assert isinstance(_choose_formatter(), _ConsoleFormatter)


def test_init_logging_installs_single_handler(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REHOME_LOG_LEVEL", "warning")
    logger = init_logging("json")
    init_logging("json")
    streams = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
    assert len(streams) == 1
    assert logger.level == logging.WARNING
    monkeypatch.setenv("REHOME_LOG_LEVEL", "INFO")
    init_logging("json")
