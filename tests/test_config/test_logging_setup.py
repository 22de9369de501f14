import io
import json
import logging

import pytest
import structlog

from memory_recall.config import Config
from memory_recall.logging import configure_logging, get_logger


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


def test_json_logging_writes_key_value_events():
    cfg = Config()
    cfg.logging.format = "json"
    stream = io.StringIO()

    configure_logging(cfg, stream=stream)
    get_logger("memory_recall.test").info("Indexed memory file", source="/mem/a.md", chunks=2)

    event = json.loads(stream.getvalue().strip())
    assert event["event"] == "Indexed memory file"
    assert event["chunks"] == 2
    assert event["level"] == "info"


def test_level_filter_drops_lower_events():
    cfg = Config()
    cfg.logging.level = "WARNING"
    stream = io.StringIO()

    configure_logging(cfg, stream=stream)
    logger = get_logger("memory_recall.test")
    logger.info("hidden")
    logger.warning("shown", reason="test")

    output = stream.getvalue()
    assert "hidden" not in output
    assert "shown" in output
    assert logging.getLogger("httpx").level == logging.WARNING


def test_log_file_is_used_when_configured(tmp_path):
    cfg = Config()
    cfg.logging.file = str(tmp_path / "logs" / "memory-recall.log")

    configure_logging(cfg)
    get_logger("memory_recall.test").warning("to file")

    assert "to file" in (tmp_path / "logs" / "memory-recall.log").read_text(encoding="utf-8")
