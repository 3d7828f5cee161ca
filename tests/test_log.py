from __future__ import annotations

import logging

import pytest
from rich.logging import RichHandler

from ifsred_pipe.log import PACKAGE_LOGGER, resolve_level, setup_logging, timer
from ifsred_pipe.pipeline import FramePipeline, Stage
from ifsred_pipe.schema import ProcessingParameters

from synth import make_raw


@pytest.fixture
def package_logger():
    logger = logging.getLogger(PACKAGE_LOGGER)
    saved = (list(logger.handlers), logger.level)
    yield logger
    for h in list(logger.handlers):
        logger.removeHandler(h)
    for h in saved[0]:
        logger.addHandler(h)
    logger.setLevel(saved[1])


def test_resolve_level(monkeypatch):
    monkeypatch.setenv("IFSRED_LOG_LEVEL", "debug")
    assert resolve_level() == "DEBUG"
    assert resolve_level("warning") == "WARNING"
    assert resolve_level("chatty") == "INFO"


def test_setup_logging_replaces_its_handler(package_logger):
    setup_logging("info")
    setup_logging("warning")

    rich_handlers = [h for h in package_logger.handlers if isinstance(h, RichHandler)]
    assert len(rich_handlers) == 1
    assert package_logger.level == logging.WARNING


def test_pipeline_applies_configured_log_level(package_logger):
    FramePipeline(ProcessingParameters(log_level="debug"), cr_detector=None)
    assert package_logger.level == logging.DEBUG
    assert any(isinstance(h, RichHandler) for h in package_logger.handlers)


def test_timer_keeps_duration_and_logs_failure(caplog):
    logger = logging.getLogger("ifsred_pipe.test")
    with caplog.at_level(logging.INFO, logger="ifsred_pipe.test"):
        with timer("frame ok", logger) as t:
            pass
        with pytest.raises(RuntimeError):
            with timer("frame bad", logger):
                raise RuntimeError("boom")

    assert t.seconds >= 0.0
    assert "frame ok done" in caplog.text
    assert "frame bad failed" in caplog.text
    assert "boom" in caplog.text


def test_every_stage_records_its_duration():
    result = FramePipeline(cr_detector=None).run_frame(make_raw("f1"))

    for stage in Stage:
        seconds = result.record.stage(stage.value).metrics["seconds"]
        assert seconds >= 0.0
