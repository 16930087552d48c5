from __future__ import annotations

import logging
from pathlib import Path

import pytest

from photobackup.logging_utils import CallbackHandler, child_logger, setup_logging


def test_setup_logging_default():
    logger = setup_logging()
    assert isinstance(logger, logging.Logger)
    assert logger.name == "photobackup"
    assert logger.propagate is False
    [handler] = logger.handlers
    assert handler.level == logging.INFO


def test_setup_logging_verbose():
    logger = setup_logging(verbose=True)
    assert logger.handlers[0].level == logging.DEBUG


def test_setup_logging_is_idempotent():
    setup_logging()
    logger = setup_logging()
    assert len(logger.handlers) == 1


def test_setup_logging_with_log_file(tmp_path: Path):
    log_file = tmp_path / "logs" / "photobackup.log"
    logger = setup_logging(log_file=log_file)
    logger.debug("debug line")
    for h in logger.handlers:
        h.flush()

    assert "debug line" in log_file.read_text(encoding="utf-8")


def test_callback_handler():
    lines: list[tuple[int, str]] = []
    logger = logging.getLogger("photobackup.test.callback")
    logger.setLevel(logging.DEBUG)
    handler = CallbackHandler(lambda levelno, line: lines.append((levelno, line)))
    logger.addHandler(handler)
    try:
        logger.debug("hidden")
        logger.info("hello %s", "world")
        logger.error("bad")
    finally:
        logger.removeHandler(handler)

    assert lines == [(logging.INFO, "hello world"), (logging.ERROR, "bad")]


def test_child_logger():
    lines: list[str] = []
    logger, handler = child_logger("jobs.test", lambda levelno, line: lines.append(line))
    try:
        assert logger.name == "photobackup.jobs.test"
        logger.info("Uploading: a.jpg")
    finally:
        logger.removeHandler(handler)
    logger.info("after removal")

    assert lines == ["Uploading: a.jpg"]


def test_child_logger_is_not_registered():
    lines: list[str] = []
    logger, handler = child_logger("jobs.unregistered", lambda levelno, line: lines.append(line))
    try:
        assert "photobackup.jobs.unregistered" not in logging.Logger.manager.loggerDict
        assert logger.parent is logging.getLogger("photobackup")
        logger.info("still captured")
    finally:
        logger.removeHandler(handler)

    assert lines == ["still captured"]
