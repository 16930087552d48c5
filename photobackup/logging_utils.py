from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable


LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def setup_logging(*, verbose: bool = False, log_file: Path | None = None) -> logging.Logger:
    """
    Set up the "photobackup" logger.

    Args:
        verbose: If True, show DEBUG logs (per-file skip reasons). Otherwise INFO and above.
        log_file: Optional file that receives everything at DEBUG level.
    """
    logger = logging.getLogger("photobackup")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    fmt = logging.Formatter(LOG_FORMAT)

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    logger.propagate = False
    return logger


class CallbackHandler(logging.Handler):
    """Forwards each formatted record to `callback(levelno, line)`."""

    def __init__(self, callback: Callable[[int, str], None], level: int = logging.INFO) -> None:
        super().__init__(level=level)
        self.callback = callback
        self.setFormatter(logging.Formatter("%(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.callback(record.levelno, self.format(record))
        except Exception:
            self.handleError(record)


def child_logger(name: str, callback: Callable[[int, str], None], *, level: int = logging.INFO) -> tuple[logging.Logger, CallbackHandler]:
    """
    A logger under "photobackup" whose records also go to `callback`.
    Records still propagate to the "photobackup" handlers. Detach with
    `logger.removeHandler(handler)` when done.

    The logger is not registered with the logging manager, so it is freed
    with its last reference instead of living for the whole process.
    """
    logger = logging.Logger(f"photobackup.{name}", level=logging.DEBUG)
    logger.parent = logging.getLogger("photobackup")
    handler = CallbackHandler(callback, level=level)
    logger.addHandler(handler)
    return logger, handler
