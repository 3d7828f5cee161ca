"""Console logging and stage timing.

Every module logs through ``logging.getLogger(__name__)``, i.e. below the
``ifsred_pipe`` logger. :func:`setup_logging` gives that logger one rich
console handler; :class:`timer` measures a stage or a whole frame and keeps
the duration so it can go into the decision record.
"""

from __future__ import annotations

import logging
import os
import time

from rich.logging import RichHandler


PACKAGE_LOGGER = "ifsred_pipe"
LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def resolve_level(level: str | None = None) -> str:
    """Argument, then ``IFSRED_LOG_LEVEL``, then INFO. Unknown names give INFO."""
    if level is None:
        level = os.environ.get("IFSRED_LOG_LEVEL", "INFO")
    level = str(level).upper().strip()
    return level if level in LEVELS else "INFO"


def setup_logging(level: str | None = None) -> logging.Logger:
    """Attach a RichHandler to the package logger; repeated calls replace it."""

    logger = logging.getLogger(PACKAGE_LOGGER)
    for h in list(logger.handlers):
        if isinstance(h, RichHandler):
            logger.removeHandler(h)

    handler = RichHandler(show_path=False, rich_tracebacks=True, omit_repeated_times=False)
    handler.setFormatter(logging.Formatter("%(threadName)s %(message)s", datefmt="[%H:%M:%S]"))
    logger.addHandler(handler)
    logger.setLevel(resolve_level(level))
    return logger


class timer:
    """Time a block; ``seconds`` holds the duration once the block exits.

    Example:
        with timer("frame obj_0001", log) as t:
            ...
        delta_metrics["seconds"] = t.seconds

    ``level`` is the level of the success line; failures are logged at ERROR.
    """

    def __init__(self, name: str, logger: logging.Logger | None = None, *, level: int = logging.INFO):
        self.name = name
        self.logger = logger or logging.getLogger(PACKAGE_LOGGER)
        self.level = level
        self.seconds = 0.0
        self._t0 = 0.0

    def __enter__(self) -> "timer":
        self._t0 = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.seconds = time.perf_counter() - self._t0
        if exc is None:
            self.logger.log(self.level, "%s done in %.2f s", self.name, self.seconds)
        else:
            self.logger.error("%s failed after %.2f s: %s", self.name, self.seconds, exc)
        return False
