"""
log.py — Logger class with a TRACE level and a coloured console formatter.

Every module grabs its own logger with ``logging.getLogger(__name__)``;
importing this module first makes those loggers ``CustomLogger``
instances so ``logger.trace()`` is available everywhere.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, TextIO

TRACE = 5


class CustomLogger(logging.Logger):
    def trace(self, message: object, *args: Any, stacklevel: int = 1, **kwargs: Any) -> None:
        if self.isEnabledFor(TRACE):
            self._log(TRACE, message, args, **kwargs, stacklevel=stacklevel + 1)


logging.setLoggerClass(CustomLogger)
logging.addLevelName(TRACE, "TRACE")


class ColoredFormatter(logging.Formatter):
    RESET: str = "\033[0m"
    COLORS: dict[int, str] = {
        TRACE: "\033[0;37m",
        logging.DEBUG: "\033[0m",
        logging.INFO: "\033[34m",
        logging.WARNING: "\033[1;33m",
        logging.ERROR: "\033[1;31m",
        logging.CRITICAL: "\033[1;37;41m",
    }

    def format(self, record: logging.LogRecord) -> str:
        c = self.COLORS.get(record.levelno, self.RESET)
        record.elapsed = f"{record.relativeCreated / 1000.0:8.3f}"  # type: ignore[attr-defined]
        # Colour a copy so other handlers see the plain record.
        record = logging.makeLogRecord(record.__dict__)
        record.msg = f"{c}{record.msg}{self.RESET}"
        record.levelname = f"{c}{record.levelname:<8}{self.RESET}"
        return super().format(record)


LOG_FORMAT = "%(elapsed)s | %(levelname)-8s | %(name)s | %(funcName)s[%(lineno)d] | %(message)s"


def setup_logging(verbose: bool = False, stream: TextIO | None = None) -> logging.Logger:
    """Attach the coloured handler to the ``httpxy`` logger tree.

    INFO by default; *verbose* drops to TRACE, which adds the raw
    request dump and per-chunk relay byte counts.
    """
    root: logging.Logger = logging.getLogger("httpxy")
    level = TRACE if verbose else logging.INFO
    root.setLevel(level)
    root.propagate = False

    for h in list(root.handlers):
        root.removeHandler(h)

    ch: logging.StreamHandler[TextIO] = logging.StreamHandler(stream or sys.stderr)
    ch.setLevel(level)
    ch.setFormatter(ColoredFormatter(LOG_FORMAT))
    root.addHandler(ch)
    return root
