"""Explicitly owned logging setup for a run.

Library modules only ever call ``logging.getLogger(__name__)``. Sinks are
attached by a LoggingContext that the caller creates before a run and
closes after it, so nothing configures logging as an import side effect.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import IO

from openspacenet.exceptions import ConfigurationError

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LEVELS: dict[str, int] = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}

SHORT_FORMAT = "%(levelname)s - %(message)s"
LONG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(message)s"


def parse_level(name: str) -> int:
    """Map a level name (trace, debug, info, warning, error, fatal) to a logging level."""
    try:
        return LEVELS[name.lower()]
    except KeyError:
        valid = ", ".join(LEVELS)
        raise ConfigurationError(f"Invalid log level: '{name}'. Valid levels: {valid}", field="log") from None


class _MaxLevelFilter(logging.Filter):
    """Pass only records at or below a level."""

    def __init__(self, max_level: int) -> None:
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level


class LoggingContext:
    """Console and file sinks attached to the ``openspacenet`` logger.

    Informational messages go to stdout and warnings and errors go to
    stderr, both in a short format. An optional log file receives a long
    format from ``file_level`` up.

    Args:
        name: Logger to configure.
        console_level: Lowest level printed to stdout.
        quiet: Drop stdout output; also drop stderr when a log file is set.
        log_file: Optional path of a log file.
        file_level: Lowest level written to the log file.
        stdout: Stream for informational output. ``sys.stdout`` if None.
        stderr: Stream for warnings and errors. ``sys.stderr`` if None.

    Example::

        with LoggingContext(log_file="run.log") as log:
            Orchestrator(config, source, client, sink, log=log).run()
    """

    def __init__(
        self,
        name: str = "openspacenet",
        console_level: int = logging.INFO,
        quiet: bool = False,
        log_file: str | Path | None = None,
        file_level: int = logging.DEBUG,
        stdout: IO[str] | None = None,
        stderr: IO[str] | None = None,
    ) -> None:
        self.name = name
        self.console_level = console_level
        self.quiet = quiet
        self.log_file = Path(log_file) if log_file is not None else None
        self.file_level = file_level
        self._stdout = stdout
        self._stderr = stderr
        self._handlers: list[logging.Handler] = []
        self._saved: tuple[int, bool] | None = None

    @property
    def logger(self) -> logging.Logger:
        return logging.getLogger(self.name)

    @property
    def is_open(self) -> bool:
        return self._saved is not None

    def open(self) -> logging.Logger:
        """Attach the sinks and return the configured logger."""
        if self.is_open:
            return self.logger

        logger = self.logger
        self._saved = (logger.level, logger.propagate)

        short = logging.Formatter(SHORT_FORMAT)
        levels = []

        if not self.quiet:
            out = logging.StreamHandler(self._stdout or sys.stdout)
            out.setLevel(self.console_level)
            out.addFilter(_MaxLevelFilter(logging.INFO))
            out.setFormatter(short)
            self._handlers.append(out)
            levels.append(self.console_level)

        if not (self.quiet and self.log_file is not None):
            err = logging.StreamHandler(self._stderr or sys.stderr)
            err.setLevel(logging.WARNING)
            err.setFormatter(short)
            self._handlers.append(err)
            levels.append(logging.WARNING)

        if self.log_file is not None:
            try:
                file_handler = logging.FileHandler(self.log_file, mode="w", encoding="utf-8")
            except OSError as exc:
                self._saved = None
                self._handlers.clear()
                raise ConfigurationError(
                    f"Error opening log file {self.log_file} for writing: {exc}", field="log"
                ) from exc
            file_handler.setLevel(self.file_level)
            file_handler.setFormatter(logging.Formatter(LONG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
            self._handlers.append(file_handler)
            levels.append(self.file_level)

        for handler in self._handlers:
            logger.addHandler(handler)

        logger.setLevel(min(levels) if levels else logging.CRITICAL + 1)
        logger.propagate = False
        return logger

    def close(self) -> None:
        """Detach and close the sinks, restoring the logger's previous state."""
        if not self.is_open:
            return

        logger = self.logger
        for handler in self._handlers:
            logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()

        level, propagate = self._saved
        logger.setLevel(level)
        logger.propagate = propagate
        self._saved = None

    def __enter__(self) -> LoggingContext:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
