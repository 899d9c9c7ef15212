"""Logging set-up for programs built on predict_refine.

Library modules only create loggers. A program calls config() once to decide
where the messages of the predict_refine logger go and how much is shown."""

from __future__ import annotations

import logging
import os
import sys
import time

from colorlog import ColoredFormatter

# handlers attached by config, removed again if config is called a second time
_installed_handlers = []


class LogfileFormatter(logging.Formatter):
    """Plain text formatter for log files.

    With timed=True each message starts with the seconds elapsed since the
    formatter was made. Warnings and errors are marked with WARN:, and the
    continuation lines of a message are indented to line up with its text."""

    def __init__(self, timed=False):
        super().__init__()
        self.timed = timed
        self.start_time = time.time()

    def format(self, record):
        prefix = ""
        if self.timed:
            prefix = "%6.1f: " % (record.created - self.start_time)
        if record.levelno >= logging.WARNING:
            prefix += "WARN: "
        lines = record.getMessage().split("\n")
        indent = "\n" + " " * len(prefix)
        return prefix + indent.join(lines)


def _console_handler():
    console = logging.StreamHandler(sys.stdout)
    if "NO_COLOR" not in os.environ and sys.stdout.isatty():
        console.setFormatter(
            ColoredFormatter(
                "%(log_color)s%(message)s",
                log_colors={
                    "DEBUG": "blue",
                    "WARNING": "yellow",
                    "ERROR": "red",
                    "CRITICAL": "red,bg_white",
                },
            )
        )
    return console


def config(verbosity=0, logfile=None):
    """
    Configure the output of the predict_refine logger.

    :param verbosity: 0 or 1 for info messages, 2 or more to add debug messages
                      (step tables and pairing statistics). From 1 the log
                      file lines carry the elapsed time.
    :type verbosity: int
    :param logfile: Filename for log output. If None, no log file is written.
    :type logfile: str
    """

    package_logger = logging.getLogger("predict_refine")
    warning_logger = logging.getLogger("py.warnings")
    while _installed_handlers:
        handler = _installed_handlers.pop()
        package_logger.removeHandler(handler)
        warning_logger.removeHandler(handler)
        handler.close()

    loglevel = logging.DEBUG if verbosity > 1 else logging.INFO

    handlers = [_console_handler()]
    if logfile:
        fh = logging.FileHandler(filename=logfile, mode="w", encoding="utf-8")
        fh.setFormatter(LogfileFormatter(timed=verbosity > 0))
        handlers.append(fh)

    logging.captureWarnings(True)
    for handler in handlers:
        handler.setLevel(loglevel)
        package_logger.addHandler(handler)
        warning_logger.addHandler(handler)
        _installed_handlers.append(handler)
    package_logger.setLevel(loglevel)


class LoggingContext:
    """Temporarily set the level of a logger, given by name or object. A level
    of None leaves the logger alone."""

    # https://docs.python.org/3/howto/logging-cookbook.html#using-a-context-manager-for-selective-logging
    def __init__(self, logger, level=None):
        self.logger = logging.getLogger(logger) if isinstance(logger, str) else logger
        self.level = level

    def __enter__(self):
        if self.level is not None:
            self.old_level = self.logger.level
            self.logger.setLevel(self.level)

    def __exit__(self, et, ev, tb):
        if self.level is not None:
            self.logger.setLevel(self.old_level)
