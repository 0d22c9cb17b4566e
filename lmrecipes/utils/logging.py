"""
Logging for the lmrecipes package.

Library functions that process batches (ingestion, tool loops, graph
extraction) take a `logger: LoggerBase` argument and report problems
there, so that callers decide whether problems are printed, written to
a file, collected for inspection, or turned into exceptions.

Usage:
    ```python
    from lmrecipes.utils.logging import (
        get_logger,
        LoglistLogger,
        ExceptionConsoleLogger,
    )

    logger = get_logger(__name__)       # prints to console
    collector = LoglistLogger()         # keeps messages in a list
    strict = ExceptionConsoleLogger()   # raises on errors

    pipeline.ingest(texts, logger=collector)
    if collector.count_logs(level=1):
        collector.print_logs()
    ```
"""

import logging
import sys
from pathlib import Path
from abc import ABC, abstractmethod

LOG_FORMAT = '%(levelname)s - %(message)s'
FILE_LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


class LoggerBase(ABC):
    """
    Abstract interface for logging functionality.
    """

    @abstractmethod
    def set_level(self, level: int) -> None:
        """Set the logging level for the logger."""
        pass

    @abstractmethod
    def get_level(self) -> int:
        """Get the current logging level"""
        pass

    @abstractmethod
    def info(self, msg: str) -> None:
        pass

    @abstractmethod
    def warning(self, msg: str) -> None:
        pass

    @abstractmethod
    def error(self, msg: str) -> None:
        pass

    @abstractmethod
    def critical(self, msg: str) -> None:
        pass


class _DelegateLogger(LoggerBase):
    """Forwards to a logging.Logger held in self.logger"""

    logger: logging.Logger

    def set_level(self, level: int) -> None:
        self.logger.setLevel(level)

    def get_level(self) -> int:
        return self.logger.level

    def info(self, msg: str) -> None:
        self.logger.info(msg)

    def warning(self, msg: str) -> None:
        self.logger.warning(msg)

    def error(self, msg: str) -> None:
        self.logger.error(msg)

    def critical(self, msg: str) -> None:
        self.logger.critical(msg, stack_info=True)


class ConsoleLogger(_DelegateLogger):
    """
    Logs messages to stdout using Python's logging module.
    """

    def __init__(self, name: str | None = None) -> None:
        """
        Args:
            name: typically __name__. If None, the root logger is
                used.
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        if not self.logger.hasHandlers():
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self.logger.addHandler(handler)


class FileLogger(_DelegateLogger):
    """
    Logs messages to a file. Messages are not propagated to the
    console.
    """

    def __init__(
        self, name: str = "", log_file: str | Path = "lmrecipes.log"
    ) -> None:
        """
        Args:
            name: The name of the logger, typically __name__
            log_file: Path to the log file
        """
        self.logger = logging.getLogger(f"{name}_file")
        self.logger.setLevel(logging.INFO)

        # avoid duplicate handlers when re-created with the same name
        self.logger.handlers.clear()

        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
        self.logger.addHandler(handler)
        self.logger.propagate = False


class LoglistLogger(LoggerBase):
    """
    Maintains a list of logged messages that can be inspected by the
    object creator.
    """

    def __init__(self) -> None:
        self.logs: list[dict[str, str]] = []

    def set_level(self, level: int) -> None:
        pass

    def get_level(self) -> int:
        return 0

    def info(self, msg: str) -> None:
        self.logs.append({'info': msg})

    def warning(self, msg: str) -> None:
        self.logs.append({'warning': msg})

    def error(self, msg: str) -> None:
        self.logs.append({'error': msg})

    def critical(self, msg: str) -> None:
        self.logs.append({'critical': msg})

    def get_logs(self, level: int = 0) -> list[str]:
        """
        Returns a list of strings with the log messages.

        Args:
           level: a filter on the logs. Possible values:
                0 or less: returns all messages
                1: omit info
                2 or more: only errors and critical
        """
        logs: list[str] = []
        for entry in self.logs:
            match entry:
                case {'info': msg}:
                    if level < 1:
                        logs.append("INFO - " + msg)
                case {'warning': msg}:
                    if level < 2:
                        logs.append("WARNING - " + msg)
                case {'error': msg}:
                    logs.append("ERROR - " + msg)
                case {'critical': msg}:
                    logs.append("CRITICAL - " + msg)
                case _:
                    logs.append(str(entry))
        return logs

    def count_logs(self, level: int = 0) -> int:
        """The number of recorded logs at or above level."""
        return len(self.get_logs(level))

    def clear_logs(self) -> None:
        self.logs.clear()

    def print_logs(self, level: int = 0) -> None:
        for log in self.get_logs(level):
            print(log)


class ExceptionConsoleLogger(ConsoleLogger):
    """
    A console logger that raises RuntimeError on error and critical
    calls, after logging the message. Useful in scripts and tests
    where recoverable problems should stop execution.
    """

    def __init__(self, name: str = "") -> None:
        super().__init__(f"{name}_exception")

    def error(self, msg: str) -> None:
        self.logger.error(msg)
        raise RuntimeError(f"Error: {msg}")

    def critical(self, msg: str) -> None:
        self.logger.critical(msg)
        raise RuntimeError(f"Critical error: {msg}")


def get_logger(name: str) -> LoggerBase:
    """
    Get a console logger with the specified name.

    Args:
        name: typically __name__ to use the module name
    """
    return ConsoleLogger(name)


def set_log_level(level: int) -> None:
    """Set the log level of the root logger."""
    logging.getLogger().setLevel(level)
