# Copyright (c) Syntropy Systems
"""Error taxonomy, message collection, and status reporting for study builds."""
from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Protocol

logger = logging.getLogger(__name__)


class IxCheckError(Exception):
    """Base class for all study build and run errors."""


class ConfigurationError(IxCheckError):
    """Invalid template, station data, output format, or option selection."""


class CombinatorialExplosionError(ConfigurationError):
    """Too many MX records to enumerate scenario combinations."""


class SearchError(IxCheckError):
    """The station data query layer failed."""


class LockConflictError(IxCheckError):
    """A study lock did not match the caller's held state and generation."""


class EngineProcessError(IxCheckError):
    """The engine could not be started, failed, or produced unexpected output."""


class BuildAbortedError(IxCheckError):
    """The build or run was cancelled."""


class CacheInconsistencyError(IxCheckError):
    """Index and output directories disagree. Repaired by maintenance, never raised."""


class OperationResult(str, Enum):
    """Outcome of an externally visible operation."""

    SUCCESS = "success"
    CALLER_ERROR = "caller_error"
    INTERNAL_FAILURE = "internal_failure"

    @classmethod
    def for_error(cls, error: BaseException) -> OperationResult:
        if isinstance(error, (ConfigurationError, LockConflictError)):
            return cls.CALLER_ERROR
        return cls.INTERNAL_FAILURE


class ErrorCollector:
    """Accumulates error and informational messages across build phases.

    Only the first error is kept as the "error" message, later errors and all
    other messages are kept in order so they can be written to a log.
    """

    def __init__(self) -> None:
        self._errors: list[str] = []
        self._messages: list[str] = []

    def report_error(self, message: str) -> None:
        logger.debug("error reported: %s", message)
        self._errors.append(message)
        self._messages.append(message)

    def report_warning(self, message: str) -> None:
        self._messages.append(message)

    def report_message(self, message: str) -> None:
        self._messages.append(message)

    def has_errors(self) -> bool:
        return len(self._errors) > 0

    def has_messages(self) -> bool:
        return len(self._messages) > 0

    @property
    def errors(self) -> list[str]:
        return list(self._errors)

    def messages(self) -> str:
        return "\n".join(self._messages)

    def clear_messages(self) -> None:
        self._messages.clear()

    def __str__(self) -> str:
        if self._errors:
            return self._errors[0]
        return ""


class StatusReporter(Protocol):
    """Receives progress strings and log lines from a build or run."""

    def report_status(self, message: str) -> None: ...

    def log_message(self, message: str) -> None: ...

    def show_message(self, message: str) -> None: ...


class LoggingStatus:
    """Status reporter that sends everything to the module logger."""

    def report_status(self, message: str) -> None:
        logger.info(message)

    def log_message(self, message: str) -> None:
        logger.info(message)

    def show_message(self, message: str) -> None:
        logger.debug(message)


class ThrottledStatus:
    """Wraps a reporter so status updates go out at most once per interval.

    Log and transient messages pass straight through.
    """

    def __init__(self, target: StatusReporter | None, interval: float) -> None:
        self.target = target
        self.interval = interval
        self._last_update: float | None = None

    def report_status(self, message: str) -> None:
        if self.target is None:
            return
        now = time.monotonic()
        if self._last_update is None or now - self._last_update > self.interval:
            self.target.report_status(message)
            self._last_update = now

    def log_message(self, message: str) -> None:
        if self.target is not None:
            self.target.log_message(message)

    def show_message(self, message: str) -> None:
        if self.target is not None:
            self.target.show_message(message)
