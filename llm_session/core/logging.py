"""
llm-session :: Structured Logging

Log lines carry the session scope they were emitted under:

    request_id   one per generate/embed call
    operation    "generate", "embed", "load", ...
    backend      runtime name ("reference", "llama.cpp", "fallback")
    state        session lifecycle state at the time of the line

JSON output puts them in top-level keys; the console formatter folds them
into one tag, e.g. "[req=3 generate@reference GENERATING]".

INL - 2025
"""

import logging
import json
import time
import sys
from typing import Any, Dict, Optional

SCOPE_FIELDS = ("request_id", "operation", "backend", "state")


def scope_of(record: logging.LogRecord) -> Dict[str, Any]:
    """Scope fields present on a record, in SCOPE_FIELDS order."""
    return {
        name: getattr(record, name)
        for name in SCOPE_FIELDS
        if getattr(record, name, None) is not None
    }


def scope_tag(scope: Dict[str, Any]) -> str:
    """Compact console form of a scope dict; empty string when there is none."""
    parts = []
    if "request_id" in scope:
        parts.append(f"req={scope['request_id']}")
    op, backend = scope.get("operation"), scope.get("backend")
    if op and backend:
        parts.append(f"{op}@{backend}")
    elif op or backend:
        parts.append(op or backend)
    if "state" in scope:
        parts.append(str(scope["state"]))
    return f"[{' '.join(parts)}]" if parts else ""


class JSONFormatter(logging.Formatter):
    """One JSON object per line: scope fields, then call-specific data."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(scope_of(record))
        data = getattr(record, "extra_data", None)
        if data:
            # Call data never overwrites the envelope
            entry.update({k: v for k, v in data.items() if k not in entry})
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """Colored console lines for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[41m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record, "%H:%M:%S")
        level = f"[{record.levelname:>7}]"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        line = f"{ts} {level}"
        tag = scope_tag(scope_of(record))
        if tag:
            line += f" {tag}"
        line += f" {record.getMessage()}"

        data = getattr(record, "extra_data", None)
        if data:
            line += " " + " ".join(f"{k}={v}" for k, v in data.items())
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the "llm_session" logger tree.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: JSON lines on stderr instead of colored text
        log_file: Optional file path; always written as JSON lines
    """
    logger = logging.getLogger("llm_session")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(JSONFormatter() if json_output else HumanFormatter(color=sys.stderr.isatty()))
    logger.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(JSONFormatter())
        logger.addHandler(fh)

    return logger


def get_logger(name: str = "llm_session") -> logging.Logger:
    return logging.getLogger(name)


class RequestLogger:
    """
    Logger bound to one generate/embed call.

    Every line carries the request id plus the operation and backend it
    belongs to. finish() closes the request with its wall time attached.
    """

    def __init__(
        self,
        request_id: int,
        logger: Optional[logging.Logger] = None,
        operation: Optional[str] = None,
        backend: Optional[str] = None,
    ):
        self.request_id = request_id
        self.logger = logger or get_logger()
        self.operation = operation
        self.backend = backend
        self.start_time = time.perf_counter()

    def _log(self, level: int, msg: str, data: Dict[str, Any], exc_info: bool = False):
        extra = {
            "request_id": self.request_id,
            "operation": self.operation,
            "backend": self.backend,
            "extra_data": data,
        }
        self.logger.log(level, msg, exc_info=exc_info, extra=extra)

    def debug(self, msg: str, **kwargs):
        self._log(logging.DEBUG, msg, kwargs)

    def info(self, msg: str, **kwargs):
        self._log(logging.INFO, msg, kwargs)

    def warning(self, msg: str, **kwargs):
        self._log(logging.WARNING, msg, kwargs)

    def error(self, msg: str, exc_info: bool = False, **kwargs):
        self._log(logging.ERROR, msg, kwargs, exc_info)

    def finish(self, msg: str, level: int = logging.INFO, **kwargs):
        """Final line of the request, with elapsed_ms appended."""
        kwargs["elapsed_ms"] = round(self.elapsed_ms(), 1)
        self._log(level, msg, kwargs)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000
