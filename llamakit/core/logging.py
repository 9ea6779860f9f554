"""
llamakit :: Structured Logging

Records carry the session id and a dict of structured fields. Two renderings:

  JSON (one object per line):
    {"ts": ..., "level": "INFO", "logger": ..., "session": "3fa2", "msg": "...",
     "fields": {"n_ctx": 64}, "error": {"code": ..., "phase": ..., "recoverable": ...}}

  Human:
    12:00:01 INFO    3fa2 tools | calling tool 'sum' | call_id=1

Every session gets its own SessionLogger; bind() derives a child that adds
fixed fields (the component, a turn number) to every record it emits.
Nothing session-specific lives in a process-wide singleton.

INL - 2025
"""

import logging
import json
import time
import sys
from typing import Any, Dict, Optional

from llamakit.errors import LlamaKitError


def _error_fields(err: BaseException) -> Dict[str, Any]:
    if isinstance(err, LlamaKitError):
        return {"type": type(err).__name__, "code": err.code, "phase": err.phase, "recoverable": err.recoverable}
    return {"type": type(err).__name__}


class JSONFormatter(logging.Formatter):
    """One JSON object per record; structured fields stay nested under "fields"."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": round(record.created, 3),
            "level": record.levelname,
            "logger": record.name,
            "session": getattr(record, "session_id", None),
            "msg": record.getMessage(),
        }
        fields = getattr(record, "extra_data", None)
        if fields:
            entry["fields"] = fields
        err = getattr(record, "error", None)
        if err is not None:
            entry["error"] = _error_fields(err)
        if record.exc_info and record.exc_info[1]:
            entry["traceback"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """Single-line rendering for terminals."""

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
        level = f"{record.levelname:<7}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"
        parts = [f"{self.formatTime(record, '%H:%M:%S')} {level}"]

        fields = dict(getattr(record, "extra_data", None) or {})
        tag = " ".join(str(t) for t in (getattr(record, "session_id", None), fields.pop("component", None)) if t)
        if tag:
            parts[0] += f" {tag}"
        parts.append(record.getMessage())

        err = getattr(record, "error", None)
        if err is not None:
            fields["code"] = err.code if isinstance(err, LlamaKitError) else type(err).__name__
        if fields:
            parts.append(" ".join(f"{k}={v!r}" if isinstance(v, str) and " " in v else f"{k}={v}"
                                  for k, v in fields.items()))

        line = " | ".join(parts)
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the "llamakit" logger tree.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: JSON lines on stderr instead of the human format
        log_file: also append JSON lines to this file
    """
    logger = logging.getLogger("llamakit")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(JSONFormatter() if json_output else HumanFormatter(color=sys.stderr.isatty()))
    logger.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(JSONFormatter())
        logger.addHandler(fh)

    return logger


def get_logger(name: str = "llamakit") -> logging.Logger:
    return logging.getLogger(name)


class SessionLogger:
    """
    Session-scoped logger. Keyword arguments become structured fields;
    error= attaches an exception's code / phase to the record.
    """

    def __init__(
        self,
        session_id: str,
        logger: Optional[logging.Logger] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.session_id = session_id
        self.logger = logger or get_logger("llamakit.session")
        self.context = dict(context or {})
        self.start_time = time.perf_counter()

    def bind(self, **fields) -> "SessionLogger":
        """Child logger adding fields to every record; shares the session clock."""
        child = SessionLogger(self.session_id, self.logger, {**self.context, **fields})
        child.start_time = self.start_time
        return child

    def _log(self, level: int, msg: str, fields: Dict[str, Any],
             error: Optional[BaseException] = None, exc_info: bool = False):
        if not self.logger.isEnabledFor(level):
            return
        extra = {"session_id": self.session_id, "extra_data": {**self.context, **fields}}
        if error is not None:
            extra["error"] = error
        self.logger.log(level, msg, extra=extra, exc_info=exc_info)

    def debug(self, msg: str, **kwargs):
        self._log(logging.DEBUG, msg, kwargs)

    def info(self, msg: str, **kwargs):
        self._log(logging.INFO, msg, kwargs)

    def warning(self, msg: str, error: Optional[BaseException] = None, **kwargs):
        self._log(logging.WARNING, msg, kwargs, error)

    def error(self, msg: str, error: Optional[BaseException] = None, **kwargs):
        self._log(logging.ERROR, msg, kwargs, error)

    def exception(self, msg: str, **kwargs):
        """Error record with the active traceback; call from an except block."""
        self._log(logging.ERROR, msg, kwargs, sys.exc_info()[1], exc_info=True)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000
