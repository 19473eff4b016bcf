"""Structured JSON logging with optional export to a JSON-lines file."""

from __future__ import annotations

import json
import logging
import sys
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Optional

from birbnest.telemetry_config import TelemetryConfig

LOGGER_NAME = "birbnest"
TRACE = 5

logging.addLevelName(TRACE, "TRACE")

_LEVELS = {
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE,
}

_lock = threading.Lock()
_logger: Optional[logging.Logger] = None
_installed: list[logging.Handler] = []
_file_handler: Optional[JsonLineFileHandler] = None


def _parse_level(name: str) -> int:
    return _LEVELS.get(name.strip().lower(), logging.INFO)


def _level_name(levelno: int) -> str:
    if levelno >= logging.CRITICAL:
        return "fatal"
    if levelno >= logging.ERROR:
        return "error"
    if levelno >= logging.WARNING:
        return "warning"
    if levelno >= logging.INFO:
        return "info"
    if levelno >= logging.DEBUG:
        return "debug"
    return "trace"


def _format_timestamp(created: float) -> str:
    """Millisecond precision, local time, Z for UTC otherwise ±HH:MM."""
    moment = datetime.fromtimestamp(created).astimezone()
    text = moment.strftime("%Y-%m-%dT%H:%M:%S") + f".{moment.microsecond // 1000:03d}"
    offset = moment.utcoffset() or timedelta(0)
    if not offset:
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _entry(record: logging.LogRecord, static_fields: Mapping[str, Any]) -> dict[str, Any]:
    fields = dict(getattr(record, "fields", None) or {})
    if record.exc_info and record.exc_info[1] is not None:
        fields["error"] = str(record.exc_info[1])
    return {
        **static_fields,
        **fields,
        "@timestamp": _format_timestamp(record.created),
        "level": _level_name(record.levelno),
        "message": record.getMessage(),
    }


class JsonFormatter(logging.Formatter):
    """Formats a record as one JSON object with ``@timestamp``, ``level`` and ``message``.

    Fields passed through ``with_fields`` (the record's ``fields`` attribute) and
    an attached exception (as ``error``) are added alongside.
    """

    def __init__(self, static_fields: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__()
        self._static_fields = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(_entry(record, self._static_fields), sort_keys=True, default=str)


class JsonLineFileHandler(logging.Handler):
    """Appends each record as a JSON line to a file, creating its directory."""

    def __init__(self, file_path: str | Path) -> None:
        super().__init__()
        self.file_path = Path(file_path)
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.file_path, "a", encoding="utf-8")

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = json.dumps(_entry(record, {}), sort_keys=True, default=str)
            self._file.write(line + "\n")
            self._file.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            if not self._file.closed:
                self._file.close()
        finally:
            self.release()
        super().close()


class _FieldsAdapter(logging.LoggerAdapter):
    """Logger adapter that attaches a dictionary of fields to every record."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra["fields"] = {**self.extra, **(extra.get("fields") or {})}
        kwargs["extra"] = extra
        return msg, kwargs

    def with_fields(self, fields: Mapping[str, Any]) -> _FieldsAdapter:
        return _FieldsAdapter(self.logger, {**self.extra, **fields})


def init_logger(config: TelemetryConfig) -> logging.Logger:
    """Configure the package logger once; later calls return it unchanged.

    Raises OSError if file export is requested and the log file cannot be
    opened; the logger stays configured for stderr output.
    """
    global _logger, _file_handler
    with _lock:
        if _logger is not None:
            return _logger
        logger = logging.getLogger(LOGGER_NAME)
        logger.setLevel(_parse_level(config.log_level))
        logger.propagate = False

        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(
            JsonFormatter(
                {
                    "service.name": config.service_name,
                    "service.version": config.service_version,
                    "environment": config.environment,
                }
            )
        )
        logger.addHandler(stream)
        _installed.append(stream)
        _logger = logger

        if config.export_to_file and config.logs_file_path:
            try:
                handler = JsonLineFileHandler(config.logs_file_path)
            except OSError as exc:
                logger.error("Failed to create file logger", exc_info=exc)
                raise
            logger.addHandler(handler)
            _installed.append(handler)
            _file_handler = handler
        return logger


def get_logger() -> logging.Logger:
    """Return the package logger."""
    return logging.getLogger(LOGGER_NAME)


def with_fields(fields: Mapping[str, Any]) -> _FieldsAdapter:
    """Return a logger that adds ``fields`` to each record it emits."""
    return _FieldsAdapter(get_logger(), dict(fields))


def close_logger() -> None:
    """Close the log file and detach everything ``init_logger`` installed."""
    global _logger, _file_handler
    with _lock:
        logger = _logger
        handlers = list(_installed)
        _installed.clear()
        _logger = None
        _file_handler = None
    if logger is None:
        return
    for handler in handlers:
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)