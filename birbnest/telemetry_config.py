"""Telemetry configuration read from environment variables."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})
_INT_RE = re.compile(r"[+-]?[0-9]+")
_FLOAT_RE = re.compile(
    r"[+-]?(?:(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?|inf|infinity|nan)",
    re.IGNORECASE,
)
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def _get_str(environ: Mapping[str, str], key: str, default: str) -> str:
    return environ.get(key) or default


def _get_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    value = environ.get(key, "")
    if value in _TRUE_WORDS:
        return True
    if value in _FALSE_WORDS:
        return False
    return default


def _get_float(environ: Mapping[str, str], key: str, default: float) -> float:
    value = environ.get(key, "")
    if value and _FLOAT_RE.fullmatch(value):
        return float(value)
    return default


def _get_int(environ: Mapping[str, str], key: str, default: int) -> int:
    value = environ.get(key, "")
    if value and _INT_RE.fullmatch(value):
        number = int(value)
        if _INT64_MIN <= number <= _INT64_MAX:
            return number
    return default


@dataclass
class TelemetryConfig:
    """Settings for logging, metrics and tracing."""

    otlp_endpoint: str = ""
    service_name: str = ""
    environment: str = ""
    service_version: str = ""

    export_to_file: bool = False
    metrics_file_path: str = ""
    traces_file_path: str = ""
    logs_file_path: str = ""

    sampling_rate: float = 0.0
    log_level: str = ""
    metrics_interval: int = 0

    enable_tracing: bool = False
    enable_metrics: bool = False
    enable_logging: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> TelemetryConfig:
        """Build a config from ``environ`` (the process environment by default).

        Unset, empty or unparsable values fall back to the defaults.
        """
        env = os.environ if environ is None else environ
        cfg = cls(
            service_name=_get_str(env, "OTEL_SERVICE_NAME", "birb-nest"),
            environment=_get_str(env, "ENVIRONMENT", "development"),
            service_version=_get_str(env, "SERVICE_VERSION", "unknown"),
            log_level=_get_str(env, "LOG_LEVEL", "info"),
            sampling_rate=_get_float(env, "OTEL_SAMPLING_RATE", 1.0),
            metrics_interval=_get_int(env, "METRICS_INTERVAL", 10),
            enable_tracing=_get_bool(env, "ENABLE_TRACING", True),
            enable_metrics=_get_bool(env, "ENABLE_METRICS", True),
            enable_logging=_get_bool(env, "ENABLE_LOGGING", True),
        )
        if _get_bool(env, "OTEL_EXPORT_TO_FILE", False):
            cfg.export_to_file = True
            cfg.metrics_file_path = _get_str(env, "OTEL_METRICS_FILE_PATH", "/tmp/otel/metrics.json")
            cfg.traces_file_path = _get_str(env, "OTEL_TRACES_FILE_PATH", "/tmp/otel/traces.json")
            cfg.logs_file_path = _get_str(env, "OTEL_LOGS_FILE_PATH", "/tmp/otel/logs.json")
        else:
            cfg.otlp_endpoint = _get_str(env, "OTEL_EXPORTER_OTLP_ENDPOINT", "localhost:4317")
        return cfg