"""
Logging setup for the RepoRadar API.

Production writes one JSON document per line for the log collector; every
other environment gets plain text. Both carry the context fields callers pass
with `extra=`:

    logger.info("Batch job finished", extra={"job_id": job.id})
"""

import json
import logging
import sys
from datetime import datetime, timezone

import config

CONTEXT_FIELDS = ("user_id", "job_id", "repository", "path")

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "stripe", "google_genai")


def record_context(record: logging.LogRecord) -> dict:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            **record_context(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ContextFormatter(logging.Formatter):
    """Plain text with the context fields appended as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        if context:
            line += " " + " ".join(f"{key}={value}" for key, value in context.items())
        return line


def build_formatter(json_output: bool) -> logging.Formatter:
    if json_output:
        return JSONFormatter()
    return ContextFormatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")


def setup_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Install a single stdout handler on the root logger. Safe to call on every reload."""
    level = (level or config.LOG_LEVEL).upper()
    if json_output is None:
        json_output = config.ENVIRONMENT == "production"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter(json_output))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
