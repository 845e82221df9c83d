"""Logging setup for the crawler worker.

Job-scoped log lines carry their context as ``ctx_*`` record attributes,
added by ``JobLogger``. Both formatters render that context: the console
formatter as trailing ``key=value`` pairs, the JSON formatter as a nested
``context`` object.
"""

from __future__ import annotations
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, MutableMapping, Optional, Tuple

SERVICE_NAME = "doccrawl"
CONTEXT_PREFIX = "ctx_"

NOISY_LOGGERS = ("aiohttp", "apscheduler", "urllib3")


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Job context attached to a record, without the attribute prefix."""
    return {
        key[len(CONTEXT_PREFIX):]: value
        for key, value in record.__dict__.items()
        if key.startswith(CONTEXT_PREFIX)
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, service_name: str = SERVICE_NAME):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        context = record_context(record)
        if context:
            entry["context"] = context

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter with level colours."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        line = f"{timestamp} | {record.levelname:8} | {record.name} | {record.getMessage()}"

        context = record_context(record)
        if context:
            line += " | " + " ".join(f"{k}={v}" for k, v in context.items())

        if self.use_colors and record.levelname in self.COLORS:
            line = f"{self.COLORS[record.levelname]}{line}{self.RESET}"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)

        return line


def setup_logging(
    level: str = "INFO",
    service_name: str = SERVICE_NAME,
    log_file: Optional[str] = None,
    use_json: bool = False,
    use_colors: bool = True
) -> None:
    """Configure the root logger for the worker process.

    Args:
        level: Log level name
        service_name: Service name written into JSON entries
        log_file: Optional path for an additional JSON log file
        use_json: JSON on the console instead of the coloured format
        use_colors: Colour console lines (ignored with ``use_json``)
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter(service_name) if use_json else ColoredFormatter(use_colors))
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter(service_name))
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class JobLogger(logging.LoggerAdapter):
    """Adapter that stamps every record with the job it belongs to.

    Keyword arguments other than the standard logging ones are added to the
    record's context for that call only::

        job_logger.info("Scraped page", url=url, depth=2)
    """

    _LOGGING_KWARGS = ("exc_info", "stack_info", "stacklevel", "extra")

    def log(self, level, msg, *args, **kwargs):
        context = {k: kwargs.pop(k) for k in list(kwargs) if k not in self._LOGGING_KWARGS}
        if context:
            kwargs["extra"] = {**kwargs.get("extra", {}), **self._prefixed(context)}
        super().log(level, msg, *args, **kwargs)

    def debug(self, msg, *args, **kwargs):
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg, *args, **kwargs):
        self.log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg, *args, **kwargs):
        self.log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg, *args, **kwargs):
        self.log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg, *args, exc_info=True, **kwargs):
        self.log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    @staticmethod
    def _prefixed(context: Dict[str, Any]) -> Dict[str, Any]:
        return {f"{CONTEXT_PREFIX}{k}": v for k, v in context.items()}

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self._prefixed(self.extra), **kwargs.get("extra", {})}
        return msg, kwargs


def get_job_logger(name: str, job_id: str, crawl_type: str, **context) -> JobLogger:
    """Logger bound to one queued job."""
    return JobLogger(logging.getLogger(name), {"job_id": job_id, "crawl_type": crawl_type, **context})
