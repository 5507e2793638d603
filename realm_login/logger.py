"""
Login Audit Logging.

One JSON object per line, so login-flow events (``LOGIN``,
``MFA_VERIFIED``, ``LOGOUT`` and friends) can be filtered by their
``event`` field instead of grepping message text.

Structured fields travel in the ``extra`` kwarg.  Fields named after a
credential (``password``, ``code``, ``token`` and the like) are masked
before the line is written.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, TextIO, Union

_REDACTED: str = "***"
_SECRET_FIELDS: frozenset[str] = frozenset({
    "password", "code", "otp", "token", "access_token", "refresh_token", "secret",
})

JSONScalar = Union[str, int, float, bool, None]


class JSONFormatter(logging.Formatter):
    """Renders a record as ``{timestamp, level, logger_name, message, extra?, exception?}``.

    ``extra`` values keep their JSON type when they are scalars; enum
    members are written as their value and anything else as ``str()``.
    """

    _STANDARD_ATTRS: frozenset[str] = frozenset(
        logging.LogRecord(
            name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
        ).__dict__.keys()
    ) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
            "message": record.getMessage(),
        }

        extra_fields: dict[str, JSONScalar] = {
            key: self._field_value(key, value)
            for key, value in record.__dict__.items()
            if key not in self._STANDARD_ATTRS
        }
        if extra_fields:
            entry["extra"] = extra_fields

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, ensure_ascii=False)

    @staticmethod
    def _field_value(key: str, value: object) -> JSONScalar:
        if key.lower() in _SECRET_FIELDS:
            return _REDACTED
        if isinstance(value, Enum):
            value = value.value
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        return str(value)


class StructuredLogger:
    """Named JSON logger handed to every service through its constructor.

    Writes to *stream* (stdout by default) and, unless disabled, to a
    size-rotated file.  ``log_file=None`` takes ``LOG_FILE`` from the
    configuration; ``log_file=""`` keeps output on the stream only, which
    is what the test suite and the console's stderr logger use.

    Usage::

        log = StructuredLogger(name="login_flow", log_file="")
        log.info("Credentials accepted", extra={"event": "LOGIN", "realm": "acme"})

    A logger name is configured once; building a second
    ``StructuredLogger`` with the same name reuses the first one's
    handlers.
    """

    def __init__(
        self,
        name: str = "realm_login",
        level: int = logging.INFO,
        stream: Union[TextIO, None] = None,
        log_file: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
    ) -> None:
        # Imported here so importing this module never loads settings.
        from realm_login.config import get_config
        _cfg = get_config()

        self._logger: logging.Logger = logging.getLogger(name)
        self._logger.setLevel(level)

        if self._logger.handlers:
            return

        formatter = JSONFormatter()
        stream_handler = logging.StreamHandler(stream or sys.stdout)
        stream_handler.setLevel(level)
        stream_handler.setFormatter(formatter)
        self._logger.addHandler(stream_handler)

        resolved_log_file: str = _cfg.LOG_FILE if log_file is None else log_file
        if not resolved_log_file:
            return
        try:
            log_path = Path(resolved_log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                filename=str(log_path),
                maxBytes=max_bytes if max_bytes is not None else _cfg.LOG_MAX_BYTES,
                backupCount=backup_count if backup_count is not None else _cfg.LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        except OSError as exc:
            self._logger.warning(
                "Could not open log file '%s': %s. Logging to the stream only.",
                resolved_log_file,
                exc,
            )
            return
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        self._logger.addHandler(file_handler)

    @property
    def logger(self) -> logging.Logger:
        """The wrapped ``logging.Logger``, for ``log(level, ...)`` calls."""
        return self._logger

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.error(msg, *args, **kwargs)

    def exception(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.exception(msg, *args, **kwargs)


def get_logger(name: str = "realm_login") -> StructuredLogger:
    """``StructuredLogger`` for *name* with configured defaults."""
    return StructuredLogger(name=name)
