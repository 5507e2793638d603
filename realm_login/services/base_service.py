"""
Base Service Class.

Standardizes how services receive their logger and how they emit
audit-style events, so every event carries an ``event`` key in the
structured ``extra`` payload.
"""

from __future__ import annotations

import logging

from realm_login.logger import StructuredLogger


class BaseService:
    """Base class for all service classes. Provides a logger."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger

    def _audit(
        self,
        event: str,
        message: str,
        *args: object,
        level: int = logging.INFO,
        **fields: object,
    ) -> None:
        """Log *message* with ``event`` and *fields* attached as structured extra.

        Never pass secrets (passwords, codes, tokens) as fields.
        """
        extra: dict[str, object] = {"event": event}
        extra.update({k: v for k, v in fields.items() if v is not None})
        self._logger.logger.log(level, message, *args, extra=extra)
