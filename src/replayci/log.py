# log.py
"""Logging setup with secret redaction."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from .store import SecretStore

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_TRACEBACKS = logging.Formatter()


class SecretRedactingFilter(logging.Filter):
    """
    Masks secret values in a record's message, traceback and stack text.

    The traceback is rendered here and stored on `exc_text` so that handlers
    never format the raw exception themselves.
    """

    def __init__(self, secrets: SecretStore):
        super().__init__()
        self.secrets = secrets

    def filter(self, record: logging.LogRecord) -> bool:
        if not len(self.secrets):
            return True

        message = record.getMessage()
        redacted = self.secrets.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None

        if record.exc_info:
            if not record.exc_text:
                record.exc_text = _TRACEBACKS.formatException(record.exc_info)
            record.exc_info = None
        if record.exc_text:
            record.exc_text = self.secrets.redact(record.exc_text)
        if record.stack_info:
            record.stack_info = self.secrets.redact(record.stack_info)
        return True


def configure_logging(level: str = "WARNING", secrets: Optional[SecretStore] = None) -> logging.Logger:
    """
    Configure the `replayci` logger hierarchy.

    Args:
        level: Log level name
        secrets: If given, every record passing through the handler is redacted

    Returns:
        The package root logger
    """
    root = logging.getLogger("replayci")
    root.setLevel(level)

    for handler in list(root.handlers):
        if getattr(handler, "_replayci", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._replayci = True  # type: ignore[attr-defined]
    if secrets is not None:
        handler.addFilter(SecretRedactingFilter(secrets))
    root.addHandler(handler)
    root.propagate = False
    return root
