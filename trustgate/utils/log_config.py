"""
Logging setup for TRUSTGATE.

Every record carries the ID of the HTTP request that produced it
(``%(request_id)s``), taken from a context variable the API middleware sets.
Records logged outside a request get ``-``.
"""
import os
import logging
from contextvars import ContextVar
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    """Stamp the current request ID onto log records."""

    def filter(self, record):
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get()
        return True


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """
    Configure root logging from LOG_LEVEL / LOG_FORMAT.

    Safe to call more than once; the filter is attached to each root handler
    only once.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=fmt or os.getenv("LOG_FORMAT", DEFAULT_FORMAT),
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIdFilter) for f in handler.filters):
            handler.addFilter(RequestIdFilter())
