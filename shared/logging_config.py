"""JSON logging for the flow engine.

Every record carries the correlation id of the run that emitted it. A flow
run binds its execution id for the duration of the run; node tasks started
inside the run inherit it through the context.
"""

import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional, TextIO
from pythonjsonlogger import jsonlogger

LOG_FORMAT = '%(asctime)s %(name)s %(levelname)s %(correlation_id)s %(message)s'

correlation_id_var: ContextVar[str] = ContextVar('correlation_id', default='')


class CorrelationIdFilter(logging.Filter):

    def filter(self, record):
        record.correlation_id = correlation_id_var.get('')
        return True


def build_json_handler(stream: Optional[TextIO] = None) -> logging.Handler:
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(jsonlogger.JsonFormatter(
        LOG_FORMAT,
        rename_fields={
            'asctime': 'timestamp',
            'name': 'logger',
            'levelname': 'level',
        },
    ))
    handler.addFilter(CorrelationIdFilter())
    return handler


def setup_logging(service_name: str, level: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
    """Replaces the root handlers with one JSON handler; level defaults to $LOG_LEVEL or INFO"""
    root = logging.getLogger()
    root.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    root.handlers = [build_json_handler(stream)]
    logging.info("Logging configured", extra={"service": service_name})


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Binds `correlation_id` until the block exits, then restores the previous one"""
    token = correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_var.reset(token)


def get_correlation_id() -> str:
    return correlation_id_var.get('')
