"""
Structured JSON Logging with Correlation ID
JSON formatter for stdlib logging plus the shared structlog configuration
"""

import logging
import sys

import structlog
from asgi_correlation_id.context import correlation_id
from pythonjsonlogger import jsonlogger

SERVICE_NAME = 'lead-discovery'


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter with automatic correlation ID injection.

    Adds correlation_id, service and environment to every stdlib log record.
    The correlation ID is read from async context (set by CorrelationIdMiddleware).
    """

    def __init__(self, *args, environment: str = 'development', **kwargs):
        super().__init__(*args, **kwargs)
        self.environment = environment

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record['correlation_id'] = correlation_id.get() or 'none'
        log_record['service'] = SERVICE_NAME
        log_record['environment'] = self.environment


def add_correlation_id(logger, method_name, event_dict):
    """structlog processor mirroring CorrelationJsonFormatter's correlation_id field."""
    event_dict.setdefault('correlation_id', correlation_id.get() or 'none')
    return event_dict


def configure_structlog():
    """JSON event logging used by the API process and the worker."""
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            add_correlation_id,
            structlog.processors.JSONRenderer()
        ]
    )


def setup_logging(environment: str = 'development', level: int = logging.INFO):
    """
    Configure structured JSON logging to stdout for stdlib loggers.

    Args:
        environment: Deployment environment written on each record
        level: Root logger level

    Returns:
        logging.Handler: The configured handler (for testing)
    """
    handler = logging.StreamHandler(sys.stdout)

    formatter = CorrelationJsonFormatter(
        '%(timestamp)s %(level)s %(name)s %(message)s',
        rename_fields={
            'timestamp': 'asctime',
            'level': 'levelname'
        },
        environment=environment
    )
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    return handler
