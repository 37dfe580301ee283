"""
Structured logging with correlation IDs.

Log lines emitted while a run is claimed, executed or replayed carry the
run, host, action and actor ids of the work in progress, so that a drain
pass can be followed in aggregated logs.
"""

import contextvars
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

CONTEXT_KEYS = ('run_id', 'host_id', 'action_id', 'actor_id', 'stage')

remediation_context: contextvars.ContextVar[dict] = contextvars.ContextVar(
    'remediation_context', default={}
)


class ContextualLogger(logging.LoggerAdapter):
    """
    Logger adapter that injects correlation IDs into log records.

    Usage:
        logger = get_logger(__name__)
        with LoggingContext(run_id='run-1', host_id='web-01'):
            logger.info("Claimed run")
    """

    def process(self, msg: str, kwargs: dict) -> Tuple[str, dict]:
        """Inject context variables into log extra fields."""
        ctx = remediation_context.get({})
        extra = dict(kwargs.get('extra') or {})
        for key in CONTEXT_KEYS:
            if ctx.get(key) is not None:
                extra.setdefault(key, ctx[key])
        kwargs['extra'] = extra
        return msg, kwargs


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        ctx = remediation_context.get({})
        for key in CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is None:
                value = ctx.get(key)
            if value is not None:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def get_logger(name: str) -> ContextualLogger:
    """Get a contextual logger for a module."""
    return ContextualLogger(logging.getLogger(name), {})


def set_context(**kwargs: Any) -> contextvars.Token:
    """
    Merge values into the current correlation context.

    Returns:
        Token to reset context later
    """
    current = remediation_context.get({}).copy()
    current.update(kwargs)
    return remediation_context.set(current)


def get_context() -> dict:
    """Get current correlation context."""
    return remediation_context.get({}).copy()


def clear_context() -> None:
    remediation_context.set({})


class LoggingContext:
    """
    Context manager for setting logging context.

    Usage:
        with LoggingContext(run_id='run-1'):
            logger.info("Processing")  # Includes run_id
    """

    def __init__(self, **kwargs: Any):
        self.kwargs = kwargs
        self.token: Optional[contextvars.Token] = None

    def __enter__(self):
        self.token = set_context(**self.kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.token:
            remediation_context.reset(self.token)
        return False
