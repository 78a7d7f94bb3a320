import json
import logging
import os
import time
from typing import Any

logger = logging.getLogger('consultdesk')


class JsonFormatter(logging.Formatter):
    """Render records as one JSON object per line.

    Records carrying a ``payload`` extra are emitted as-is; everything else is
    wrapped with timestamp, level and logger name.
    """

    def format(self, record: logging.LogRecord) -> str:
        try:
            payload = getattr(record, 'payload', None)
            if payload is None:
                payload = {
                    'ts': time.time(),
                    'level': record.levelname,
                    'name': record.name,
                    'message': record.getMessage(),
                    'pid': os.getpid(),
                }
                if record.exc_info:
                    payload['exc'] = self.formatException(record.exc_info)
            return json.dumps(payload, default=str)
        except (TypeError, ValueError):
            return super().format(record)


def configure_logging(level: str = None) -> None:
    """Attach the JSON handler to the package logger once."""
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
    logger.setLevel((level or os.environ.get('CONSULTDESK_LOG_LEVEL', 'INFO')).upper())


def emit_event(event: str, level: str = 'info', **fields: Any) -> None:
    """Emit a structured JSON log event.

    Values that are not JSON serializable are stringified.
    """
    payload = {
        'ts': time.time(),
        'event': event,
        'level': level,
        'service': 'consultdesk',
        'pid': os.getpid(),
    }
    for k, v in fields.items():
        try:
            json.dumps({k: v})
            payload[k] = v
        except (TypeError, ValueError):
            payload[k] = str(v)

    log = getattr(logger, level if level in ('debug', 'warning', 'error') else 'info')
    log('', extra={'payload': payload})
