import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = 'spendlens'

_request_id_ctx: ContextVar[Optional[str]] = ContextVar('request_id', default=None)


def set_request_id(value: Optional[str]):
    return _request_id_ctx.set(value)


def reset_request_id(token) -> None:
    _request_id_ctx.reset(token)


# Statement account numbers are long digit runs, sometimes partially starred.
ACCOUNT_NUMBER_RE = re.compile(r"\b[0-9Xx*]{5,}\d{4}\b")
SECRET_KEY_PARTS = ('password', 'token', 'secret', 'authorization')


def mask_account_number(value: str) -> str:
    raw = (value or '').replace(' ', '')
    if len(raw) < 8:
        return value
    return '*' * (len(raw) - 4) + raw[-4:]


def _sanitize_log_field(key: Optional[str], value: Any) -> Any:
    """Redact secret-looking keys and mask account numbers in any string value."""
    key_l = (key or '').lower()
    if any(part in key_l for part in SECRET_KEY_PARTS):
        return '[REDACTED]'
    if isinstance(value, dict):
        return {str(k): _sanitize_log_field(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_sanitize_log_field(key, v) for v in value]
    if isinstance(value, str):
        return ACCOUNT_NUMBER_RE.sub(lambda m: mask_account_number(m.group(0)), value)
    if value is None or isinstance(value, (int, float, bool)):
        return value
    return str(value)


class EventFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, event name, request id and event fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            'ts': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'event': getattr(record, 'event_name', None) or record.getMessage(),
        }
        rid = _request_id_ctx.get()
        if rid:
            payload['request_id'] = rid
        fields = getattr(record, 'event_fields', None)
        if isinstance(fields, dict):
            payload.update(fields)
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        logger.setLevel(getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO))
        logger.propagate = False
        handler = logging.StreamHandler()
        handler.setFormatter(EventFormatter())
        logger.addHandler(handler)
    return logger


def log_event(level: str, event_name: str, **fields: Any) -> None:
    logger = configure_logging()
    log_fn = getattr(logger, level.lower(), logger.info)
    safe_fields = {k: _sanitize_log_field(k, v) for k, v in fields.items()}
    log_fn(event_name, extra={'event_name': event_name, 'event_fields': safe_fields})
