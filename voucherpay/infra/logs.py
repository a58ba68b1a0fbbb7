"""
Logging setup.

Handlers log through `logging.getLogger(__name__)`. In production the
`RedactingFilter` masks customer emails and secret-looking values before a
record is formatted, so payloads can be logged with full context.
"""
import logging
import os
import re
from typing import Any

from ..helpers import redact_email

APP_ENV = os.getenv("APP_ENV", "development").lower()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

SENSITIVE_KEYS = ("password", "token", "api_key", "secret", "authorization")
EMAIL_RE = re.compile(r"[^@\s\"',;:<>()\[\]]+@[^@\s\"',;:<>()\[\]]+")


def redact_sensitive_data(data: dict) -> dict:
    out = dict(data)
    for key, value in data.items():
        lk = key.lower()
        if "email" in lk and isinstance(value, str):
            out[key] = redact_email(value)
        elif any(s in lk for s in SENSITIVE_KEYS):
            out[key] = "***REDACTED***"
        elif isinstance(value, dict):
            out[key] = redact_sensitive_data(value)
    return out


def _redact_value(value: Any) -> Any:
    if isinstance(value, dict):
        return redact_sensitive_data(value)
    if isinstance(value, str):
        return EMAIL_RE.sub(lambda m: redact_email(m.group(0)), value)
    return value


class RedactingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = _redact_value(record.msg)
        if isinstance(record.args, dict):
            record.args = redact_sensitive_data(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(_redact_value(a) for a in record.args)
        return True


def setup_logging(env: str = APP_ENV) -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if env == "production":
        root = logging.getLogger()
        if not any(isinstance(f, RedactingFilter) for f in root.filters):
            for handler in root.handlers:
                handler.addFilter(RedactingFilter())
            root.addFilter(RedactingFilter())
