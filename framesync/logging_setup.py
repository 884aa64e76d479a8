"""Process-wide logging configuration with secret redaction."""

from __future__ import annotations

import logging
import re
import sys
from typing import Callable, Optional, TextIO

REDACTED = "***REDACTED***"

_SENSITIVE_NAMES = r"(?:api[_-]?key|x-mbx-apikey|secret|token|password|passphrase|signature|credential|authorization)"

# 'apiKey': 'value'  /  "password": "value"
_QUOTED_PAIR = re.compile(
    r"(?P<prefix>(['\"])[\w-]*" + _SENSITIVE_NAMES + r"[\w-]*\2\s*:\s*)(?P<quote>['\"])(?P<value>.*?)(?P=quote)",
    re.IGNORECASE,
)
# password=value  /  ?signature=value&
_ASSIGNMENT = re.compile(
    r"(?P<prefix>\b[\w-]*" + _SENSITIVE_NAMES + r"[\w-]*\s*=\s*)(?P<value>[^\s&'\",;]+)",
    re.IGNORECASE,
)
_BEARER = re.compile(r"(?P<prefix>\bBearer\s+)(?P<value>[A-Za-z0-9._~+/=-]+)", re.IGNORECASE)

_base_factory: Optional[Callable[..., logging.LogRecord]] = None
_handler: Optional[logging.Handler] = None


def redact_text(text: str) -> str:
    """Mask values that follow sensitive field names in ``text``."""

    text = _QUOTED_PAIR.sub(lambda m: f"{m.group('prefix')}{m.group('quote')}{REDACTED}{m.group('quote')}", text)
    text = _ASSIGNMENT.sub(lambda m: f"{m.group('prefix')}{REDACTED}", text)
    return _BEARER.sub(lambda m: f"{m.group('prefix')}{REDACTED}", text)


def _redacting_factory(*args, **kwargs) -> logging.LogRecord:
    assert _base_factory is not None
    record = _base_factory(*args, **kwargs)
    try:
        message = record.getMessage()
    except (TypeError, ValueError):
        return record
    redacted = redact_text(message)
    if redacted != message or record.args:
        record.msg = redacted
        record.args = ()
    return record


def _install_record_factory() -> None:
    global _base_factory
    if _base_factory is None:
        _base_factory = logging.getLogRecordFactory()
        logging.setLogRecordFactory(_redacting_factory)


def _level_for(debug: int) -> int:
    if debug >= 2:
        return logging.DEBUG
    if debug == 1:
        return logging.INFO
    return logging.WARNING


def configure_logging(debug: int = 1, stream_target: Optional[TextIO] = None) -> None:
    """Configure the root logger.

    Redaction is applied by the log-record factory so records routed to
    handlers installed by third-party libraries are masked as well.
    """

    global _handler
    _install_record_factory()
    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    handler = logging.StreamHandler(stream_target or sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(_level_for(int(debug)))
    _handler = handler


__all__ = ["REDACTED", "configure_logging", "redact_text"]
