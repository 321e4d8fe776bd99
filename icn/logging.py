"""
ICN logging setup.

Every icn.* module logs through `logging.getLogger(__name__)`; this module
only attaches handlers to the "icn" logger. Records can carry structured
fields via `extra={"context": {...}}`, which the JSON format emits as-is.

Node logs routinely mention identity files, signatures and peer credentials,
so redaction is on by default: `key=value` pairs in messages and secret-named
keys in the context are masked before any handler formats them.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Iterator, Mapping, MutableMapping, Optional, Sequence

MASK = "[REDACTED]"

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_NODE_TEXT_FORMAT = "%(asctime)s %(levelname)s [%(node_id)s] %(name)s: %(message)s"


@dataclass(frozen=True)
class LoggingOptions:
    level: str = "INFO"
    format: str = "text"  # text | json
    file: Optional[str] = None
    redact: bool = True
    node_id: Optional[str] = None
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 3


class SecretRedactor:
    """
    Masks secrets in log messages and context mappings.

    Mapping keys containing any of `key_fragments` are masked whole; strings
    are scanned for `<secret-key>=<value>` / `<secret-key>: <value>` pairs.
    Nesting deeper than `max_depth` is masked whole.
    """

    DEFAULT_FRAGMENTS: Sequence[str] = (
        "private_key",
        "secret",
        "token",
        "password",
        "signature",
        "authorization",
    )

    def __init__(self, key_fragments: Sequence[str] = DEFAULT_FRAGMENTS, max_depth: int = 4):
        self._fragments = tuple(f.lower() for f in key_fragments)
        self._max_depth = max_depth
        self._pair_re = re.compile(
            r"(?P<key>private[_-]?key|token|password|secret|authorization)\s*[:=]\s*[^\s,;]+",
            flags=re.IGNORECASE,
        )

    def is_secret_key(self, key: str) -> bool:
        lowered = key.lower()
        return any(fragment in lowered for fragment in self._fragments)

    def mask_text(self, text: str) -> str:
        return self._pair_re.sub(lambda m: f"{m.group('key')}={MASK}", text)

    def mask_value(self, value: Any, depth: int = 0) -> Any:
        if depth > self._max_depth or isinstance(value, bytes):
            return MASK
        if isinstance(value, str):
            return self.mask_text(value)
        if isinstance(value, Mapping):
            return {
                k: MASK if isinstance(k, str) and self.is_secret_key(k) else self.mask_value(v, depth + 1)
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self.mask_value(v, depth + 1) for v in value]
        return value


class RedactionFilter(logging.Filter):
    def __init__(self, redactor: Optional[SecretRedactor] = None):
        super().__init__()
        self._redactor = redactor or SecretRedactor()

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._redactor.mask_text(record.msg)
        context = getattr(record, "context", None)
        if isinstance(context, MutableMapping):
            record.context = self._redactor.mask_value(context)
        return True


class NodeIdFilter(logging.Filter):
    """Stamps every record with the node id so federated logs can be merged."""

    def __init__(self, node_id: str):
        super().__init__()
        self._node_id = node_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.node_id = self._node_id
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        node_id = getattr(record, "node_id", None)
        if node_id:
            payload["node_id"] = node_id
        context = getattr(record, "context", None)
        if context is not None:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _formatter(options: LoggingOptions) -> logging.Formatter:
    fmt = options.format.strip().lower()
    if fmt == "json":
        return JSONFormatter()
    if fmt == "text":
        return logging.Formatter(_NODE_TEXT_FORMAT if options.node_id else _TEXT_FORMAT)
    raise ValueError(f"Invalid log format: {options.format}")


def _handlers(options: LoggingOptions) -> Iterator[logging.Handler]:
    yield logging.StreamHandler(sys.stderr)
    if options.file:
        yield RotatingFileHandler(
            options.file,
            maxBytes=options.max_bytes,
            backupCount=options.backup_count,
        )


def load_logging_options_from_env(base: Optional[LoggingOptions] = None) -> LoggingOptions:
    """Overlay ICN_LOG_LEVEL, ICN_LOG_FORMAT, ICN_LOG_FILE and ICN_LOG_REDACT ("0" disables)."""
    base = base or LoggingOptions()
    redact_env = os.getenv("ICN_LOG_REDACT")
    return replace(
        base,
        level=os.getenv("ICN_LOG_LEVEL", base.level),
        format=os.getenv("ICN_LOG_FORMAT", base.format),
        file=os.getenv("ICN_LOG_FILE", base.file),
        redact=base.redact if redact_env is None else redact_env.lower() not in {"0", "false", "no"},
    )


def configure_logging(options: LoggingOptions) -> None:
    """Replace the handlers on the "icn" logger according to `options`."""
    formatter = _formatter(options)
    redaction = RedactionFilter() if options.redact else None
    tagging = NodeIdFilter(options.node_id) if options.node_id else None

    root = logging.getLogger("icn")
    root.setLevel(getattr(logging, options.level.strip().upper(), logging.INFO))
    root.handlers.clear()
    root.propagate = False

    for handler in _handlers(options):
        handler.setFormatter(formatter)
        for flt in (tagging, redaction):
            if flt is not None:
                handler.addFilter(flt)
        root.addHandler(handler)
