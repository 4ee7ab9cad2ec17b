"""Logging handler that scrubs bootstrap tokens and key material.

:class:`RedactingHandler` wraps any ``logging.Handler``. Before a record
reaches the wrapped handler, attributes whose key names sensitive material
are replaced with a placeholder, nested mappings are scrubbed the same way,
and the message and every string value are swept for anything shaped like
a plaintext bootstrap token (``nbb_`` followed by 16 or more url-safe
characters).

Attributes are what the caller passes through ``extra=``. Handlers
derived with :meth:`RedactingHandler.with_attrs` and
:meth:`RedactingHandler.with_group` carry bound attributes and a group
path, and :class:`JsonFormatter` renders a record as one JSON object.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, Union

SENSITIVE_KEYS = frozenset(
    {
        "bootstrap_token",
        "enrollment_bundle.bootstrap_token",
        "dek",
        "data_key_b64",
        "data_key",
        "csr_pem",
        "beacon_key",
        "private_key",
        "Authorization",
    }
)

TOKEN_PATTERN = re.compile(r"nbb_[A-Za-z0-9_\-]{16,}")

REDACTED = "[REDACTED]"

# Record attribute under which the redacted attribute tree travels.
ATTRS_FIELD = "redacted_attrs"

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName", ATTRS_FIELD}

_Attrs = Union[Mapping[str, Any], Iterable[tuple[str, Any]]]


def _record_attrs(record: logging.LogRecord) -> dict[str, Any]:
    """Attributes of record: an already-built tree plus any ``extra`` fields."""
    attrs = dict(getattr(record, ATTRS_FIELD, None) or {})
    attrs.update((k, v) for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS)
    return attrs


def redact_message(message: str) -> str:
    """Replace every token-shaped substring of message with the placeholder."""
    return TOKEN_PATTERN.sub(REDACTED, message)


def redact_attr(key: str, value: Any) -> Any:
    """Return value as it may be logged under key."""
    if key in SENSITIVE_KEYS:
        return REDACTED
    if isinstance(value, Mapping):
        return {k: redact_attr(k, v) for k, v in value.items()}
    if isinstance(value, str):
        return redact_message(value)
    return value


def contains_token_pattern(s: str) -> bool:
    """Report whether s contains something shaped like a plaintext bootstrap token."""
    return "nbb_" in s and TOKEN_PATTERN.search(s) is not None


class RedactingHandler(logging.Handler):
    """Scrubs sensitive attributes and token-shaped text, then delegates."""

    def __init__(self, inner: logging.Handler) -> None:
        super().__init__()
        self.inner = inner
        self._bound: dict[str, Any] = {}
        self._groups: tuple[str, ...] = ()

    def enabled(self, level: int) -> bool:
        """Whether the wrapped handler accepts records at level."""
        return level >= self.inner.level

    def emit(self, record: logging.LogRecord) -> None:
        if not self.enabled(record.levelno):
            return
        try:
            own = {k: redact_attr(k, v) for k, v in _record_attrs(record).items()}
            fields = {k: v for k, v in record.__dict__.items() if k in _STANDARD_ATTRS}
            fields.update(msg=redact_message(record.getMessage()), args=None)
            fields[ATTRS_FIELD] = self._nest(own)
            self.inner.handle(logging.makeLogRecord(fields))
        except Exception:  # logging must never raise into the caller
            self.handleError(record)

    def flush(self) -> None:
        self.inner.flush()

    def with_attrs(self, attrs: _Attrs) -> RedactingHandler:
        """A handler that adds the redacted attrs to every record."""
        redacted = {k: redact_attr(k, v) for k, v in dict(attrs).items()}
        return self._derive(self._nest(redacted), self._groups)

    def with_group(self, name: str) -> RedactingHandler:
        """A handler that nests later attributes under name."""
        if not name:
            return self
        return self._derive(self._bound, self._groups + (name,))

    def _derive(self, bound: dict[str, Any], groups: tuple[str, ...]) -> RedactingHandler:
        clone = RedactingHandler(self.inner)
        clone._bound = bound
        clone._groups = groups
        clone.setLevel(self.level)
        clone.filters = list(self.filters)
        return clone

    def _nest(self, attrs: dict[str, Any]) -> dict[str, Any]:
        """Bound attributes with attrs placed at the current group path."""
        merged = dict(self._bound)
        if not attrs:
            return merged
        target = merged
        for group in self._groups:
            child = target.get(group)
            child = dict(child) if isinstance(child, Mapping) else {}
            target[group] = child
            target = child
        target.update(attrs)
        return merged


class JsonFormatter(logging.Formatter):
    """Renders a record as one JSON object: time, level, msg, then attributes."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).astimezone().isoformat(timespec="milliseconds")
        fields: list[tuple[str, Any]] = [
            ("time", stamp),
            ("level", record.levelname),
            ("msg", record.getMessage()),
        ]
        fields.extend(_record_attrs(record).items())
        if record.exc_info:
            fields.append(("exc", self.formatException(record.exc_info)))
        body = ",".join(
            f"{json.dumps(str(k))}:{json.dumps(v, default=str, separators=(',', ':'))}"
            for k, v in fields
        )
        return "{" + body + "}"