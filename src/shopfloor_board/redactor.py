"""Logging filter that keeps credentials out of log output.

Two mechanisms:

* values collected from the resolved configuration whose *keys* match
  ``logging.redact_patterns`` (shell globs such as ``*token*``) are
  replaced verbatim;
* credentials in HTTP authorization form (``Bearer …``, ``key=…``) are
  masked wherever they appear, even if they never went through config.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from typing import Any, Iterable

REDACTED = "[REDACTED]"

_AUTH_RE = re.compile(r"(Bearer\s+|key=)[A-Za-z0-9._:\-]{8,}")


class SecretRedactingFilter(logging.Filter):
    """Scrubs secret values from the message and arguments of each record."""

    def __init__(self, secret_values: Iterable[str] | None = None) -> None:
        super().__init__()
        # longest first so a secret containing another is replaced whole
        self._secrets: list[str] = sorted(
            {s for s in (secret_values or []) if s and len(s) > 3},
            key=len,
            reverse=True,
        )

    def add_secret(self, value: str) -> None:
        if value and len(value) > 3 and value not in self._secrets:
            self._secrets.append(value)
            self._secrets.sort(key=len, reverse=True)

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.redact(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: self.redact(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self.redact(a) for a in record.args)
        return True

    def redact(self, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        for secret in self._secrets:
            if secret in value:
                value = value.replace(secret, REDACTED)
        return _AUTH_RE.sub(lambda m: m.group(1) + REDACTED, value)


def collect_secret_values(
    config_dict: dict[str, Any],
    patterns: list[str] | None = None,
) -> list[str]:
    """Collect string values whose keys match any of *patterns* (case-insensitive)."""
    if not patterns:
        return []
    lowered = [p.lower() for p in patterns]
    found: list[str] = []

    def _walk(obj: Any) -> None:
        if isinstance(obj, dict):
            for key, val in obj.items():
                if isinstance(val, str) and any(fnmatch.fnmatch(str(key).lower(), p) for p in lowered):
                    found.append(val)
                _walk(val)
        elif isinstance(obj, (list, tuple)):
            for item in obj:
                _walk(item)

    _walk(config_dict)
    return found
