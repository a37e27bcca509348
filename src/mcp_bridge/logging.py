"""Logging helpers with redaction."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Mapping

_SENSITIVE_KEYS = re.compile(r"(token|secret|api[_-]?key|password|authorization)", re.IGNORECASE)

PACKAGE_LOGGER = "mcp_bridge"


def configure_logging(level: str) -> None:
    # The host owns handlers and formatting; only the package level is set here.
    logging.getLogger(PACKAGE_LOGGER).setLevel(level.upper())


def redact_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    redacted: Dict[str, Any] = {}
    for key, value in payload.items():
        if _SENSITIVE_KEYS.search(key):
            redacted[key] = "***REDACTED***"
        elif isinstance(value, Mapping):
            redacted[key] = redact_payload(value)
        else:
            redacted[key] = value
    return redacted
