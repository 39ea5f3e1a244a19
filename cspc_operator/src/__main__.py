from __future__ import annotations

import json
import logging
import os
import re
import sys
from collections.abc import Sequence

from cspc_operator.src.config import OperatorError, load_config
from cspc_operator.src.metrics import METRICS
from cspc_operator.src.signals import setup_signal_handler
from cspc_operator.src.start import start

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger("cspc_operator")


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    """Send JSON logs to stderr at the level named by ``LOG_LEVEL``."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main(argv: Sequence[str] | None = None) -> int:
    """Operator entrypoint: configure logging, load config, and run until signalled.

    This is the only place fatal startup and runtime errors are logged;
    the return value is the process exit code.
    """
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config(argv)
    except OperatorError:
        LOGGER.exception("Invalid operator configuration")
        return 1

    stop_event = setup_signal_handler()
    try:
        start(config, stop_event)
    except OperatorError:
        LOGGER.exception("cspc-operator failed")
        return 1

    LOGGER.info("cspc-operator exited cleanly")
    return 0


if __name__ == "__main__":
    sys.exit(main())
