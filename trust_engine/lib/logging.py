"""
Logging setup for the compliance worker.

Every log line goes through one structlog pipeline, whether it was emitted
with `structlog.get_logger()` (services) or `logging.getLogger()` (lib, infra,
workflows). Key material and raw client addresses are masked before
rendering, so a stray `log.info(..., ip_address=ip)` never reaches disk.

Usage:
    from trust_engine.lib.logging import setup_logging

    setup_logging()  # once, before the engine is built
"""

import logging
import os
import sys
from typing import Any

import structlog

REDACTED = "[redacted]"

# Event keys whose values must never be rendered
SENSITIVE_KEYS = frozenset(
    {"master_key", "key_material", "encryption_key", "ip_address", "ip_secret", "user_agent"}
)

NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "apscheduler.executors")


def redact_sensitive(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor: mask values stored under SENSITIVE_KEYS."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def _pick_renderer(dev_mode: bool) -> structlog.types.Processor:
    if dev_mode:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(level: str | None = None) -> None:
    """
    Configure structlog and stdlib logging for the worker process.

    TRUST_DEV_MODE=1 selects colored console output, anything else JSON.
    The level comes from the argument, then LOG_LEVEL, then INFO.
    """
    dev_mode = os.environ.get("TRUST_DEV_MODE") == "1"
    log_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # foreign_pre_chain gives stdlib records the same timestamps and masking
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _pick_renderer(dev_mode),
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level, logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
