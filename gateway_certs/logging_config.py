# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Structured logging configuration using structlog.

JSON-formatted logs for Loki/Promtail integration, console output for
local development. Private key material and CA tokens are masked before any
renderer sees them.
"""

import logging
import re
import sys
from typing import Any

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

from .config import get_settings

REDACTED = "[REDACTED]"

_SECRET_FIELDS = frozenset(
    {"private_key", "private_key_pem", "PrivateKeyPEM", "token", "consul_http_token"}
)
_PRIVATE_KEY_BLOCK = re.compile(
    r"-----BEGIN ([A-Z ]*)PRIVATE KEY-----.*?-----END \1PRIVATE KEY-----", re.DOTALL
)

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def add_app_context(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add application context to all log entries."""
    settings = get_settings()
    event_dict.setdefault("service", "gateway-certs")
    event_dict.setdefault("version", settings.app_version)
    event_dict.setdefault("environment", settings.environment)
    return event_dict


def redact_key_material(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Mask secret fields and any PEM private key embedded in a string value."""
    for key, value in event_dict.items():
        if key in _SECRET_FIELDS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, str) and "PRIVATE KEY-----" in value:
            event_dict[key] = _PRIVATE_KEY_BLOCK.sub(REDACTED, value)
    return event_dict


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_app_context,
        redact_key_material,
    ]


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """Configure structured logging for the certificate agent.

    Args:
        log_level: Log level override (defaults to settings.log_level)
        log_format: "json" or "text" override (defaults to settings.log_format)
    """
    settings = get_settings()
    level = (log_level or settings.log_level).upper()
    shared = _shared_processors()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            _renderer(log_format or settings.log_format),
        ],
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance with the given name."""
    return structlog.stdlib.get_logger(name)
