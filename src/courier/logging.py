"""Structured logging for Courier.

The delivery engine logs through the standard `logging` module; the API
layer logs through structlog with keyword fields. Both end up in one
handler rendered by structlog, as JSON in production or colored console
text in development.

Every line emitted while an attempt runs carries `delivery_id` and
`subscription_id` (see `delivery_context`). Signing secrets are masked
before rendering.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from structlog.typing import Processor

REDACTED = "[redacted]"

# Prefix of generated signing secrets (see courier.webhooks.signing)
_SECRET_PREFIX = "whsec_"

_configured = False
_handler: logging.Handler | None = None


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask `secret` fields and anything that looks like a signing secret."""
    for key, value in event_dict.items():
        if key == "secret" or (isinstance(value, str) and value.startswith(_SECRET_PREFIX)):
            event_dict[key] = REDACTED
    return event_dict


def _renderers(format: str) -> list[Processor]:
    if format.lower() == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=True)]


def configure_logging(
    level: str = "INFO",
    format: str = "json",
) -> None:
    """Configure structured logging for Courier.

    Installs one stdout handler on the root logger whose formatter runs
    the structlog processor chain, so `logger.info("Delivered %s", id)`
    from an engine module and `log.info("Subscription created", id=...)`
    from the API render the same way and share bound context.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format: Output format - "json" for production, "text" for development.

    Example:
        ```python
        from courier.logging import configure_logging, get_logger

        configure_logging(level="DEBUG", format="text")
        logger = get_logger()
        logger.info("Delivery engine started", version="0.1.0")
        ```
    """
    global _configured, _handler

    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
    ]

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *_renderers(format),
            ],
        )
    )

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    root.addHandler(handler)
    _handler = handler
    root.setLevel(log_level)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name. Uses calling module name if None.
    """
    if not _configured:
        configure_logging()

    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: object) -> None:
    """Bind context variables to all subsequent log messages.

    Context lives in contextvars, so each asyncio task sees its own copy.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from the logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()


@contextmanager
def delivery_context(delivery_id: str, subscription_id: str) -> Iterator[None]:
    """Tag every log line inside the block with the delivery being attempted.

    Keys bound by an enclosing block are restored on exit.

    Example:
        ```python
        with delivery_context("dlv_abc", "whk_123"):
            logger.info("Attempt started")  # includes both ids
        ```
    """
    with structlog.contextvars.bound_contextvars(
        delivery_id=delivery_id, subscription_id=subscription_id
    ):
        yield


logger = get_logger("courier")
