"""
Structlog configuration
"""
import logging
import json
import structlog
from structlog.processors import TimeStamper, add_log_level, JSONRenderer
from structlog.dev import ConsoleRenderer
from structlog.contextvars import bind_contextvars, merge_contextvars, unbind_contextvars
from structlog.stdlib import ProcessorFormatter
from typing import Any, List, Optional

from core.config import settings


def get_renderer() -> Any:
    """Pick the renderer (Console in DEBUG, JSON otherwise or when LOG_JSON is set).
    structlog passes default/sort_keys and friends to the serializer.
    """
    if settings.DEBUG and not settings.LOG_JSON:
        return ConsoleRenderer(colors=True)
    # accepts the keyword arguments structlog passes
    def _dumps(obj, default=None, **kwargs):
        return json.dumps(obj, ensure_ascii=False, default=default, **kwargs)
    return JSONRenderer(serializer=_dumps)


def configure_logging() -> None:
    """Configure structlog and route stdlib logging through the same processors."""
    timestamper = TimeStamper(fmt="iso")

    # shared by the stdlib ProcessorFormatter and structlog.configure
    shared_pre_chain: List[Any] = [
        merge_contextvars,
        add_log_level,
        timestamper,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    # structlog hands rendering to ProcessorFormatter
    structlog.configure(
        processors=[
            *shared_pre_chain,
            ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # stdlib records are rendered by structlog too
    renderer = get_renderer()
    formatter = ProcessorFormatter(
        foreign_pre_chain=shared_pre_chain,
        processors=[
            ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger."""
    return structlog.get_logger(name)


def bind_payment_context(reference: Optional[str] = None, **extra: Any) -> None:
    """Bind the transaction reference to the context; later log lines carry transaction_reference."""
    values = {k: v for k, v in extra.items() if v is not None}
    if reference:
        values["transaction_reference"] = reference
    if values:
        bind_contextvars(**values)


def clear_payment_context() -> None:
    unbind_contextvars("transaction_reference")


# configure at import
configure_logging()
