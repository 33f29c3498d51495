"""Structured logging for calbridge, with per-account context.

Uses structlog's ProcessorFormatter to transparently upgrade all existing
``logging.getLogger(__name__)`` call sites. Zero changes needed at call sites.

Two output formats:
- ``text``: Colored, human-readable console output (dev default)
- ``json``: Machine-parseable JSON lines (production / log aggregation)

The account being reconciled and the OTel trace context are injected
automatically via processors that read from a ContextVar and the current
OTel span. Credential-looking values are redacted from every rendered event.

Log directory layout (when ``log_root`` is set)::

    logs/
      calbridge/        # Application logs (JSON)
        calbridge.log
      transport/        # httpx / httpcore / caldav logs (JSON)
        calbridge.log
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

from calbridge.core.redaction import redact_credential_values

# ---------------------------------------------------------------------------
# Account context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_account_context: ContextVar[str | None] = ContextVar("account_address", default=None)


def set_account_context(account_address: str | None) -> None:
    """Set the account address for the current async context."""
    _account_context.set(account_address)


def get_account_context() -> str | None:
    """Get the account address for the current async context."""
    return _account_context.get()


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_account_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``account_address`` from the ContextVar into the event dict."""
    event_dict["account_address"] = _account_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    span = trace.get_current_span()
    ctx = span.get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


def redact_secrets(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Redact tokens, secrets and bearer headers from string values."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = redact_credential_values(value)
    return event_dict


# ---------------------------------------------------------------------------
# Noise suppression
# ---------------------------------------------------------------------------

_NOISE_LOGGERS = (
    "httpx",
    "httpcore",
    "caldav",
)

# Subdirectory names under log_root
_DIR_APP = "calbridge"
_DIR_TRANSPORT = "transport"


def _build_processors(
    time_fmt: str,
) -> list[structlog.types.Processor]:
    """Build the pre-chain processor list with the given timestamp format."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_account_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _render_processors(renderer: structlog.types.Processor) -> list[structlog.types.Processor]:
    return [
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        # Runs after positional args are merged into the message.
        redact_secrets,
        renderer,
    ]


def _make_file_handler(path: Path, processors: list) -> logging.FileHandler:
    """Create a JSON file handler at *path*."""
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=_render_processors(structlog.processors.JSONRenderer()),
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    return handler


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    service_name: str | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        Output format: ``"text"`` for colored console, ``"json"`` for JSON lines.
    log_root:
        Root directory for structured log files.  When set, creates::

            {log_root}/calbridge/{service_name}.log   (application logs)
            {log_root}/transport/{service_name}.log   (HTTP/CalDAV transport logs)

    service_name:
        Used for file naming; defaults to ``calbridge``.
    """
    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        # Console: compact HH:MM:SS, no microseconds
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=_render_processors(renderer),
        foreign_pre_chain=console_processors,
    )

    # -- Console handler (stderr) --
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    # Remove existing handlers to avoid duplicate output on reconfiguration
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Suppress noisy third-party loggers on console
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # -- File handlers (structured directory layout) --
    if log_root is not None:
        log_root = Path(log_root)
        file_processors = _build_processors(time_fmt="iso")
        log_name = service_name or "calbridge"

        for subdir in (_DIR_APP, _DIR_TRANSPORT):
            (log_root / subdir).mkdir(parents=True, exist_ok=True)

        app_handler = _make_file_handler(
            log_root / _DIR_APP / f"{log_name}.log",
            file_processors,
        )
        root.addHandler(app_handler)

        transport_handler = _make_file_handler(
            log_root / _DIR_TRANSPORT / f"{log_name}.log",
            file_processors,
        )
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(transport_handler)

    # Configure structlog itself (for direct structlog.get_logger() usage)
    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
