"""
Structured Logging - Monitoring Layer

Log records carry the conversation and client they belong to, so a turn can
be followed across the request that submitted it, the generation task and
every WebSocket pump relaying it.

@.architecture
Incoming: app.py, api/dependencies.py, ws/handlers.py, core/sync/engine.py, All modules via get_logger() --- {str environment preset, str log_level, str request_id/conversation_id/client_id, bound fields}
Processing: configure_logging(), JSONFormatter.format(), ContextFilter.filter(), StructuredLogger.bind(), set_request_context() --- {4 jobs: context_injection, formatting, log_configuration, field_binding}
Outgoing: sys.stdout, Log files, All modules --- {StructuredLogger instances, JSON lines or text lines, context variables}
"""

import logging
import json
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from contextvars import ContextVar
from pathlib import Path

# Context variables (task-local: each turn and each pump has its own copy)
request_id_ctx: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
conversation_id_ctx: ContextVar[Optional[str]] = ContextVar('conversation_id', default=None)
client_id_ctx: ContextVar[Optional[str]] = ContextVar('client_id', default=None)

_CONTEXT_VARS = (
    ('request_id', request_id_ctx),
    ('conversation_id', conversation_id_ctx),
    ('client_id', client_id_ctx),
)

TEXT_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)-28s | [%(conversation_id)s/%(client_id)s] | %(message)s'

# Libraries that log every request or frame at INFO
_NOISY_LOGGERS = ('httpx', 'httpcore', 'uvicorn.access', 'asyncio', 'websockets')


def _context() -> Dict[str, str]:
    return {key: value for key, var in _CONTEXT_VARS if (value := var.get())}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.

    Context variables are flattened into the object; fields passed to a
    StructuredLogger call land under ``extra``.
    """

    def __init__(
        self,
        include_traceback: bool = True,
        include_context: bool = True
    ):
        """
        Args:
            include_traceback: Serialize exception tracebacks
            include_context: Add request, conversation and client ids when set
        """
        super().__init__()
        self.include_traceback = include_traceback
        self.include_context = include_context

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if self.include_context:
            entry.update(_context())

        if record.exc_info and self.include_traceback:
            exc_type, exc_value, exc_tb = record.exc_info
            entry['exception'] = {
                'type': exc_type.__name__,
                'message': str(exc_value),
                'traceback': traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        fields = getattr(record, 'extra_fields', None)
        if fields:
            entry['extra'] = fields

        return json.dumps(entry, default=str)


class ContextFilter(logging.Filter):
    """Copies context ids onto each record ('-' when unset) for the text format."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, var in _CONTEXT_VARS:
            setattr(record, key, var.get() or '-')
        return True


class StructuredLogger:
    """
    Logger taking structured fields as keyword arguments.

    Example:
        log = get_logger(__name__).bind(assistant_message_id="a1")
        log.info("Turn finished", outcome="complete")
    """

    def __init__(self, name: str, fields: Optional[Dict[str, Any]] = None):
        self._logger = logging.getLogger(name)
        self._fields = fields or {}

    @property
    def name(self) -> str:
        return self._logger.name

    def bind(self, **fields: Any) -> "StructuredLogger":
        """Return a logger that adds ``fields`` to every record."""
        return StructuredLogger(self._logger.name, {**self._fields, **fields})

    def _log(self, level: int, message: str, exc_info: Any = None, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self._fields, **fields}
        extra = {'extra_fields': merged} if merged else None
        self._logger.log(level, message, exc_info=exc_info, extra=extra, stacklevel=3)

    def debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, **fields)

    def exception(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, exc_info=True, **fields)


def _handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())
    return handler


def configure_logging(
    level: str = "INFO",
    format_type: str = "json",
    log_file: Optional[Path] = None,
    enable_console: bool = True,
    module_levels: Optional[Dict[str, str]] = None
) -> None:
    """
    Install handlers on the root logger.

    Args:
        level: Root log level
        format_type: "json" or "text"
        log_file: Also write to this file
        enable_console: Write to stdout
        module_levels: Per-logger levels, e.g. {"core.sync": "DEBUG"}
    """
    if format_type == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(fmt=TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    handlers = []
    if enable_console:
        handlers.append(_handler(logging.StreamHandler(sys.stdout), formatter))
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(_handler(logging.FileHandler(log_file), formatter))

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers = handlers

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    for name, module_level in (module_levels or {}).items():
        logging.getLogger(name).setLevel(getattr(logging, module_level.upper(), logging.INFO))


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)


def set_request_context(
    request_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    client_id: Optional[str] = None
) -> None:
    """
    Set context ids for the current task. ``None`` leaves a value unchanged.
    """
    for var, value in ((request_id_ctx, request_id), (conversation_id_ctx, conversation_id), (client_id_ctx, client_id)):
        if value:
            var.set(value)


def clear_request_context() -> None:
    for _, var in _CONTEXT_VARS:
        var.set(None)


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


def get_conversation_id() -> Optional[str]:
    return conversation_id_ctx.get()


def get_client_id() -> Optional[str]:
    return client_id_ctx.get()


# Presets keyed by settings.environment
LOGGING_PRESETS: Dict[str, Dict[str, Any]] = {
    'development': {
        'level': 'INFO',
        'format_type': 'text',
    },
    'production': {
        'level': 'INFO',
        'format_type': 'json',
    },
    'test': {
        'level': 'WARNING',
        'format_type': 'text',
    },
}


def configure_from_preset(environment: str = 'development', **overrides: Any) -> None:
    """
    Configure logging for an environment.

    Args:
        environment: 'development', 'production' or 'test'
        **overrides: configure_logging() arguments replacing preset values
    """
    if environment not in LOGGING_PRESETS:
        raise ValueError(f"Unknown logging preset: {environment}. Available: {list(LOGGING_PRESETS)}")

    configure_logging(**{**LOGGING_PRESETS[environment], **overrides})
