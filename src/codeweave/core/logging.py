"""Structured logging for index passes, the watch loop and queries.

Every record is a structlog event routed through stdlib handlers, one per
configured output: console rendering for terminals, JSON lines for files.
Correlation fields travel in structlog context variables:

- ``pass_scope`` binds ``pass_id`` and ``mode`` while an indexing pass runs,
  on the thread that runs it, so the extraction, resolver, contract and
  embedding records of one pass can be grouped
- ``query_scope`` binds ``request_id`` for the records of one query
- ``subsystem`` (config, index, store, watch, query) is derived from the
  logger name of every record emitted under the package
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog
from structlog.contextvars import bound_contextvars, get_contextvars

if TYPE_CHECKING:
    from codeweave.config.models import LoggingConfig

PACKAGE = "codeweave"

# Third-party loggers capped regardless of the configured level
_QUIET_LOGGERS = {
    # Logs every filtered change, including writes to our own log file
    "watchfiles.main": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}


def new_request_id() -> str:
    return uuid4().hex[:12]


def get_request_id() -> str | None:
    value = get_contextvars().get("request_id")
    return value if isinstance(value, str) else None


@contextmanager
def query_scope(request_id: str | None = None) -> Iterator[str]:
    """Bind a request id (generated unless given) for the records of one query."""
    rid = request_id or new_request_id()
    with bound_contextvars(request_id=rid):
        yield rid


@contextmanager
def pass_scope(pass_id: str, mode: str) -> Iterator[None]:
    """Bind the identity of an indexing pass for every record written inside it."""
    with bound_contextvars(pass_id=pass_id, mode=mode):
        yield


def _add_subsystem(
    _logger: structlog.types.WrappedLogger,
    _method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    name = event_dict.get("logger")
    if isinstance(name, str) and name.startswith(f"{PACKAGE}."):
        event_dict.setdefault("subsystem", name.split(".")[1])
    return event_dict


def configure_logging(
    *,
    config: LoggingConfig | None = None,
    json_format: bool = False,
    level: str = "INFO",
) -> None:
    """Configure structlog. Pass ``CodeWeaveConfig.logging`` for multi-output setups.

    Args:
        config: Logging configuration with outputs; overrides the other arguments
        json_format: Single stderr output rendered as JSON lines
        level: Root level for the single-output setup
    """
    from codeweave.config.models import LoggingConfig, LogOutputConfig

    if config is None:
        config = LoggingConfig(
            level=level,  # type: ignore[arg-type]
            outputs=[LogOutputConfig(format="json" if json_format else "console")],
        )

    default_level = _level(config.level, logging.INFO)
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        _add_subsystem,  # type: ignore[list-item]
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", key="timestamp"),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(default_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfiguration (tests, level changes) must reach existing loggers
        cache_logger_on_first_use=False,
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(default_level)
    for name, cap in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(cap, default_level))

    for output in config.outputs:
        handler = _create_handler(output.destination)
        handler.setLevel(_level(output.level or config.level, default_level))
        handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=_renderer(output.format, output.destination),
                foreign_pre_chain=shared_processors,
            )
        )
        root_logger.addHandler(handler)


def _level(name: str, default: int) -> int:
    return logging.getLevelNamesMapping().get(name.upper(), default)


def _renderer(fmt: str, destination: str) -> structlog.types.Processor:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    on_terminal = destination in ("stderr", "stdout") and sys.stderr.isatty()
    return structlog.dev.ConsoleRenderer(colors=on_terminal, pad_event_to=0, pad_level=False)


def _create_handler(destination: str) -> logging.Handler:
    """Handler for stderr, stdout, or a file path (parents created)."""
    if destination == "stderr":
        return logging.StreamHandler(sys.stderr)
    if destination == "stdout":
        return logging.StreamHandler(sys.stdout)
    path = Path(destination)
    path.parent.mkdir(parents=True, exist_ok=True)
    return logging.FileHandler(path, mode="a")


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Logger for ``name`` (a dotted module path), or for the calling module."""
    logger = structlog.get_logger(name) if name else structlog.get_logger()
    return logger  # type: ignore[no-any-return]
