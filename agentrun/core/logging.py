"""Structured logging with structlog.

API requests and worker jobs both log through structlog on top of stdlib
logging: JSON lines in production, a console renderer with ``debug``.
The ids of whatever is being worked on (request, owner, run, thread, arq
job) live in context variables and are merged into every entry, so the
engine never threads them through its call signatures.
"""

import logging
import sys
from contextvars import ContextVar

import structlog

from agentrun.config import get_settings

# ── Context variables (bound per-request/per-job) ────────────────────

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
owner_id_var: ContextVar[str | None] = ContextVar("owner_id", default=None)
run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)
thread_id_var: ContextVar[str | None] = ContextVar("thread_id", default=None)
job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)

_CONTEXT_FIELDS: tuple[tuple[ContextVar[str | None], str], ...] = (
    (request_id_var, "request_id"),
    (job_id_var, "job_id"),
    (owner_id_var, "owner_id"),
    (run_id_var, "run_id"),
    (thread_id_var, "thread_id"),
)

_service = "api"


def bind_run_context(run_id: str, owner_id: str | None = None, thread_id: str | None = None) -> None:
    """Attach a run's ids to every following log line in this task."""
    run_id_var.set(run_id)
    if owner_id is not None:
        owner_id_var.set(owner_id)
    if thread_id is not None:
        thread_id_var.set(thread_id)


def _inject_context_vars(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    event_dict.setdefault("service", _service)
    # Explicit keyword arguments win over the ambient context.
    for var, key in _CONTEXT_FIELDS:
        val = var.get()
        if val is not None:
            event_dict.setdefault(key, val)
    return event_dict


def setup_logging(service: str = "api") -> None:
    """Configure structlog + stdlib logging once per process.

    ``service`` (``api`` or ``worker``) is stamped on every entry.
    """
    global _service
    _service = service
    settings = get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _inject_context_vars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.debug:
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    for noisy in ("httpx", "httpcore", "openai", "uvicorn.access", "sqlalchemy.engine", "arq.worker"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
