"""Logging setup.  JSON lines carry the run, step and scenario being served."""

import contextvars
import logging
import sys

from pythonjsonlogger import jsonlogger

_invocation: contextvars.ContextVar[tuple[str | None, int | None, str | None]] = contextvars.ContextVar(
    "steprelay_invocation", default=(None, None, None)
)

_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "alembic", "sse_starlette")


def bind_invocation(run_id: str | None, step: int | None = None, scenario: str | None = None) -> None:
    """Attach correlation fields to every log line of the current task."""
    _invocation.set((run_id, step, scenario))


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        run_id, step, scenario = _invocation.get()
        if run_id:
            log_record["run_id"] = run_id
        if step is not None:
            log_record["step"] = step
        if scenario:
            log_record["scenario"] = scenario


def setup_logger(log_format: str = "text", log_level: str = "INFO") -> logging.Logger:
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    if log_format.lower() == "json":
        handler.setFormatter(
            CorrelationJsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={"levelname": "level", "asctime": "timestamp"},
            )
        )
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s [%(name)s] %(message)s"))
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root
