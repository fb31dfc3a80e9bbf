"""
Structured Logging - JSON output with per-run context.

Background provisioning and indexing runs set ``user_id_var`` / ``run_id_var``
so every line they emit can be traced back to the user it belongs to, even
when several runs interleave on the same event loop.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar

user_id_var: ContextVar[str] = ContextVar("user_id", default="")
run_id_var: ContextVar[str] = ContextVar("run_id", default="")

_configured = False


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        usr_id = user_id_var.get("")
        if usr_id:
            log_entry["user_id"] = usr_id
        run_id = run_id_var.get("")
        if run_id:
            log_entry["run_id"] = run_id

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry)


class ContextFilter(logging.Filter):
    """Prefix plain-text lines with the active user, if any."""

    def filter(self, record: logging.LogRecord) -> bool:
        usr_id = user_id_var.get("")
        record.user_ctx = f"[{usr_id}] " if usr_id else ""
        return True


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Install a single stdout handler on the ``agentkb`` logger tree."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.addFilter(ContextFilter())
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(user_ctx)s%(message)s")
        )

    root = logging.getLogger("agentkb")
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    _configured = True


def bind_run_context(user_id: str, run_id: str = "") -> str:
    """Set context variables for the current background run."""
    run_id = run_id or generate_run_id()
    user_id_var.set(user_id)
    run_id_var.set(run_id)
    return run_id


def generate_run_id() -> str:
    return str(uuid.uuid4())[:12]
