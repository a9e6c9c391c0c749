import logging
import sys
from contextvars import ContextVar
from typing import Optional

# Context variable to track the agent session across a run
session_id_ctx: ContextVar[Optional[str]] = ContextVar("session_id", default=None)


def get_session_id() -> str:
    """Retrieve the current session id, or '-' outside of a run."""
    return session_id_ctx.get() or "-"


def set_session_id(session_id: Optional[str]) -> None:
    session_id_ctx.set(session_id or None)


class SessionIDFilter(logging.Filter):
    """Injects session_id into log records."""
    def filter(self, record):
        record.session_id = get_session_id()
        return True


def configure_logging(level: str = "INFO"):
    """Configures the root logger with a standard format including session_id."""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers to avoid duplication
    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | [%(session_id)s] | %(name)s:%(funcName)s:%(lineno)d - %(message)s"
    )
    handler.setFormatter(formatter)
    handler.addFilter(SessionIDFilter())

    logger.addHandler(handler)

    # Silence noisy libraries; their debug output can include request headers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


def set_log_level(level: str) -> None:
    logging.getLogger().setLevel(level)


# Initialize logging on import with default settings
configure_logging()
logger = logging.getLogger("memagent")
