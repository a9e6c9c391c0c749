"""
Progress sink: structured run events, one JSON object per line.

Progress is observability only. A sink that cannot be written to is disabled
for the rest of the run and never interrupts the run itself.
"""
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

from memagent.logging import logger

# Marks event lines on stderr, which they share with log records.
TRACE_PREFIX = "[trace] "


class ProgressSink:
    """Append-only event channel bound to one session."""

    def __init__(self, stream: Optional[TextIO] = None, session_id: str = "", prefix: str = ""):
        self._stream = stream
        self.prefix = prefix
        self.session_id = session_id
        self.disabled = stream is None

    @classmethod
    def null(cls) -> "ProgressSink":
        return cls(None)

    @classmethod
    def stderr(cls, session_id: str = "") -> "ProgressSink":
        return cls(sys.stderr, session_id, prefix=TRACE_PREFIX)

    @classmethod
    def open(cls, path: Optional[str], session_id: str = "") -> "ProgressSink":
        """Prefixed stderr lines when *path* is empty, otherwise a bare JSONL file."""
        if not path:
            return cls.stderr(session_id)
        try:
            return cls(open(path, "a", encoding="utf-8"), session_id)
        except OSError as e:
            logger.warning(f"Progress sink {path} unavailable, events disabled: {e}")
            return cls.null()

    def emit(self, type: str, **fields: Any) -> None:
        if self.disabled:
            return
        event: Dict[str, Any] = {"type": type, "sessionId": self.session_id, "ts": _now()}
        event.update(fields)
        try:
            self._stream.write(self.prefix + json.dumps(event, default=str) + "\n")
            self._stream.flush()
        except (OSError, ValueError) as e:
            self.disabled = True
            logger.warning(f"Progress sink write failed, events disabled: {e}")

    def status(self, message: str, **fields: Any) -> None:
        self.emit("status", message=message, **fields)

    def close(self) -> None:
        if self._stream is not None and self._stream not in (sys.stderr, sys.stdout):
            try:
                self._stream.close()
            except OSError as e:
                logger.debug(f"Closing progress sink failed: {e}")
        self.disabled = True


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
