"""
Tick context management with context-local storage.

Every poll tick gets a short correlation id so all log lines emitted while
handling that tick (store call, dedup, cache invalidation) can be grouped.
"""

import contextvars
import uuid
from typing import Optional

_tick_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "tick_id", default=None
)


def get_tick_id() -> Optional[str]:
    """Get the current tick ID from context."""
    return _tick_id_var.get()


def set_tick_id(tick_id: str) -> contextvars.Token:
    """Set the tick ID in context. Returns token for reset."""
    return _tick_id_var.set(tick_id)


def generate_tick_id(prefix: str = "tick") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class TickContext:
    """
    Context manager for tick-scoped operations.

    Usage:
        with TickContext("meeting_start") as ctx:
            logger.info("Checking")  # carries ctx.tick_id
    """

    def __init__(self, prefix: str = "tick", tick_id: Optional[str] = None):
        self.tick_id = tick_id or generate_tick_id(prefix)
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> "TickContext":
        self._token = set_tick_id(self.tick_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            _tick_id_var.reset(self._token)
