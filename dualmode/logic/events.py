"""Context lifecycle event constants and publisher.

Events are logged and buffered in-process so integration tests and the
test-support routes can observe what the context managers did.
"""

from __future__ import annotations

from typing import Any, Dict, List
import logging

logger = logging.getLogger(__name__)

CONTEXT_READY = "context.ready"
CONTEXT_FAILED = "context.failed"
CONTEXT_RELEASED = "context.released"
MODE_ATTEMPT_FAILED = "context.attempt_failed"
SAFETY_VIOLATION = "safety.violation"


def publish(event_type: str, payload: Dict[str, Any]) -> None:
    """Publish a lifecycle event: log it and keep it for test observation."""
    logger.info("event_publish type=%s payload=%s", event_type, payload)
    EVENT_BUFFER.append({"type": event_type, "payload": payload})


# In-memory buffer for lifecycle events (test-only visibility)
EVENT_BUFFER: List[Dict[str, Any]] = []


def get_buffered_events(clear: bool = True) -> List[Dict[str, Any]]:
    """Return buffered events; optionally clear the buffer."""
    events = list(EVENT_BUFFER)
    if clear:
        EVENT_BUFFER.clear()
    return events


__all__ = [
    "CONTEXT_READY",
    "CONTEXT_FAILED",
    "CONTEXT_RELEASED",
    "MODE_ATTEMPT_FAILED",
    "SAFETY_VIOLATION",
    "publish",
    "get_buffered_events",
    "EVENT_BUFFER",
]
