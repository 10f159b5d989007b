"""
Central catalog of event bus topics and expected payload keys.

Engines import only the constants (not the bus) to avoid cycles. The
IntegrationLoader wires publishers and the cog subscribes.

Design rules:
- Topics are snake.case with domain prefix, e.g. "session.expired".
- Payloads are plain keyword arguments; keys documented here for traceability.
- No imports from discord.* - keep domain-pure and testable.
"""
from __future__ import annotations

from typing import Any, Optional, TypedDict


# -----------------------
# Topic name constants
# -----------------------
SESSION_OPENED = "session.opened"
SESSION_COMMITTED = "session.committed"
SESSION_CANCELLED = "session.cancelled"
SESSION_EXPIRED = "session.expired"
SESSION_FAILED = "session.failed"
SESSION_PING = "session.ping"

QUEUE_JOINED = "queue.joined"
QUEUE_PROMOTED = "queue.promoted"
QUEUE_RESERVATION_EXPIRED = "queue.reservation_expired"

ENGINE_ERROR = "engine.error"
EVENT_BUS_ERROR = "event_bus.error"
SHUTDOWN_INITIATED = "shutdown.initiated"


# -----------------------
# Payload contracts
# -----------------------
class SessionEvent(TypedDict, total=False):
    session_id: str
    guild_id: int
    operator_id: int
    phase: int
    clan: str
    channel_id: Optional[int]
    reason: Optional[str]
    payload: Optional[dict[str, Any]]  # rendered prompt for the transport


class SessionPing(TypedDict, total=False):
    session_id: str
    guild_id: int
    operator_id: int
    channel_id: Optional[int]


class QueueEvent(TypedDict, total=False):
    guild_id: int
    operator_id: int
    position: Optional[int]
    expires_in: Optional[float]


class EngineError(TypedDict, total=False):
    context: str        # component / operation name
    message: str
    kind: str           # input|transient|matching|consistency|fatal
    severity: str       # info|warning|error|critical
    category: str
    metadata: Optional[dict[str, Any]]


class ShutdownInitiated(TypedDict, total=False):
    reason: Optional[str]


__all__ = [
    "SESSION_OPENED",
    "SESSION_COMMITTED",
    "SESSION_CANCELLED",
    "SESSION_EXPIRED",
    "SESSION_FAILED",
    "SESSION_PING",
    "QUEUE_JOINED",
    "QUEUE_PROMOTED",
    "QUEUE_RESERVATION_EXPIRED",
    "ENGINE_ERROR",
    "EVENT_BUS_ERROR",
    "SHUTDOWN_INITIATED",
    "SessionEvent",
    "SessionPing",
    "QueueEvent",
    "EngineError",
    "ShutdownInitiated",
]
