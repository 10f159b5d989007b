from __future__ import annotations

import traceback
from collections import deque, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from scoreboard_bot.core.engines.base.logging_utils import current_session_scope, get_logger
from scoreboard_bot.core.errors import ScoreboardError
from scoreboard_bot.core.event_topics import ENGINE_ERROR

logger = get_logger("error_engine")

_SEVERITY_BY_KIND = {
    "input": "info",
    "matching": "info",
    "consistency": "warning",
    "transient": "warning",
    "fatal": "error",
}


@dataclass
class ErrorRecord:
    timestamp: str
    context: str
    message: str
    kind: str
    severity: str
    category: str
    trace: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class GuardianErrorEngine:
    """
    Central sink for errors raised while collecting scores.

    - Severity follows the error kind (input/transient/matching/consistency/fatal);
      anything that is not a ScoreboardError counts as fatal
    - The guild and session of the current session scope are added to the metadata
    - Recent records are kept per category and per guild for admin inspection
    - Every record is published on ``engine.error``
    """

    def __init__(self, *, event_bus: Optional[Any] = None, max_errors: int = 200, per_category: int = 50) -> None:
        self._event_bus = event_bus
        self._errors: Deque[ErrorRecord] = deque(maxlen=max_errors)
        self._by_category: Dict[str, Deque[ErrorRecord]] = defaultdict(lambda: deque(maxlen=per_category))
        self._counts: Dict[str, int] = defaultdict(int)

    async def log_error(
        self,
        error: BaseException,
        *,
        context: str = "",
        severity: Optional[str] = None,
        category: Optional[str] = None,
        **metadata: Any,
    ) -> ErrorRecord:
        """
        Record ``error`` and publish it.

        Args:
            error: The exception that occurred
            context: Component/operation, e.g. "session_manager.operator_decision"
            severity: Overrides the severity derived from the error kind
            category: Defaults to the error kind
            **metadata: Extra context (session_id, guild_id, ...); wins over the error's own context
        """
        kind = error.kind if isinstance(error, ScoreboardError) else "fatal"
        merged: Dict[str, Any] = {}
        guild_id, session_id = current_session_scope()
        if guild_id is not None:
            merged["guild_id"] = guild_id
        if session_id is not None:
            merged["session_id"] = session_id
        if isinstance(error, ScoreboardError):
            merged.update(error.context)
        merged.update(metadata)

        record = ErrorRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            context=context,
            message=str(error),
            kind=kind,
            severity=severity or _SEVERITY_BY_KIND.get(kind, "error"),
            category=category or kind,
            trace="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            metadata=merged,
        )
        self._errors.appendleft(record)
        self._by_category[record.category].appendleft(record)
        self._counts[record.category] += 1

        if record.severity in {"error", "critical"}:
            logger.error("[%s] %s: %s\n%s", record.category, context, error, record.trace)
        else:
            logger.info("[%s] %s: %s", record.category, context, error)

        if self._event_bus is not None:
            await self._event_bus.emit(
                ENGINE_ERROR,
                context=record.context,
                message=record.message,
                kind=record.kind,
                severity=record.severity,
                category=record.category,
                metadata=record.metadata,
            )
        return record

    def get_errors_by_category(self, category: str, limit: int = 20) -> List[Dict[str, Any]]:
        return [asdict(r) for r in list(self._by_category.get(category, ()))[:limit]]

    def errors_for_guild(self, guild_id: int, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent records of one guild, newest first."""
        matching = [r for r in self._errors if r.metadata.get("guild_id") == guild_id]
        return [asdict(r) for r in matching[:limit]]

    def get_error_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {"total_errors": len(self._errors), "by_category": {}}
        for category, count in self._counts.items():
            recent = self._by_category.get(category, ())
            summary["by_category"][category] = {
                "total_count": count,
                "recent_count": len(recent),
                "last_error": asdict(recent[0]) if recent else None,
            }
        return summary
