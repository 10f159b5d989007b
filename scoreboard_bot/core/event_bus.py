"""
In-process event bus between the session engines and the Discord transport.

Engines emit ``session.*`` / ``queue.*`` / ``engine.error`` topics with plain
keyword payloads; the cog subscribes. Handlers run in subscription order and
inside the session scope of the payload, so their log lines carry the guild
and session ids of the session that triggered them.
"""

from __future__ import annotations

import inspect
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List

from scoreboard_bot.core.engines.base.logging_utils import get_logger, session_scope
from scoreboard_bot.core.event_topics import EVENT_BUS_ERROR

Handler = Callable[..., Any]

logger = get_logger("event_bus")


class EventBus:
    """Topic -> handlers; a handler may be a coroutine function or a plain callable."""

    def __init__(self) -> None:
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> None:
        if handler not in self._handlers[topic]:
            self._handlers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._handlers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, topic: str) -> int:
        return len(self._handlers.get(topic, ()))

    async def emit(self, topic: str, **payload: Any) -> None:
        """
        Await every handler of ``topic``.

        A failing handler is logged and re-published on ``event_bus.error``;
        its exception never reaches the emitter.
        """
        handlers = list(self._handlers.get(topic, ()))
        if not handlers:
            logger.debug("No subscribers for %s", topic)
            return
        with session_scope(payload.get("session_id"), payload.get("guild_id")):
            for handler in handlers:
                try:
                    result = handler(**payload)
                    if inspect.isawaitable(result):
                        await result
                except Exception as exc:
                    logger.warning("Handler %s failed for %s: %s", getattr(handler, "__qualname__", handler), topic, exc)
                    if topic != EVENT_BUS_ERROR:
                        await self.emit(EVENT_BUS_ERROR, original_event=topic, handler=handler, exc=exc)
