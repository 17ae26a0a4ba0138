"""Subscribe-style lifecycle notifications for pipeline components."""

from __future__ import annotations

import inspect
from collections import defaultdict
from typing import Any, Callable

import structlog

Handler = Callable[..., Any]

logger = structlog.get_logger(__name__)


class EventEmitter:
    """
    Per-component listener registry.

    Handlers may be plain callables or coroutine functions. A failing handler
    is logged and skipped; it never breaks the work that emitted the event.
    """

    def __init__(self, *events: str) -> None:
        self._known = frozenset(events)
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        """Attach a handler; returns a callable that detaches it."""
        if self._known and event not in self._known:
            raise ValueError(f"Unknown event {event!r}; expected one of {sorted(self._known)}")
        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)

        return unsubscribe

    def listeners(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    async def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - observers must not break the pipeline
                logger.warning("events.handler_failed", event_name=event, error=str(exc))
